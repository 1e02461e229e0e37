"""
secrets.py — Centralized Secret Management for the RFQ intake pipeline

Single source of truth for API keys and credentials.

Env vars:
  ANTHROPIC_API_KEY      — Shared Claude API key (fallback)
  AGENT_EXTRACTION_KEY   — Fallback item extractor (Claude)
  API_USER / API_PASS    — Basic auth for the HTTP API

Security:
  - Keys are never logged in full (masked to first 8 chars)
  - Health endpoint shows which keys are set (not values)
"""

import os
import logging

log = logging.getLogger("secrets")

# ─── Secret Definitions ─────────────────────────────────────────────────────

_REGISTRY = {
    "anthropic_shared": {
        "env": "ANTHROPIC_API_KEY",
        "required": False,
        "desc": "Shared Claude API key — fallback for all agents",
    },
    "agent_extraction": {
        "env": "AGENT_EXTRACTION_KEY",
        "fallback": "ANTHROPIC_API_KEY",
        "required": False,
        "desc": "Fallback item extractor — Claude",
    },
    "api_user": {
        "env": "API_USER",
        "required": True,
        "desc": "HTTP API username",
        "default": "rfq",
    },
    "api_pass": {
        "env": "API_PASS",
        "required": True,
        "desc": "HTTP API password",
        "sensitive": True,
    },
}


# ─── Public API ──────────────────────────────────────────────────────────────

def get_key(name: str) -> str:
    """Get a secret value by registry name. Returns empty string if not set."""
    entry = _REGISTRY.get(name)
    if not entry:
        log.warning("Unknown secret requested: %s", name)
        return ""

    val = os.environ.get(entry["env"], "")
    if not val and "fallback" in entry:
        val = os.environ.get(entry["fallback"], "")
    if not val and "default" in entry:
        val = entry["default"]
    return val


def get_agent_key(agent_name: str) -> str:
    """Get the API key for a specific agent. Falls back to shared key."""
    agent_map = {
        "fallback_extractor": "agent_extraction",
    }
    reg_name = agent_map.get(agent_name, "anthropic_shared")
    return get_key(reg_name)


def mask(value: str) -> str:
    """Mask a secret for safe logging. Shows first 8 chars."""
    if not value:
        return "(not set)"
    if len(value) <= 12:
        return value[:4] + "****"
    return value[:8] + "****" + f"({len(value)} chars)"


def validate_all() -> dict:
    """Validate all secrets. Returns status report (never values)."""
    results = {}
    warnings = []
    for name, entry in _REGISTRY.items():
        is_set = bool(get_key(name))
        results[name] = {"set": is_set, "env": entry["env"], "desc": entry["desc"]}
        if entry.get("required") and not is_set:
            warnings.append(f"{entry['env']} not set")
    for w in warnings:
        log.warning("Secret check: %s", w)
    return {"secrets": results, "warnings": warnings}
