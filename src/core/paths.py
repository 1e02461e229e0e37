"""
src/core/paths.py — Centralized Path Configuration

Single source of truth for the directories the intake pipeline reads from
and writes to. Every module imports DATA_DIR from here instead of computing
its own.

Lookup snapshots (duplicate index, brand table, supplier list, keyword
overrides) live under DATA_DIR; logs under DATA_DIR/logs.
"""

import os
import logging

log = logging.getLogger("rfq.paths")

# ── Project Root ──────────────────────────────────────────────────────────────
_THIS_FILE = os.path.abspath(__file__)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(_THIS_FILE)))

_REPO_DATA_DIR = os.path.join(PROJECT_ROOT, "data")


# ── Resolve DATA_DIR ─────────────────────────────────────────────────────────
# Priority: RFQ_DATA_DIR env → mounted volume → repo data/
def _resolve_data_dir() -> str:
    """Find the best data directory."""
    env_dir = os.environ.get("RFQ_DATA_DIR", "")
    if env_dir and os.path.isdir(env_dir):
        return env_dir

    vol_mount = os.environ.get("RFQ_VOLUME_MOUNT_PATH", "")
    if vol_mount and os.path.isdir(vol_mount):
        return os.path.join(vol_mount, "data") if not vol_mount.endswith("/data") else vol_mount

    return _REPO_DATA_DIR


DATA_DIR = _resolve_data_dir()
LOG_DIR = os.path.join(DATA_DIR, "logs")


def data_file(name: str) -> str:
    """Absolute path of a file under DATA_DIR (absolute names pass through)."""
    if os.path.isabs(name):
        return name
    return os.path.join(DATA_DIR, name)


def ensure_dirs():
    """Create DATA_DIR and LOG_DIR if missing. Returns the list it created."""
    created = []
    for d in (DATA_DIR, LOG_DIR):
        if not os.path.isdir(d):
            try:
                os.makedirs(d, exist_ok=True)
                created.append(d)
            except OSError as e:
                log.warning("Cannot create %s: %s", d, e)
    return created
