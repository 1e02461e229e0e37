"""
fallback_extractor.py — Higher-cost item extraction through Claude

Called by the escalation step when the table / text layers look unreliable.
Sends the readable text of the group's documents to the Anthropic messages
API (plain requests, same call shape as the item identifier used to make)
and maps the JSON answer back to LineItems.

Failures raise FallbackExtractionError; the caller keeps the cheap result.

Env:
  AGENT_EXTRACTION_KEY / ANTHROPIC_API_KEY   — API key
  LLM_MODEL, LLM_TIMEOUT_SEC                  — via Settings
"""

import json
import logging
import re

import requests

from src.core.config import Settings
from src.core.models import Attachment, ClassifiedAttachment, ExtractionResult, LineItem
from src.core.secrets import get_agent_key, mask
from src.forms.document_text import DocumentReadError, read_document
from src.forms.item_extractor import parse_quantity, normalize_unit

log = logging.getLogger("fallback_extract")

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
MAX_TOKENS = 4000
MAX_INPUT_CHARS = 30000

_SYSTEM = """You extract line items from customer requests for quotation (RFQ).
The documents may be in French or English and may come from OCR.
Return ONLY a JSON object, no prose:
{"request_number": string or null,
 "confidence": number 0-100,
 "items": [{"description": string, "quantity": number or null,
            "reference": string or null, "unit": string or null,
            "brand": string or null, "notes": string or null}]}
Never invent items. Keep part numbers exactly as written. A line number or
position column is not a quantity."""


class FallbackExtractionError(Exception):
    """The fallback extractor could not produce a result."""


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```\w*\n?", "", text)
        text = re.sub(r"\n?```$", "", text)
    return text


def parse_response(text: str, source: str = "") -> tuple:
    """Claude JSON answer → (ExtractionResult, confidence)."""
    try:
        data = json.loads(_strip_fences(text))
    except json.JSONDecodeError as e:
        raise FallbackExtractionError(f"non-JSON answer: {e}") from e
    if not isinstance(data, dict):
        raise FallbackExtractionError("answer is not a JSON object")

    items = []
    for raw in data.get("items") or []:
        if not isinstance(raw, dict):
            continue
        desc = str(raw.get("description") or "").strip()
        if not desc:
            continue
        qty, estimated = parse_quantity(raw.get("quantity"))
        items.append(LineItem(
            description=desc,
            quantity=qty,
            reference=(str(raw["reference"]).strip() or None) if raw.get("reference") else None,
            unit=normalize_unit(str(raw.get("unit") or "")),
            brand=(str(raw["brand"]).strip() or None) if raw.get("brand") else None,
            notes=(str(raw["notes"]).strip() or None) if raw.get("notes") else None,
            is_estimated=estimated,
        ))

    try:
        confidence = float(data.get("confidence") or 0)
    except (TypeError, ValueError):
        confidence = 0.0
    result = ExtractionResult(
        items=items,
        request_number=data.get("request_number") or None,
        extraction_method="fallback",
        confidence=confidence,
        source=source or None,
    )
    return result, confidence


class LlmFallbackExtractor:
    """FallbackExtractor backed by the Anthropic messages API."""

    def __init__(self, api_key: str = None, settings: Settings = None, session=None):
        self.settings = settings or Settings()
        self.api_key = api_key if api_key is not None else get_agent_key("fallback_extractor")
        # No shared Session by default: batch workers call this concurrently
        self.session = session

    def _post(self, *args, **kwargs):
        if self.session is not None:
            return self.session.post(*args, **kwargs)
        return requests.post(*args, **kwargs)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _collect_text(self, attachments) -> tuple:
        parts, warnings = [], []
        for att in attachments:
            if isinstance(att, ClassifiedAttachment):
                att = att.attachment
            if not isinstance(att, Attachment):
                continue
            try:
                content = read_document(att)
            except DocumentReadError as e:
                warnings.append(f"fallback skipped {att.filename}: {e}")
                continue
            text = content.text or "\n".join("\t".join(r) for t in content.tables for r in t)
            if text.strip():
                parts.append(f"=== {att.filename} ===\n{text.strip()}")
        return "\n\n".join(parts)[:MAX_INPUT_CHARS], warnings

    def extract_via_fallback(self, attachments) -> tuple:
        if not self.api_key:
            raise FallbackExtractionError("no API key configured (AGENT_EXTRACTION_KEY / ANTHROPIC_API_KEY)")

        text, warnings = self._collect_text(attachments)
        if not text:
            raise FallbackExtractionError("no readable text to send")

        names = ", ".join(a.filename for a in attachments if hasattr(a, "filename"))
        log.info("Fallback extraction for %s (%d chars, key %s)", names, len(text), mask(self.api_key))
        try:
            resp = self._post(
                API_URL,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": API_VERSION,
                    "content-type": "application/json",
                },
                json={
                    "model": self.settings.llm_model,
                    "max_tokens": MAX_TOKENS,
                    "system": _SYSTEM,
                    "messages": [{"role": "user", "content": text}],
                },
                timeout=self.settings.llm_timeout_sec,
            )
            resp.raise_for_status()
            data = resp.json()
            answer = data["content"][0]["text"]
        except requests.RequestException as e:
            raise FallbackExtractionError(f"API call failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise FallbackExtractionError(f"unexpected API response: {e}") from e

        result, confidence = parse_response(answer, source=names)
        result.warnings.extend(warnings)
        return result, confidence, warnings
