"""
config.py — Pipeline settings

All tunables for classification, attachment handling and extraction
escalation, read from the environment once into a frozen Settings value.
Tests build their own Settings(...) directly.

  LLM_MODE                      off | always | fallback | auto (default auto)
  LLM_MIN_ITEMS_THRESHOLD       auto mode escalates below this item count (3)
  LLM_MIN_CONFIDENCE_THRESHOLD  fallback results under this need review (60)
  LLM_TIMEOUT_SEC               HTTP timeout for the fallback call (60)
  LLM_MODEL                     model name for the fallback extractor
  BODY_WINDOW_CHARS             body slice the classifier scores (6000)
  OFFER_MARGIN / OFFER_MIN_SCORE
  REQUEST_MARGIN / REQUEST_MIN_SCORE
  TIE_MARGIN
  DECORATIVE_IMAGE_MAX_BYTES    images smaller than this are decoration (10000)
  SMALL_PDF_BYTES               unnamed PDFs under this lean technical (50000)
  PIPELINE_WORKERS              batch thread pool size (4)
  RFQ_KEYWORDS_FILE             JSON overrides for keyword tables
  RFQ_DUPLICATE_INDEX_FILE      JSON snapshot of processed requests
  RFQ_BRANDS_FILE               JSON brand → aliases table
  RFQ_SUPPLIERS_FILE            JSON list of supplier addresses/domains

Threshold defaults are first estimates and need calibration against a
labelled mailbox.
"""

import os
import logging
from dataclasses import dataclass, replace

log = logging.getLogger("rfq.config")

LLM_MODES = ("off", "always", "fallback", "auto")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        log.warning("Invalid %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    llm_mode: str = "auto"
    llm_min_items: int = 3
    llm_min_confidence: float = 60.0
    llm_timeout_sec: int = 60
    llm_model: str = "claude-haiku-4-5-20251001"
    body_window_chars: int = 6000
    offer_margin: float = 3.0
    offer_min_score: float = 5.0
    request_margin: float = 2.0
    request_min_score: float = 3.0
    tie_margin: float = 1.0
    decorative_image_max_bytes: int = 10000
    small_pdf_bytes: int = 50000
    pipeline_workers: int = 4
    keywords_file: str = ""
    duplicate_index_file: str = ""
    brands_file: str = ""
    suppliers_file: str = ""

    def __post_init__(self):
        if self.llm_mode not in LLM_MODES:
            raise ValueError(f"Unknown LLM mode: {self.llm_mode!r} (expected one of {LLM_MODES})")

    def with_mode(self, mode: str) -> "Settings":
        return replace(self, llm_mode=mode)


def load_settings() -> Settings:
    """Build Settings from the environment."""
    mode = os.environ.get("LLM_MODE", "auto").strip().lower()
    if mode not in LLM_MODES:
        log.warning("Unknown LLM_MODE=%r, falling back to 'auto'", mode)
        mode = "auto"
    return Settings(
        llm_mode=mode,
        llm_min_items=_env_int("LLM_MIN_ITEMS_THRESHOLD", 3),
        llm_min_confidence=_env_float("LLM_MIN_CONFIDENCE_THRESHOLD", 60.0),
        llm_timeout_sec=_env_int("LLM_TIMEOUT_SEC", 60),
        llm_model=os.environ.get("LLM_MODEL", Settings.llm_model),
        body_window_chars=_env_int("BODY_WINDOW_CHARS", 6000),
        offer_margin=_env_float("OFFER_MARGIN", 3.0),
        offer_min_score=_env_float("OFFER_MIN_SCORE", 5.0),
        request_margin=_env_float("REQUEST_MARGIN", 2.0),
        request_min_score=_env_float("REQUEST_MIN_SCORE", 3.0),
        tie_margin=_env_float("TIE_MARGIN", 1.0),
        decorative_image_max_bytes=_env_int("DECORATIVE_IMAGE_MAX_BYTES", 10000),
        small_pdf_bytes=_env_int("SMALL_PDF_BYTES", 50000),
        pipeline_workers=max(1, _env_int("PIPELINE_WORKERS", 4)),
        keywords_file=os.environ.get("RFQ_KEYWORDS_FILE", ""),
        duplicate_index_file=os.environ.get("RFQ_DUPLICATE_INDEX_FILE", ""),
        brands_file=os.environ.get("RFQ_BRANDS_FILE", ""),
        suppliers_file=os.environ.get("RFQ_SUPPLIERS_FILE", ""),
    )
