"""
escalation.py — When to pay for the fallback extractor, and whose result wins

Modes (LLM_MODE):
  off       never escalate
  always    always escalate; any non-empty fallback result replaces the
            cheap one
  fallback  escalate only when the cheap layers found nothing
  auto      escalate when items < LLM_MIN_ITEMS_THRESHOLD, when the cheap
            result needs manual review, or when more than half of the
            quantities look like misread position numbers (10, 20 … 100)

Outside "always", the fallback result replaces the cheap one only when it
has strictly more items, and keeps the cheap items whose reference it
missed. A failing fallback never loses the cheap result.
"""

import logging

from src.core.config import Settings
from src.core.models import EscalationDecision, ExtractionResult
from src.core.text import normalize
from src.forms.item_extractor import suspicious_share

log = logging.getLogger("escalation")


def escalation_reason(item_count: int, needs_manual_review: bool, items, mode: str,
                      min_items: int = 3):
    """Why the fallback should run, or None when it should not."""
    if mode == "always":
        return "mode always"
    if mode == "fallback":
        return "no items extracted" if item_count == 0 else None
    if mode == "auto":
        if item_count < min_items:
            return f"{item_count} items < {min_items}"
        if needs_manual_review:
            return "cheap result needs manual review"
        if suspicious_share(items or []) > 0.5:
            return "more than half of quantities are round tens"
        return None
    return None


def should_escalate(item_count: int, needs_manual_review: bool, items, mode: str,
                    min_items: int = 3) -> bool:
    return escalation_reason(item_count, needs_manual_review, items, mode, min_items) is not None


def fallback_wins(cheap_count: int, fallback_count: int, mode: str) -> bool:
    if mode == "always":
        return fallback_count > 0
    return fallback_count > cheap_count


def select_result(cheap: ExtractionResult, fallback: ExtractionResult, mode: str) -> ExtractionResult:
    """The result to keep after an escalation (fallback may be None on failure)."""
    if fallback is None or not fallback_wins(cheap.item_count, fallback.item_count, mode):
        return cheap
    return fallback


def _merge_missing(fallback: ExtractionResult, cheap: ExtractionResult) -> int:
    """Append cheap items whose reference the fallback result does not have."""
    known = {normalize(i.reference) for i in fallback.items if i.reference}
    added = 0
    for item in cheap.items:
        if item.reference and normalize(item.reference) not in known:
            fallback.items.append(item)
            known.add(normalize(item.reference))
            added += 1
    return added


def run_escalation(cheap: ExtractionResult, attachments, extractor, settings: Settings = None,
                   needs_manual_review: bool = None) -> tuple:
    """→ (final ExtractionResult, EscalationDecision)."""
    settings = settings or Settings()
    mode = settings.llm_mode
    if needs_manual_review is None:
        needs_manual_review = cheap.needs_verification
    decision = EscalationDecision(mode=mode, cheap_count=cheap.item_count)

    reason = escalation_reason(cheap.item_count, needs_manual_review, cheap.items, mode,
                               settings.llm_min_items)
    if reason is None:
        decision.reason = "cheap extraction kept"
        return cheap, decision

    decision.escalated = True
    decision.reason = reason
    log.info("Escalating %s (%s, mode=%s)", cheap.source, reason, mode)

    try:
        fallback, confidence, warnings = extractor.extract_via_fallback(attachments)
    except Exception as e:
        log.warning("Fallback extraction failed for %s: %s", cheap.source, e, exc_info=True)
        decision.error = str(e)
        cheap.warnings.append(f"fallback extraction failed: {e}")
        return cheap, decision

    decision.fallback_count = fallback.item_count
    decision.fallback_confidence = confidence
    cheap.warnings.extend(warnings or [])

    if select_result(cheap, fallback, mode) is cheap:
        log.info("Fallback kept cheap result for %s (%d vs %d items)",
                 cheap.source, cheap.item_count, fallback.item_count)
        return cheap, decision

    decision.replaced = True
    # "always" returns the fallback result as is
    merged = 0 if mode == "always" else _merge_missing(fallback, cheap)
    fallback.extraction_method = "fallback"
    fallback.source = fallback.source or cheap.source
    fallback.request_number = fallback.request_number or cheap.request_number
    fallback.general_description = fallback.general_description or cheap.general_description
    fallback.confidence = confidence
    fallback.needs_verification = fallback.needs_verification or confidence < settings.llm_min_confidence
    fallback.warnings = cheap.warnings + [w for w in fallback.warnings if w not in cheap.warnings]
    if merged:
        fallback.warnings.append(f"{merged} items kept from cheap extraction")
    log.info("Fallback replaced cheap result for %s: %d → %d items (confidence %s)",
             cheap.source, decision.cheap_count, fallback.item_count, confidence)
    return fallback, decision
