"""
pipeline.py — LangGraph intake workflow: one message → structured requests

    classify ──(excluded?)──► END
        │
    attachments ──► extract ──► assemble ──► END

  classify     MessageClassifier; PURCHASE_ORDER / SUPPLIER_OFFER /
               REMINDER_DUPLICATE stop here, before any extraction cost
  attachments  read each candidate document once (its text feeds brand
               tagging and is reused by extract), classify + group
               attachments (partition of request documents)
  extract      per group: table/text layers per document, merged, then the
               escalation step; no group → the email body as one implicit
               group; a lone group with no items → the email body, escalated
               once together with the documents; a failing group becomes a
               placeholder, siblings go on
  assemble     one StructuredRequest per group, each with at least one item

Everything the run reads comes from a frozen PipelineContext (keyword
config, lookup snapshots, fallback extractor, settings), shared safely by
run_batch() worker threads. The run returns its Trace on the result and
never records it anywhere.
"""

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypedDict

from langgraph.graph import StateGraph, END

from src.agents.attachment_classifier import DOCUMENT_KINDS, classify_attachments, group_attachments
from src.agents.message_classifier import MessageClassifier
from src.api.trace import Trace
from src.auto.escalation import run_escalation
from src.core.config import Settings, load_settings
from src.core.keywords import KeywordConfig, load_keywords
from src.core.lookups import (
    BrandIndex, DuplicateIndex, NullFallbackExtractor, SupplierIndex,
)
from src.core.models import (
    Attachment, AttachmentCategory, ClassificationVerdict, EscalationDecision,
    ExtractionResult, InboundMessage, PipelineResult, StructuredRequest, Verdict,
)
from src.core.text import clean_body, extract_email_address, extract_sender_name, message_text
from src.forms.document_text import DocumentContent, DocumentReadError, document_kind, read_document
from src.forms.item_extractor import (
    ExtractionSource, dedupe_items, extract_from_attachment, extract_items,
    make_placeholder_item,
)

log = logging.getLogger("pipeline")


# ─── Internal ids ────────────────────────────────────────────────────────────

class RequestIdGenerator:
    """DDP-YYYYMMDD-NNN from the message date and a per-day sequence.

    The sequence restarts at `start` for each date and widens to four
    digits past 999 instead of wrapping.

    The mail collaborator normally injects a generator backed by its own
    storage; this one is for the API, the CLI and tests.
    """

    def __init__(self, prefix: str = "DDP", start: int = 1):
        self.prefix = prefix
        self.start = start
        self._next = {}
        self._lock = threading.Lock()

    def __call__(self, received_at: datetime = None) -> str:
        day = (received_at or datetime.now()).strftime("%Y%m%d")
        with self._lock:
            seq = self._next.get(day, self.start)
            self._next[day] = seq + 1
        return f"{self.prefix}-{day}-{seq:03d}"


# ─── Context ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PipelineContext:
    settings: Settings = field(default_factory=Settings)
    keywords: KeywordConfig = field(default_factory=KeywordConfig.default)
    duplicates: Any = None
    suppliers: Any = None
    brands: Any = field(default_factory=BrandIndex)
    fallback: Any = field(default_factory=NullFallbackExtractor)
    id_generator: Callable = field(default_factory=RequestIdGenerator)

    @classmethod
    def from_settings(cls, settings: Settings = None, fallback=None) -> "PipelineContext":
        """Context with lookup snapshots loaded from the configured files."""
        settings = settings or load_settings()
        if fallback is None:
            from src.agents.fallback_extractor import LlmFallbackExtractor
            llm = LlmFallbackExtractor(settings=settings)
            fallback = llm if llm.available else NullFallbackExtractor()
        return cls(
            settings=settings,
            keywords=load_keywords(settings.keywords_file),
            duplicates=DuplicateIndex.from_file(settings.duplicate_index_file),
            suppliers=SupplierIndex.from_file(settings.suppliers_file),
            brands=BrandIndex.from_file(settings.brands_file) if settings.brands_file else BrandIndex(),
            fallback=fallback,
        )

    def classifier(self) -> MessageClassifier:
        return MessageClassifier(self.keywords, self.duplicates, self.suppliers, self.settings)


# ─── Workflow State ──────────────────────────────────────────────────────────

class IntakeState(TypedDict, total=False):
    """State for one message run."""
    message: InboundMessage
    context: PipelineContext
    trace: Trace
    verdict: ClassificationVerdict
    excluded: bool
    classified: list
    groups: list
    contents: dict           # filename → DocumentContent or DocumentReadError
    extractions: list        # [(group-or-None, ExtractionResult, EscalationDecision, error)]
    requests: list
    warnings: list
    error: str
    steps_completed: list
    started_at: str
    completed_at: str


def _step(state: dict, name: str) -> dict:
    """Record a completed step."""
    steps = state.get("steps_completed", [])
    steps.append({"step": name, "timestamp": datetime.now().isoformat()})
    state["steps_completed"] = steps
    return state


def _warn(state: dict, message: str):
    state.setdefault("warnings", []).append(message)
    state["trace"].warn(message)


# ═════════════════════════════════════════════════════════════════════════════
# Nodes
# ═════════════════════════════════════════════════════════════════════════════

def _classify_node(state: IntakeState) -> IntakeState:
    state["started_at"] = datetime.now().isoformat()
    state.setdefault("steps_completed", [])
    state.setdefault("warnings", [])
    msg, ctx = state["message"], state["context"]

    verdict = ctx.classifier().classify(msg)
    state["verdict"] = verdict
    state["excluded"] = not verdict.is_request
    state["trace"].step("classified", verdict=verdict.verdict.value,
                        scores=dict(verdict.scores), reasons=list(verdict.reasons),
                        matched_request_id=verdict.matched_request_id)
    return _step(state, "classify:excluded" if state["excluded"] else "classify")


def _after_classify(state: IntakeState) -> str:
    """Router: stop on excluded verdicts."""
    if state.get("error") or state.get("excluded"):
        return END
    return "next"


def _read_documents(attachments) -> dict:
    """Read every document-like attachment once: filename → content or error."""
    contents = {}
    for att in attachments:
        if att.is_image or document_kind(att) not in DOCUMENT_KINDS or att.filename in contents:
            continue
        try:
            contents[att.filename] = read_document(att)
        except DocumentReadError as e:
            log.warning("Unreadable attachment %s: %s", att.filename, e)
            contents[att.filename] = e
    return contents


def _attachments_node(state: IntakeState) -> IntakeState:
    msg, ctx = state["message"], state["context"]
    try:
        contents = _read_documents(msg.attachments)
        texts = {name: c.text for name, c in contents.items() if isinstance(c, DocumentContent)}
        classified = classify_attachments(msg.attachments, brand_lookup=ctx.brands,
                                          settings=ctx.settings, texts=texts)
        groups = group_attachments(classified)
    except Exception as e:
        log.error("Attachment classification failed for %s: %s", msg.id, e, exc_info=True)
        _warn(state, f"attachment classification failed: {e}")
        contents, classified, groups = {}, [], []
    state["contents"] = contents
    state["classified"] = classified
    state["groups"] = groups
    state["trace"].step("attachments classified",
                        attachments=[c.to_dict() for c in classified],
                        groups=[[d.filename for d in g.documents] for g in groups])
    return _step(state, "attachments")


def _body_attachment(msg: InboundMessage) -> Attachment:
    text = clean_body(message_text(msg.body, msg.body_html))
    return Attachment(filename="email_body.txt", content_type="text/plain", content=text.encode("utf-8"))


def _merge_results(results: list, names: list) -> ExtractionResult:
    """Combine the per-document results of one group."""
    merged = ExtractionResult(source=", ".join(names))
    methods = []
    for r in results:
        merged.items.extend(r.items)
        merged.warnings.extend(r.warnings)
        merged.needs_verification = merged.needs_verification or r.needs_verification
        merged.request_number = merged.request_number or r.request_number
        merged.general_description = merged.general_description or r.general_description
        if r.items:
            methods.append(r.extraction_method)
    merged.items = dedupe_items(merged.items)
    with_items = [r for r in results if r.items]
    merged.extraction_method = methods[0] if len(set(methods)) == 1 else ("+".join(dict.fromkeys(methods)) or "none")
    merged.confidence = min((r.confidence for r in with_items), default=0)
    return merged


def _cheap_body(msg: InboundMessage, ctx: PipelineContext) -> ExtractionResult:
    source = ExtractionSource.from_body(msg.body, subject=msg.subject, body_html=msg.body_html)
    return extract_items(source, brand_lookup=ctx.brands)


def _extract_body(msg: InboundMessage, ctx: PipelineContext) -> tuple:
    return run_escalation(_cheap_body(msg, ctx), [_body_attachment(msg)], ctx.fallback, ctx.settings)


def _extract_document(doc, msg: InboundMessage, ctx: PipelineContext, contents: dict) -> ExtractionResult:
    content = contents.get(doc.filename)
    if isinstance(content, DocumentReadError):
        return ExtractionResult(source=doc.filename, warnings=[str(content)])
    if isinstance(content, DocumentContent):
        source = ExtractionSource.from_document(doc.filename, content, subject=msg.subject)
        return extract_items(source, brand_lookup=ctx.brands)
    return extract_from_attachment(doc, subject=msg.subject, brand_lookup=ctx.brands)


def _extract_group(group, msg: InboundMessage, ctx: PipelineContext, contents: dict = None,
                   body_fallback: bool = False) -> tuple:
    """Cheap layers over the group's documents, then one escalation step.

    body_fallback: when the documents give nothing, use the email body
    instead; the escalation then sees documents and body in one call.
    """
    contents = contents or {}
    results = [_extract_document(doc, msg, ctx, contents) for doc in group.documents]
    cheap = _merge_results(results, [d.filename for d in group.documents])
    attachments = [d.attachment for d in group.documents]
    if not cheap.items and body_fallback:
        body = _cheap_body(msg, ctx)
        if body.items:
            body.warnings = cheap.warnings + body.warnings
            return run_escalation(body, attachments + [_body_attachment(msg)], ctx.fallback, ctx.settings)
    return run_escalation(cheap, attachments, ctx.fallback, ctx.settings)


def _extract_node(state: IntakeState) -> IntakeState:
    msg, ctx, trace = state["message"], state["context"], state["trace"]
    extractions = []
    groups = state.get("groups") or []
    contents = state.get("contents") or {}

    if not groups:
        try:
            result, decision = _extract_body(msg, ctx)
            extractions.append((None, result, decision, None))
        except Exception as e:
            log.error("Body extraction failed for %s: %s", msg.id, e, exc_info=True)
            _warn(state, f"body extraction failed: {e}")
            extractions.append((None, None, None, str(e)))
    else:
        for group in groups:
            names = [d.filename for d in group.documents]
            try:
                result, decision = _extract_group(group, msg, ctx, contents,
                                                  body_fallback=len(groups) == 1)
                extractions.append((group, result, decision, None))
            except Exception as e:
                log.error("Extraction failed for group %s of %s: %s", names, msg.id, e, exc_info=True)
                _warn(state, f"extraction failed for {', '.join(names)}: {e}")
                extractions.append((group, None, None, str(e)))

    for group, result, decision, error in extractions:
        if result is None:
            continue
        for w in result.warnings:
            trace.warn(w)
        trace.step("extracted",
                   source=result.source, method=result.extraction_method,
                   items=result.item_count, confidence=result.confidence,
                   escalation=decision.to_dict() if decision else None)
        state.setdefault("warnings", []).extend(result.warnings)
    state["extractions"] = extractions
    return _step(state, "extract")


def _assemble_request(group, result, decision, error, msg: InboundMessage,
                      verdict: ClassificationVerdict, classified: list,
                      ctx: PipelineContext) -> StructuredRequest:
    items = list(result.items) if result else []
    warnings = list(result.warnings) if result else [f"extraction failed: {error}"]
    placeholder = not items
    if placeholder:
        items = [make_placeholder_item(msg.subject)]
        warnings.append("no line items extracted, placeholder added")

    brand = group.brand if group else None
    if brand is None:
        counted = Counter(i.brand for i in items if i.brand)
        brand = counted.most_common(1)[0][0] if counted else None
    if brand:
        for item in items:
            item.brand = item.brand or brand

    external_ref = result.request_number if result else None
    if external_ref is None and group:
        external_ref = next((d.reference for d in group.documents if d.reference), None)

    if result is None:
        method = "placeholder"
    elif placeholder:
        method = "placeholder" if result.extraction_method == "none" else result.extraction_method
    else:
        method = result.extraction_method

    return StructuredRequest(
        internal_id=ctx.id_generator(msg.received_at),
        external_reference=external_ref,
        items=items,
        brand=brand,
        documents=[d.filename for d in group.documents] if group else [],
        technical_sheets=[s.filename for s in group.technical_sheets] if group else [],
        additional_attachments=[c.filename for c in classified if c.category == AttachmentCategory.OTHER],
        extraction_method=method,
        needs_review=bool(
            verdict.needs_review or placeholder
            or (result is not None and result.needs_verification)
            or any(i.needs_manual_review for i in items)
        ),
        warnings=warnings,
        escalation=decision or (EscalationDecision(mode=ctx.settings.llm_mode, error=error) if error else None),
        client_email=extract_email_address(msg.sender) or None,
        client_name=extract_sender_name(msg.sender) or None,
        subject=msg.subject or "",
    )


def _assemble_node(state: IntakeState) -> IntakeState:
    msg, ctx = state["message"], state["context"]
    requests = []
    for group, result, decision, error in state.get("extractions", []):
        req = _assemble_request(group, result, decision, error, msg, state["verdict"],
                                state.get("classified", []), ctx)
        requests.append(req)
        state["trace"].step("request assembled", internal_id=req.internal_id,
                            items=len(req.items), method=req.extraction_method,
                            needs_review=req.needs_review)
    state["requests"] = requests
    state["completed_at"] = datetime.now().isoformat()
    return _step(state, "assemble")


def build_intake_pipeline() -> StateGraph:
    """Build the intake workflow graph."""
    graph = StateGraph(IntakeState)

    graph.add_node("classify", _classify_node)
    graph.add_node("attachments", _attachments_node)
    graph.add_node("extract", _extract_node)
    graph.add_node("assemble", _assemble_node)

    graph.set_entry_point("classify")
    graph.add_conditional_edges("classify", _after_classify,
                                {"next": "attachments", END: END})
    graph.add_edge("attachments", "extract")
    graph.add_edge("extract", "assemble")
    graph.add_edge("assemble", END)

    return graph


# ═════════════════════════════════════════════════════════════════════════════
# Runner
# ═════════════════════════════════════════════════════════════════════════════

_compiled = None


def _get_compiled():
    global _compiled
    if _compiled is None:
        _compiled = build_intake_pipeline().compile()
    return _compiled


def run_pipeline(message: InboundMessage, context: PipelineContext = None) -> PipelineResult:
    """Classify, extract and assemble one message."""
    context = context or PipelineContext()
    trace = Trace("intake", message_id=message.id, subject=message.subject,
                  sender=extract_email_address(message.sender))
    start = time.time()

    try:
        state = _get_compiled().invoke({"message": message, "context": context, "trace": trace})
    except Exception as e:
        log.error("Pipeline failed for %s: %s", message.id, e, exc_info=True)
        trace.fail(str(e))
        verdict = ClassificationVerdict(Verdict.AMBIGUOUS, reasons=(f"pipeline error: {e}",),
                                        needs_review=True)
        return PipelineResult(message_id=message.id, verdict=verdict,
                              warnings=[f"pipeline error: {e}"], trace=trace.to_dict())

    requests = state.get("requests", [])
    verdict = state["verdict"]
    trace.ok(f"{len(requests)} requests" if not state.get("excluded") else f"excluded: {verdict.verdict.value}")
    duration_ms = int((time.time() - start) * 1000)
    log.info("Message %s: %s, %d requests, %d items in %dms",
             message.id, verdict.verdict.value, len(requests),
             sum(len(r.items) for r in requests), duration_ms,
             extra={"message_id": message.id, "verdict": verdict.verdict.value,
                    "items": sum(len(r.items) for r in requests), "duration_ms": duration_ms})
    return PipelineResult(
        message_id=message.id,
        verdict=verdict,
        requests=requests,
        warnings=list(state.get("warnings", [])),
        trace=trace.to_dict(),
    )


def run_batch(messages, context: PipelineContext = None, max_workers: int = None) -> list:
    """Run many messages concurrently over one read-only context.

    Results come back in input order; a failing message yields a result
    with an error warning instead of aborting the batch.
    """
    context = context or PipelineContext()
    messages = list(messages)
    workers = max_workers or context.settings.pipeline_workers

    def _one(msg):
        try:
            return run_pipeline(msg, context)
        except Exception as e:
            log.error("Batch item %s failed: %s", getattr(msg, "id", "?"), e, exc_info=True)
            verdict = ClassificationVerdict(Verdict.AMBIGUOUS, reasons=(f"pipeline error: {e}",),
                                            needs_review=True)
            return PipelineResult(message_id=getattr(msg, "id", ""), verdict=verdict,
                                  warnings=[f"pipeline error: {e}"])

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        return list(pool.map(_one, messages))
