"""
message_classifier.py — What is this inbound message?

Cascade, first decisive step wins:
  0. AUTO-REPLY      Auto-Submitted / Precedence headers, "Out of office"
                     subjects                        → REMINDER_DUPLICATE
  1. PURCHASE ORDER  strict PO patterns              → PURCHASE_ORDER
  2. EXPLICIT RFQ    "RFQ", "demande de prix", "please quote us" …
                                                     → REQUEST (95)
  3. WEIGHTED        request cues vs offer cues (subject x1.5, body x1),
                     attachment names, reply-on-our-reference, known
                     supplier; hard rules force SUPPLIER_OFFER; margins
                     decide REQUEST / SUPPLIER_OFFER; anything else is
                     AMBIGUOUS (processed as a request, flagged)
  4. DUPLICATE       for REQUEST / AMBIGUOUS only: reply + DDP reference,
                     known external reference, In-Reply-To / References,
                     same subject + sender on a reply or chaser
                                                     → REMINDER_DUPLICATE

classify() never raises. The classifier holds only read-only inputs
(keyword config, lookup snapshots, settings), so one instance can serve
many threads.
"""

import logging
import re
from types import MappingProxyType

from src.core.config import Settings
from src.core.keywords import KeywordConfig
from src.core.models import ClassificationVerdict, InboundMessage, Verdict
from src.core.text import (
    body_window, is_reply_subject, message_text, normalize, normalize_lines,
    normalize_subject, strip_quoted,
)

log = logging.getLogger("msg_classifier")

EXPLICIT_CONFIDENCE = 95
PO_CONFIDENCE = 90
HARD_RULE_CONFIDENCE = 90
DUPLICATE_CONFIDENCE = 85
AUTO_REPLY_CONFIDENCE = 90

# Reply on one of our own references counts this much for the offer side
REPLY_ON_REFERENCE_WEIGHT = 3
KNOWN_SUPPLIER_WEIGHT = 2
DOCUMENT_ATTACHED_WEIGHT = 1

_DOCUMENT_EXT = re.compile(r"\.(?:pdf|xlsx?|xlsm|docx?|csv)$", re.I)


def _verdict(verdict, request=0.0, offer=0.0, reasons=(), confidence=0.0,
             matched=None, needs_review=False) -> ClassificationVerdict:
    return ClassificationVerdict(
        verdict=verdict,
        scores=MappingProxyType({"request": round(request, 2), "offer": round(offer, 2)}),
        reasons=tuple(reasons),
        confidence=round(min(100.0, max(0.0, confidence)), 1),
        matched_request_id=matched,
        needs_review=needs_review,
    )


class _Texts:
    """Normalized views of one message, computed once per classify()."""

    def __init__(self, message: InboundMessage, window: int):
        self.raw_subject = message.subject or ""
        self.subject = normalize_subject(self.raw_subject)
        self.is_reply = is_reply_subject(self.raw_subject)
        body = strip_quoted(message_text(message.body, message.body_html))
        self.body = normalize_lines(body_window(body, window))
        self.filenames = [normalize(a.filename or "") for a in message.attachments]
        self.document_names = [n for n in self.filenames if _DOCUMENT_EXT.search(n)]


class MessageClassifier:

    def __init__(self, keywords: KeywordConfig = None, duplicates=None, suppliers=None,
                 settings: Settings = None):
        self.keywords = keywords or KeywordConfig.default()
        self.duplicates = duplicates
        self.suppliers = suppliers
        self.settings = settings or Settings()
        self._internal_ref = re.compile(self.keywords.internal_reference, re.I)
        self._external_refs = [re.compile(p, re.I) for p in self.keywords.external_reference_patterns]
        self._offer_veto = re.compile(self.keywords.offer_filename_veto, re.I)

    # ─── Public ──────────────────────────────────────────────────────────

    def classify(self, message: InboundMessage) -> ClassificationVerdict:
        try:
            result = self._classify(message)
        except Exception as e:
            log.error("Classification failed for %s: %s", message.id, e, exc_info=True)
            result = _verdict(Verdict.AMBIGUOUS, reasons=[f"classification error: {e}"],
                              needs_review=True)
        log.info("Message %s → %s (%s)", message.id, result.verdict.value,
                 "; ".join(result.reasons[:3]),
                 extra={"message_id": message.id, "verdict": result.verdict.value})
        return result

    # ─── Cascade ─────────────────────────────────────────────────────────

    def _classify(self, message: InboundMessage) -> ClassificationVerdict:
        t = _Texts(message, self.settings.body_window_chars)

        auto = self.detect_auto_reply(message, t)
        if auto:
            return _verdict(Verdict.REMINDER_DUPLICATE, reasons=[f"auto-reply: {auto}"],
                            confidence=AUTO_REPLY_CONFIDENCE)

        po = self.detect_purchase_order(t)
        if po:
            return _verdict(Verdict.PURCHASE_ORDER, reasons=[f"purchase order: {po}"],
                            confidence=PO_CONFIDENCE)

        explicit = self.detect_explicit_request(t)
        if explicit:
            verdict = _verdict(Verdict.REQUEST, reasons=[f"explicit request: {explicit}"],
                               confidence=EXPLICIT_CONFIDENCE)
        else:
            verdict = self.score(message, t)

        if verdict.is_request:
            dup = self.detect_duplicate(message, t)
            if dup:
                internal_id, reason = dup
                return _verdict(Verdict.REMINDER_DUPLICATE,
                                request=verdict.scores.get("request", 0),
                                offer=verdict.scores.get("offer", 0),
                                reasons=list(verdict.reasons) + [reason],
                                confidence=DUPLICATE_CONFIDENCE, matched=internal_id)
        return verdict

    # ─── Step 0 ──────────────────────────────────────────────────────────

    def detect_auto_reply(self, message: InboundMessage, t: _Texts = None):
        """Reason string when the message is an automatic reply, else None."""
        t = t or _Texts(message, self.settings.body_window_chars)
        for name, value_pattern in self.keywords.auto_reply_headers:
            value = message.header(name, None)
            if value is None:
                continue
            if not value_pattern or re.search(value_pattern, value.strip(), re.I):
                return f"header {name}: {value.strip()}"
        for rule in self.keywords.auto_reply_subject_rules:
            if rule.search(t.subject):
                return rule.label
        return None

    # ─── Step 1 ──────────────────────────────────────────────────────────

    def detect_purchase_order(self, t: _Texts):
        for rule in self.keywords.po_rules:
            if rule.applies_to("subject") and rule.search(t.subject):
                return f"{rule.label} (subject)"
            if rule.applies_to("body") and rule.search(t.body):
                return f"{rule.label} (body)"
        for name in t.filenames:
            for rule in self.keywords.po_filename_rules:
                if rule.search(name):
                    return f"{rule.label}: {name}"
        return None

    # ─── Step 2 ──────────────────────────────────────────────────────────

    def detect_explicit_request(self, t: _Texts):
        for rule in self.keywords.explicit_subject_rules:
            if rule.search(t.subject):
                return rule.label
        for rule in self.keywords.explicit_body_rules:
            if rule.search(t.body):
                return rule.label
        return None

    # ─── Step 3 ──────────────────────────────────────────────────────────

    def _weigh(self, rules, t: _Texts, reasons: list, side: str) -> float:
        total = 0.0
        mult = self.keywords.subject_multiplier
        for rule in rules:
            if rule.applies_to("subject") and rule.search(t.subject):
                total += rule.weight * mult
                reasons.append(f"{side}: {rule.label} (subject, +{rule.weight * mult:g})")
            if rule.applies_to("body") and rule.search(t.body):
                total += rule.weight
                reasons.append(f"{side}: {rule.label} (body, +{rule.weight:g})")
        return total

    def _any(self, rules, t: _Texts) -> bool:
        return any(r.search(t.subject) or r.search(t.body) for r in rules)

    def score(self, message: InboundMessage, t: _Texts = None) -> ClassificationVerdict:
        t = t or _Texts(message, self.settings.body_window_chars)
        s = self.settings
        kw = self.keywords
        reasons = []

        request = self._weigh(kw.request_rules, t, reasons, "request")
        offer = self._weigh(kw.offer_rules, t, reasons, "offer")

        for name in t.filenames:
            request_like = any(r.search(name) for r in kw.request_filename_rules)
            for rule in kw.offer_filename_rules:
                if rule.search(name) and not self._offer_veto.search(name):
                    offer += rule.weight
                    reasons.append(f"offer: {rule.label} {name} (+{rule.weight:g})")
            for rule in kw.request_filename_rules:
                if rule.search(name):
                    request += rule.weight
                    reasons.append(f"request: {rule.label} {name} (+{rule.weight:g})")
            if name in t.document_names and not request_like and not any(
                    r.search(name) for r in kw.offer_filename_rules):
                request += DOCUMENT_ATTACHED_WEIGHT
                reasons.append(f"request: document attached {name} (+{DOCUMENT_ATTACHED_WEIGHT})")

        if t.is_reply and (self._internal_ref.search(t.subject) or self._internal_ref.search(t.body)):
            offer += REPLY_ON_REFERENCE_WEIGHT
            reasons.append(f"offer: reply on internal reference (+{REPLY_ON_REFERENCE_WEIGHT})")

        if self.suppliers is not None and self.suppliers.is_known_supplier(message.sender):
            offer += KNOWN_SUPPLIER_WEIGHT
            reasons.append(f"offer: known supplier sender (+{KNOWN_SUPPLIER_WEIGHT})")

        # Hard rules
        quote_no = self._any(kw.quote_number_rules, t)
        validity = self._any(kw.validity_rules, t)
        totals = self._any(kw.totals_rules, t)
        bank = self._any(kw.bank_rules, t)
        hard = None
        if quote_no and validity and (totals or bank):
            hard = "quote number + validity + " + ("totals" if totals else "bank details")
        elif bank and totals:
            hard = "bank details + totals"
        elif totals and validity:
            hard = "totals + validity"
        if hard:
            reasons.append(f"hard rule: {hard}")
            return _verdict(Verdict.SUPPLIER_OFFER, request, offer, reasons, HARD_RULE_CONFIDENCE)

        margin = abs(offer - request)
        if offer >= request + s.offer_margin and offer >= s.offer_min_score:
            return _verdict(Verdict.SUPPLIER_OFFER, request, offer, reasons, 50 + margin * 5)
        if request >= offer + s.request_margin and request >= s.request_min_score:
            return _verdict(Verdict.REQUEST, request, offer, reasons, 50 + margin * 5)

        if margin <= s.tie_margin and max(offer, request) >= s.request_min_score:
            reasons.append("near tie between request and offer cues")
        elif offer == 0 and request == 0:
            reasons.append("no classification signal")
        else:
            reasons.append("no decisive margin")
        return _verdict(Verdict.AMBIGUOUS, request, offer, reasons, 40, needs_review=True)

    # ─── Step 4 ──────────────────────────────────────────────────────────

    def _is_chaser(self, t: _Texts) -> bool:
        return self._any(self.keywords.chaser_rules, t)

    def detect_duplicate(self, message: InboundMessage, t: _Texts = None):
        """→ (prior internal id, reason) or None."""
        t = t or _Texts(message, self.settings.body_window_chars)
        chaser = self._is_chaser(t)

        if t.is_reply or chaser:
            m = self._internal_ref.search(t.subject) or self._internal_ref.search(t.body)
            if m:
                ref = m.group(0).upper()
                marker = "reply" if t.is_reply else "chaser"
                return ref, f"duplicate: {marker} on internal reference {ref}"

        if self.duplicates is None:
            return None

        for text in (t.subject, t.body):
            for rx in self._external_refs:
                for m in rx.finditer(text):
                    candidate = m.group(1) if rx.groups and m.group(1) else m.group(0)
                    hit = self.duplicates.find_by_external_reference(candidate)
                    if hit:
                        return hit, f"duplicate: external reference {candidate.upper()} already recorded"

        for mid in [message.in_reply_to] + list(message.references):
            if mid:
                hit = self.duplicates.find_by_message_id(mid)
                if hit:
                    return hit, f"duplicate: thread header matches {mid}"

        if t.is_reply or chaser:
            hit = self.duplicates.find_by_subject_and_sender(message.subject, message.sender)
            if hit:
                return hit, "duplicate: same subject and sender as a recorded request"
        return None


def classify_message(message: InboundMessage, keywords: KeywordConfig = None, duplicates=None,
                     suppliers=None, settings: Settings = None) -> ClassificationVerdict:
    """One-shot classification (builds a MessageClassifier per call)."""
    return MessageClassifier(keywords, duplicates, suppliers, settings).classify(message)
