"""
attachment_classifier.py — Request documents vs technical sheets vs decoration

Per attachment, in priority order:
  1. DECORATIVE  — signature/logo names (image001.png, logo*, Outlook-*,
                   cid refs, hex ids), inline images with a content-id,
                   winmail.dat, images under DECORATIVE_IMAGE_MAX_BYTES.
                   Other images are "other" (forwarded, never parsed).
  2. DOCUMENT    — filename scoring: technical keywords +20, request
                   keywords +15, reference number in the name +25,
                   spreadsheet +20. Technical wins only with
                   tech > request and tech >= 20. A lone substantive
                   document is always the request document.
  3. BRAND       — BrandLookup over the filename (and extracted text when
                   the caller has it).

group_attachments() then partitions the request documents: one group per
document, or a single group when every document carries the same brand.
Technical sheets follow the document they were linked to.
"""

import logging
import re
from difflib import SequenceMatcher
from typing import Optional

from src.core.config import Settings
from src.core.lookups import BrandIndex
from src.core.models import (
    Attachment, AttachmentCategory, AttachmentGroup, ClassifiedAttachment,
)
from src.core.text import normalize
from src.forms.document_text import document_kind

log = logging.getLogger("att_classifier")

# ─── Decorative images ───────────────────────────────────────────────────────

DECORATIVE_PATTERNS = [
    re.compile(p, re.I) for p in (
        r"outlook",
        r"^image\d+\.",
        r"logo",
        r"^(?:signature|footer|banner|header)",
        r"^att\d+\.",
        r"desc\.(?:png|jpe?g|gif)$",
        r"^cid[:\-_]",
        r"^[a-f0-9]{8,}[-_]",
        r"^inline",
        r"icon",
        r"spacer",
        r"pixel",
        r"tracking",
        r"~wrl\d+",
        r"^winmail\.dat$",
        r"^(?:facebook|linkedin|twitter|instagram|youtube|whatsapp)\b",
    )
]

# ─── Filename scoring ────────────────────────────────────────────────────────

TECH_WEIGHT = 20
REQUEST_WEIGHT = 15
REFERENCE_WEIGHT = 25
SPREADSHEET_WEIGHT = 20
UNCLEAR_PDF_WEIGHT = 10
TECH_MIN_SCORE = 20


def _word(p: str) -> re.Pattern:
    return re.compile(rf"(?<![a-z]){p}(?![a-z])")


TECH_KEYWORDS = [_word(p) for p in (
    r"fiche[\s_-]*technique", r"data[\s_-]?sheets?", r"specifications?", r"specs?",
    r"technical", r"technique", r"catalogue", r"catalog", r"documentation", r"brochure",
    r"manuel", r"manual", r"notice", r"plans?", r"drawings?", r"dessins?", r"schemas?",
    r"ft", r"ds", r"tech", r"certificate", r"certificat", r"nomenclature[\s_-]*constructeur",
)]

REQUEST_KEYWORDS = [_word(p) for p in (
    r"rfq", r"rfi", r"rfp", r"demande", r"request", r"quotation", r"quote",
    r"requisition", r"bi", r"devis", r"cotation", r"achat", r"purchase",
    r"consultation", r"enquiry", r"inquiry", r"besoins?", r"liste",
)]

REFERENCE_IN_NAME = re.compile(r"(?<![a-z])(?:bi|pr|rfq|ref|da)[\s_-]?(\d{4,})|(?<!\d)(\d{6,8})(?!\d)")

SPREADSHEET_KINDS = ("excel", "csv")
DOCUMENT_KINDS = ("pdf", "excel", "csv", "docx", "doc", "text")

# Technical sheet ↔ request document name overlap needed to pair them
LINK_MIN_OVERLAP = 10


def _stem(filename: str) -> str:
    name = normalize(filename or "")
    return name.rsplit(".", 1)[0] if "." in name else name


def is_decorative(att: Attachment, max_bytes: int = 10000) -> tuple:
    """→ (is_decorative, reason)."""
    name = (att.filename or "").strip().lower()
    if name == "winmail.dat":
        return True, "winmail.dat"
    if not att.is_image:
        return False, ""
    for rx in DECORATIVE_PATTERNS:
        if rx.search(name):
            return True, f"decorative name ({rx.pattern})"
    if att.is_inline and att.content_id:
        return True, "inline image referenced by content-id"
    if att.size < max_bytes:
        return True, f"tiny image ({att.size} bytes)"
    return False, ""


def score_filename(att: Attachment, kind: str, small_pdf_bytes: int = 50000) -> tuple:
    """→ (tech_score, request_score, reference-or-None)."""
    stem = _stem(att.filename)
    tech = sum(TECH_WEIGHT for rx in TECH_KEYWORDS if rx.search(stem))
    req = sum(REQUEST_WEIGHT for rx in REQUEST_KEYWORDS if rx.search(stem))

    reference = None
    m = REFERENCE_IN_NAME.search(stem)
    if m:
        req += REFERENCE_WEIGHT
        reference = m.group(0).upper().replace(" ", "")

    if kind in SPREADSHEET_KINDS:
        req += SPREADSHEET_WEIGHT
    elif kind == "pdf" and tech == 0 and req == 0:
        if att.size < small_pdf_bytes:
            tech += UNCLEAR_PDF_WEIGHT
        else:
            req += UNCLEAR_PDF_WEIGHT
    return tech, req, reference


def _brand_of(att: Attachment, brand_lookup, text: str = "") -> Optional[str]:
    if brand_lookup is None:
        return None
    # Filenames are matched upper-cased so short capitals-only aliases apply
    name = re.sub(r"[_\-.]+", " ", _stem(att.filename)).upper()
    found = brand_lookup.detect_brands(name)
    if not found and text:
        found = brand_lookup.detect_brands(text)
    return found[0] if found else None


def classify_attachment(att: Attachment, settings: Settings = None, brand_lookup=None,
                        text: str = "") -> ClassifiedAttachment:
    settings = settings or Settings()

    decorative, reason = is_decorative(att, settings.decorative_image_max_bytes)
    if decorative:
        return ClassifiedAttachment(att, AttachmentCategory.DECORATIVE_IMAGE, confidence=90, reason=reason)
    if att.is_image:
        return ClassifiedAttachment(att, AttachmentCategory.OTHER, confidence=80, reason="image attachment")

    kind = document_kind(att)
    if kind not in DOCUMENT_KINDS:
        return ClassifiedAttachment(att, AttachmentCategory.OTHER, confidence=50,
                                    reason=f"unsupported type ({kind})")

    tech, req, reference = score_filename(att, kind, settings.small_pdf_bytes)
    brand = _brand_of(att, brand_lookup, text)
    if tech > req and tech >= TECH_MIN_SCORE:
        return ClassifiedAttachment(att, AttachmentCategory.TECHNICAL_SHEET, brand=brand,
                                    confidence=min(100, max(50, tech)), reference=reference,
                                    reason=f"technical name (tech={tech}, request={req})")
    return ClassifiedAttachment(att, AttachmentCategory.REQUEST_DOCUMENT, brand=brand,
                                confidence=min(100, max(50, req)), reference=reference,
                                reason=f"request document (tech={tech}, request={req})")


def _name_overlap(a: str, b: str) -> int:
    sm = SequenceMatcher(None, _stem(a), _stem(b))
    return sum(block.size for block in sm.get_matching_blocks())


def link_technical_sheet(sheet: ClassifiedAttachment, documents: list) -> Optional[str]:
    """Filename of the request document a technical sheet belongs to."""
    if not documents:
        return None
    if len(documents) == 1:
        return documents[0].filename
    if sheet.brand:
        for doc in documents:
            if doc.brand == sheet.brand:
                return doc.filename
    best, best_score = None, 0
    for doc in documents:
        score = _name_overlap(sheet.filename, doc.filename)
        if score > best_score:
            best, best_score = doc, score
    if best is not None and best_score > LINK_MIN_OVERLAP:
        return best.filename
    return documents[0].filename


def classify_attachments(attachments, brand_lookup=None, settings: Settings = None,
                         texts: dict = None) -> list:
    """Classify every attachment of one message (order preserved).

    texts: optional {filename: extracted text} used for brand tagging.
    """
    settings = settings or Settings()
    if brand_lookup is None:
        brand_lookup = BrandIndex()
    texts = texts or {}

    classified = [classify_attachment(a, settings, brand_lookup, texts.get(a.filename, ""))
                  for a in attachments]

    substantive = [c for c in classified if c.category in
                   (AttachmentCategory.REQUEST_DOCUMENT, AttachmentCategory.TECHNICAL_SHEET)]
    if len(substantive) == 1 and substantive[0].category == AttachmentCategory.TECHNICAL_SHEET:
        only = substantive[0]
        only.category = AttachmentCategory.REQUEST_DOCUMENT
        only.reason = f"sole substantive document ({only.reason})"

    documents = [c for c in classified if c.category == AttachmentCategory.REQUEST_DOCUMENT]
    for c in classified:
        if c.category == AttachmentCategory.TECHNICAL_SHEET:
            c.related_to = link_technical_sheet(c, documents)

    log.info("Attachments: %s", ", ".join(f"{c.filename}={c.category.value}" for c in classified) or "none")
    return classified


def group_attachments(classified) -> list:
    """Partition request documents into AttachmentGroups.

    0 documents → [], 1 → one group, several with one shared brand → one
    merged group, otherwise one group per document.
    """
    documents = [c for c in classified if c.category == AttachmentCategory.REQUEST_DOCUMENT]
    sheets = [c for c in classified if c.category == AttachmentCategory.TECHNICAL_SHEET]
    if not documents:
        return []

    brands = {d.brand for d in documents}
    if len(documents) == 1 or (len(brands) == 1 and None not in brands):
        brand = documents[0].brand or next((s.brand for s in sheets if s.brand), None)
        return [AttachmentGroup(documents=list(documents), technical_sheets=list(sheets), brand=brand)]

    groups = [AttachmentGroup(documents=[d], brand=d.brand) for d in documents]
    by_name = {d.filename: g for d, g in zip(documents, groups)}
    for sheet in sheets:
        target = by_name.get(sheet.related_to)
        if target is None and sheet.brand:
            target = next((g for g in groups if g.brand == sheet.brand), None)
        (target or groups[0]).technical_sheets.append(sheet)
    return groups
