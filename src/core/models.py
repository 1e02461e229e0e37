"""
models.py — Data model for the RFQ intake pipeline

Everything here is created at the start of a run from one InboundMessage
and thrown away when the orchestrator returns. Inputs (InboundMessage,
Attachment) are frozen; result types are plain dataclasses with a
to_dict() for the API and the batch CLI.

Optional fields are explicit None when unknown, never empty strings.
"""

import base64
import email.utils
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from email.message import Message
from types import MappingProxyType
from typing import Optional, Mapping

from dateutil import parser as date_parser

log = logging.getLogger("rfq.models")


# ─── Enums ───────────────────────────────────────────────────────────────────

class Verdict(str, Enum):
    REQUEST = "REQUEST"
    SUPPLIER_OFFER = "SUPPLIER_OFFER"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    REMINDER_DUPLICATE = "REMINDER_DUPLICATE"
    AMBIGUOUS = "AMBIGUOUS"


class AttachmentCategory(str, Enum):
    REQUEST_DOCUMENT = "request_document"
    TECHNICAL_SHEET = "technical_sheet"
    DECORATIVE_IMAGE = "decorative_image"
    OTHER = "other"


# ─── Inputs ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Attachment:
    filename: str
    content_type: str = "application/octet-stream"
    content: bytes = b""
    size: int = -1
    is_inline: bool = False
    content_id: Optional[str] = None

    def __post_init__(self):
        if self.size < 0:
            object.__setattr__(self, "size", len(self.content or b""))

    @property
    def extension(self) -> str:
        name = (self.filename or "").lower()
        return name.rsplit(".", 1)[-1] if "." in name else ""

    @property
    def is_image(self) -> bool:
        return (self.content_type or "").lower().startswith("image/") or \
            self.extension in ("png", "jpg", "jpeg", "gif", "bmp", "tif", "tiff", "webp")

    @classmethod
    def from_dict(cls, d: dict) -> "Attachment":
        if d.get("content_base64"):
            content = base64.b64decode(d["content_base64"])
        else:
            raw = d.get("content", b"")
            content = raw.encode("utf-8") if isinstance(raw, str) else (raw or b"")
        return cls(
            filename=d.get("filename", ""),
            content_type=d.get("content_type") or "application/octet-stream",
            content=content,
            size=int(d.get("size", -1)),
            is_inline=bool(d.get("is_inline", False)),
            content_id=d.get("content_id") or None,
        )


@dataclass(frozen=True)
class InboundMessage:
    id: str
    sender: str = ""
    subject: str = ""
    body: str = ""
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: tuple = ()
    recipients: tuple = ()
    body_html: Optional[str] = None
    received_at: Optional[datetime] = None
    attachments: tuple = ()
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return default

    @classmethod
    def from_dict(cls, d: dict) -> "InboundMessage":
        """Build from the JSON shape accepted by the API and the CLI."""
        received = d.get("received_at")
        if isinstance(received, str) and received:
            try:
                received = date_parser.parse(received)
            except (ValueError, OverflowError):
                log.warning("Unparseable received_at %r", received)
                received = None
        refs = d.get("references") or ()
        if isinstance(refs, str):
            refs = tuple(refs.split())
        return cls(
            id=str(d.get("id") or d.get("message_id") or ""),
            sender=d.get("sender", ""),
            subject=d.get("subject", ""),
            body=d.get("body", ""),
            message_id=d.get("message_id") or None,
            in_reply_to=d.get("in_reply_to") or None,
            references=tuple(refs),
            recipients=tuple(d.get("recipients") or ()),
            body_html=d.get("body_html") or None,
            received_at=received if isinstance(received, datetime) else None,
            attachments=tuple(Attachment.from_dict(a) for a in d.get("attachments", [])),
            headers=MappingProxyType(dict(d.get("headers") or {})),
        )

    @classmethod
    def from_email(cls, msg: Message, msg_id: str = "") -> "InboundMessage":
        """Build from a parsed RFC 822 message (email.message_from_bytes)."""
        body_parts, html_parts, attachments = [], [], []
        for part in msg.walk():
            if part.is_multipart():
                continue
            ctype = part.get_content_type()
            disp = (part.get("Content-Disposition") or "").lower()
            filename = part.get_filename()
            cid = (part.get("Content-ID") or "").strip("<> ") or None
            if filename or "attachment" in disp or (cid and ctype.startswith("image/")):
                payload = part.get_payload(decode=True) or b""
                attachments.append(Attachment(
                    filename=filename or (cid or "unnamed"),
                    content_type=ctype,
                    content=payload,
                    is_inline="inline" in disp or bool(cid and "attachment" not in disp),
                    content_id=cid,
                ))
                continue
            if ctype in ("text/plain", "text/html"):
                payload = part.get_payload(decode=True) or b""
                charset = part.get_content_charset() or "utf-8"
                try:
                    text = payload.decode(charset, errors="replace")
                except LookupError:
                    text = payload.decode("utf-8", errors="replace")
                (body_parts if ctype == "text/plain" else html_parts).append(text)

        received = None
        if msg.get("Date"):
            try:
                received = email.utils.parsedate_to_datetime(msg["Date"])
            except (TypeError, ValueError):
                received = None

        message_id = (msg.get("Message-ID") or "").strip() or None
        return cls(
            id=msg_id or message_id or "",
            sender=msg.get("From", ""),
            subject=msg.get("Subject", ""),
            body="\n".join(body_parts),
            message_id=message_id,
            in_reply_to=(msg.get("In-Reply-To") or "").strip() or None,
            references=tuple((msg.get("References") or "").split()),
            recipients=tuple(a for _, a in email.utils.getaddresses(msg.get_all("To", []))),
            body_html="\n".join(html_parts) or None,
            received_at=received,
            attachments=tuple(attachments),
            headers=MappingProxyType({k: str(v) for k, v in msg.items()}),
        )


# ─── Classification ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ClassificationVerdict:
    verdict: Verdict
    scores: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    reasons: tuple = ()
    confidence: float = 0.0
    matched_request_id: Optional[str] = None
    needs_review: bool = False

    @property
    def is_request(self) -> bool:
        """AMBIGUOUS messages are processed as requests."""
        return self.verdict in (Verdict.REQUEST, Verdict.AMBIGUOUS)

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "scores": dict(self.scores),
            "reasons": list(self.reasons),
            "confidence": self.confidence,
            "matched_request_id": self.matched_request_id,
            "needs_review": self.needs_review,
        }


@dataclass
class ClassifiedAttachment:
    attachment: Attachment
    category: AttachmentCategory
    brand: Optional[str] = None
    confidence: Optional[float] = None
    related_to: Optional[str] = None
    reason: str = ""
    reference: Optional[str] = None

    @property
    def filename(self) -> str:
        return self.attachment.filename

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "category": self.category.value,
            "brand": self.brand,
            "confidence": self.confidence,
            "related_to": self.related_to,
            "reason": self.reason,
            "reference": self.reference,
        }


@dataclass
class AttachmentGroup:
    documents: list = field(default_factory=list)
    technical_sheets: list = field(default_factory=list)
    brand: Optional[str] = None


# ─── Extraction ──────────────────────────────────────────────────────────────

@dataclass
class LineItem:
    description: str
    quantity: float = 1
    reference: Optional[str] = None
    supplier_code: Optional[str] = None
    brand: Optional[str] = None
    unit: Optional[str] = None
    notes: Optional[str] = None
    needs_manual_review: bool = False
    is_estimated: bool = False
    line_number: Optional[int] = None

    def __post_init__(self):
        if not self.quantity or self.quantity <= 0:
            self.quantity = 1
            self.is_estimated = True

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExtractionResult:
    items: list = field(default_factory=list)
    request_number: Optional[str] = None
    general_description: Optional[str] = None
    needs_verification: bool = False
    extraction_method: str = "none"
    confidence: float = 0.0
    warnings: list = field(default_factory=list)
    source: Optional[str] = None

    @property
    def item_count(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "request_number": self.request_number,
            "general_description": self.general_description,
            "needs_verification": self.needs_verification,
            "extraction_method": self.extraction_method,
            "confidence": self.confidence,
            "warnings": list(self.warnings),
            "source": self.source,
        }


@dataclass
class EscalationDecision:
    mode: str
    escalated: bool = False
    reason: str = ""
    cheap_count: int = 0
    fallback_count: Optional[int] = None
    replaced: bool = False
    fallback_confidence: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StructuredRequest:
    internal_id: str
    items: list
    external_reference: Optional[str] = None
    brand: Optional[str] = None
    documents: list = field(default_factory=list)
    technical_sheets: list = field(default_factory=list)
    additional_attachments: list = field(default_factory=list)
    extraction_method: str = "none"
    needs_review: bool = False
    warnings: list = field(default_factory=list)
    escalation: Optional[EscalationDecision] = None
    client_email: Optional[str] = None
    client_name: Optional[str] = None
    subject: str = ""

    def to_dict(self) -> dict:
        return {
            "internal_id": self.internal_id,
            "external_reference": self.external_reference,
            "items": [i.to_dict() for i in self.items],
            "brand": self.brand,
            "documents": list(self.documents),
            "technical_sheets": list(self.technical_sheets),
            "additional_attachments": list(self.additional_attachments),
            "extraction_method": self.extraction_method,
            "needs_review": self.needs_review,
            "warnings": list(self.warnings),
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "client_email": self.client_email,
            "client_name": self.client_name,
            "subject": self.subject,
        }


@dataclass
class PipelineResult:
    message_id: str
    verdict: ClassificationVerdict
    requests: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    trace: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "verdict": self.verdict.to_dict(),
            "requests": [r.to_dict() for r in self.requests],
            "warnings": list(self.warnings),
            "trace": self.trace,
        }
