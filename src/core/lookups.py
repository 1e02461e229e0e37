"""
lookups.py — Read-only lookups the pipeline consults

The pipeline never owns these: the mail collaborator builds a snapshot
before a run and rebuilds it wholesale afterwards (after it has recorded the
new requests). Nothing in classification or extraction writes to them, so a
snapshot can be shared by every worker thread of a batch.

Interfaces (typing.Protocol) plus the in-memory implementations used by the
API, the CLI and the tests:

  DuplicateIndex  — processed requests keyed by external ref / message-id /
                    (normalized subject, sender)
  SupplierIndex   — known supplier addresses and domains
  BrandIndex      — brand → aliases matcher
  NullFallbackExtractor — fallback capability that is not configured
"""

import json
import logging
import os
import re
from types import MappingProxyType
from typing import Optional, Protocol, Sequence

from src.core.models import ExtractionResult
from src.core.text import normalize, normalize_subject, extract_email_address, email_domain

log = logging.getLogger("rfq.lookups")


# ─── Interfaces ──────────────────────────────────────────────────────────────

class DuplicateLookup(Protocol):
    def find_by_external_reference(self, ref: str) -> Optional[str]: ...
    def find_by_message_id(self, message_id: str) -> Optional[str]: ...
    def find_by_subject_and_sender(self, normalized_subject: str, sender: str) -> Optional[str]: ...


class SupplierLookup(Protocol):
    def is_known_supplier(self, sender: str) -> bool: ...


class BrandLookup(Protocol):
    def detect_brands(self, text: str) -> list: ...


class FallbackExtractor(Protocol):
    def extract_via_fallback(self, attachments: Sequence) -> tuple:
        """Returns (ExtractionResult, confidence 0-100, warnings)."""
        ...


# ─── Key normalization ───────────────────────────────────────────────────────

def reference_key(ref: str) -> str:
    """'PR-000123 ' and 'pr 000123' share one key."""
    return re.sub(r"[\s_\-#:./]", "", normalize(ref or ""))


def message_id_key(message_id: str) -> str:
    return (message_id or "").strip().strip("<>").lower()


def subject_sender_key(subject: str, sender: str) -> str:
    return f"{normalize_subject(subject)}|{extract_email_address(sender)}"


def _load_json(path: str, default):
    if not path or not os.path.exists(path):
        return default
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        log.error("Cannot read lookup snapshot %s: %s", path, e)
        return default


# ═══════════════════════════════════════════════════════════════════════
# Duplicate / reminder index
# ═══════════════════════════════════════════════════════════════════════

class DuplicateIndex:
    """Immutable snapshot of processed requests.

    Each record: {"internal_id", "external_reference"?, "message_id"?,
    "subject"?, "sender"?}. Later records win on key collisions.
    """

    def __init__(self, by_reference=None, by_message_id=None, by_subject=None):
        self._by_reference = MappingProxyType(dict(by_reference or {}))
        self._by_message_id = MappingProxyType(dict(by_message_id or {}))
        self._by_subject = MappingProxyType(dict(by_subject or {}))

    @classmethod
    def from_records(cls, records) -> "DuplicateIndex":
        by_ref, by_mid, by_subj = {}, {}, {}
        for r in records or []:
            internal_id = r.get("internal_id")
            if not internal_id:
                continue
            refs = r.get("external_reference") or []
            if isinstance(refs, str):
                refs = [refs]
            for ref in refs:
                if reference_key(ref):
                    by_ref[reference_key(ref)] = internal_id
            mids = r.get("message_id") or []
            if isinstance(mids, str):
                mids = [mids]
            for mid in mids:
                if message_id_key(mid):
                    by_mid[message_id_key(mid)] = internal_id
            if r.get("subject") and r.get("sender"):
                by_subj[subject_sender_key(r["subject"], r["sender"])] = internal_id
        return cls(by_ref, by_mid, by_subj)

    @classmethod
    def from_file(cls, path: str) -> "DuplicateIndex":
        return cls.from_records(_load_json(path, []))

    def __len__(self):
        return len(set(self._by_reference.values()) | set(self._by_message_id.values())
                   | set(self._by_subject.values()))

    def find_by_external_reference(self, ref: str) -> Optional[str]:
        return self._by_reference.get(reference_key(ref))

    def find_by_message_id(self, message_id: str) -> Optional[str]:
        return self._by_message_id.get(message_id_key(message_id))

    def find_by_subject_and_sender(self, normalized_subject: str, sender: str) -> Optional[str]:
        return self._by_subject.get(subject_sender_key(normalized_subject, sender))


# ═══════════════════════════════════════════════════════════════════════
# Known suppliers
# ═══════════════════════════════════════════════════════════════════════

class SupplierIndex:
    """Known supplier addresses ('sales@acme.com') and domains ('acme.com')."""

    def __init__(self, entries=()):
        addresses, domains = set(), set()
        for e in entries:
            e = (e or "").strip().lower()
            if not e:
                continue
            if "@" in e:
                addresses.add(extract_email_address(e))
            else:
                domains.add(e.lstrip("@"))
        self._addresses = frozenset(addresses)
        self._domains = frozenset(domains)

    @classmethod
    def from_file(cls, path: str) -> "SupplierIndex":
        return cls(_load_json(path, []))

    def is_known_supplier(self, sender: str) -> bool:
        addr = extract_email_address(sender)
        if not addr:
            return False
        return addr in self._addresses or email_domain(addr) in self._domains


# ═══════════════════════════════════════════════════════════════════════
# Brand matcher
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_BRANDS = {
    "TEREX": [], "CATERPILLAR": ["CAT"], "KOMATSU": [], "HITACHI": [],
    "VOLVO": [], "LIEBHERR": [], "SANDVIK": [], "EPIROC": [], "METSO": [],
    "ATLAS COPCO": ["ATLASCOPCO"], "JOHN DEERE": ["DEERE"], "BELL": [],
    "SKF": [], "FAG": [], "NSK": [], "NTN": [], "TIMKEN": [], "INA": [], "KOYO": [],
    "SIEMENS": [], "ABB": [], "SCHNEIDER": ["SCHNEIDER ELECTRIC"],
    "ALLEN BRADLEY": ["ALLEN-BRADLEY"], "ROCKWELL": [], "OMRON": [],
    "PARKER": [], "REXROTH": ["BOSCH REXROTH"], "BOSCH": [], "FESTO": [], "SMC": [],
    "EATON": [], "VICKERS": [], "DANA": [], "CARRARO": [], "ZF": [], "CLARK": [],
    "ALLISON": [], "SPICER": [], "CUMMINS": [], "PERKINS": [], "DEUTZ": [],
    "SCANIA": [], "MAN": [], "MERCEDES": ["MERCEDES-BENZ"], "GATES": [],
    "DONALDSON": [], "FLEETGUARD": [], "MANN": ["MANN+HUMMEL", "MANN FILTER"],
    "HENGST": [], "HTM": [], "FLUKE": [], "3M": [], "LOCTITE": [],
    "GRUNDFOS": [], "KSB": [], "DANFOSS": [], "WEG": [], "SEW": ["SEW EURODRIVE", "SEW-EURODRIVE"],
}

# Aliases this short only match when written in capitals ("CAT", "MAN", "ZF")
_CASE_SENSITIVE_MAX_LEN = 4


class BrandIndex:
    """Whole-word brand/alias matcher. detect_brands returns canonical names
    in order of first appearance, without duplicates."""

    def __init__(self, brands: dict = None):
        brands = DEFAULT_BRANDS if brands is None else brands
        self._matchers = []
        for canonical, aliases in brands.items():
            for name in [canonical] + list(aliases or []):
                self._matchers.append((canonical.upper(), self._compile(name)))

    @staticmethod
    def _compile(name: str) -> re.Pattern:
        words = [re.escape(w) for w in re.split(r"[\s_-]+", name.strip()) if w]
        body = r"[\s_-]*".join(words)
        pattern = rf"(?<![A-Za-z0-9]){body}(?![A-Za-z0-9])"
        compact = re.sub(r"[\s_-]", "", name)
        flags = 0 if len(compact) <= _CASE_SENSITIVE_MAX_LEN and compact.isalpha() else re.I
        return re.compile(pattern, flags)

    @classmethod
    def from_file(cls, path: str) -> "BrandIndex":
        data = _load_json(path, None)
        if not isinstance(data, dict):
            return cls()
        return cls(data)

    def detect_brands(self, text: str) -> list:
        if not text:
            return []
        hits = []
        for canonical, rx in self._matchers:
            m = rx.search(text)
            if m:
                hits.append((m.start(), canonical))
        seen, ordered = set(), []
        for _, canonical in sorted(hits):
            if canonical not in seen:
                seen.add(canonical)
                ordered.append(canonical)
        return ordered


# ═══════════════════════════════════════════════════════════════════════
# Fallback capability placeholder
# ═══════════════════════════════════════════════════════════════════════

class NullFallbackExtractor:
    """Used when no fallback extractor is configured: always empty."""

    def extract_via_fallback(self, attachments: Sequence) -> tuple:
        return ExtractionResult(extraction_method="fallback"), 0.0, ["fallback extractor not configured"]
