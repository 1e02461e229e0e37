"""
item_extractor.py — Structured line items from request documents and bodies

Layers, cheapest first:
  1. TABLE  — header row detection (EN/FR synonyms) then column mapping,
              over pdfplumber / Excel / CSV / Word / form-field tables
  2. TEXT   — line-anchored patterns ("5 x Pump", "- 3 pcs Valve",
              "Bearing 6205 : 10", "1. Seal kit - 4", "10 EA 1234567 FILTER"),
              wrapped descriptions continued onto the next lines
  3. BODY   — the text layer over the cleaned email body

Quantities: positive numbers, "1,5" accepted, integers kept as int.
Missing or unparseable → 1 with is_estimated=True.

extract_items() never raises: on total failure it returns an empty
ExtractionResult carrying a warning.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from src.core.models import Attachment, ClassifiedAttachment, ExtractionResult, LineItem
from src.core.text import clean_body, message_text, normalize
from src.forms.document_text import DocumentContent, DocumentReadError, read_document

log = logging.getLogger("item_extract")

MAX_HEADER_SEARCH_ROWS = 40
MAX_LINE_LEN = 500
MIN_DESC_LEN = 3

# Confidence by layer before adjustments
LAYER_CONFIDENCE = {"form": 90, "table": 85, "text": 70, "body": 60}
OCR_PENALTY = 20
ESTIMATED_PENALTY = 15


# ═══════════════════════════════════════════════════════════════════════
# Sources
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ExtractionSource:
    name: str
    text: str = ""
    tables: list = field(default_factory=list)
    is_body: bool = False
    ocr_used: bool = False
    form: bool = False
    subject: str = ""
    warnings: list = field(default_factory=list)

    @classmethod
    def from_document(cls, name: str, content: DocumentContent, subject: str = "") -> "ExtractionSource":
        return cls(name=name, text=content.text, tables=list(content.tables),
                   ocr_used=content.ocr_used, form=content.method == "form",
                   subject=subject, warnings=list(content.warnings))

    @classmethod
    def from_attachment(cls, att, subject: str = "") -> "ExtractionSource":
        """Read an Attachment / ClassifiedAttachment. Raises DocumentReadError."""
        if isinstance(att, ClassifiedAttachment):
            att = att.attachment
        return cls.from_document(att.filename, read_document(att), subject=subject)

    @classmethod
    def from_body(cls, body: str, subject: str = "", body_html: str = None) -> "ExtractionSource":
        return cls(name="email_body", text=clean_body(message_text(body, body_html)),
                   is_body=True, subject=subject)


# ═══════════════════════════════════════════════════════════════════════
# Quantity parsing
# ═══════════════════════════════════════════════════════════════════════

_QTY_NUMBER = re.compile(r"\d+(?:[.,]\d+)*")


def parse_quantity(raw) -> tuple:
    """→ (quantity, is_estimated). '1,5' → 1.5, '1,000' → 1000, '' → (1, True)."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return (_as_number(float(raw)), False) if raw > 0 else (1, True)
    s = str(raw or "").replace("\u00a0", "").replace(" ", "")
    m = _QTY_NUMBER.search(s)
    if not m:
        return 1, True
    num = m.group(0)
    if re.fullmatch(r"\d{1,3}(?:,\d{3})+", num) or re.fullmatch(r"\d{1,3}(?:\.\d{3}){2,}", num):
        num = num.replace(",", "").replace(".", "")
    elif "," in num and "." in num:
        # "1.234,5" (FR) or "1,234.5" (EN): the last separator is decimal
        if num.rfind(",") > num.rfind("."):
            num = num.replace(".", "").replace(",", ".")
        else:
            num = num.replace(",", "")
    else:
        num = num.replace(",", ".")
    try:
        value = float(num)
    except ValueError:
        return 1, True
    if value <= 0:
        return 1, True
    return _as_number(value), False


def _as_number(value: float):
    return int(value) if value == int(value) else value


def is_suspicious_quantity(qty) -> bool:
    """Round tens in [10, 100] are what a misread line/position column looks like."""
    try:
        q = float(qty)
    except (TypeError, ValueError):
        return False
    return 10 <= q <= 100 and q % 10 == 0


def suspicious_share(items) -> float:
    if not items:
        return 0.0
    return sum(1 for i in items if is_suspicious_quantity(i.quantity)) / len(items)


# ═══════════════════════════════════════════════════════════════════════
# Layer 1: tables
# ═══════════════════════════════════════════════════════════════════════

# Checked in order; first kind whose pattern matches the header cell wins
COLUMN_KINDS = [
    ("ignore", re.compile(r"\b(?:prix|price|amount|montant|total|cost|cout|tva|vat|remise|discount)\b")),
    ("supplier_code", re.compile(r"\b(?:code\s+fournisseur|supplier\s+code|vendor\s+code|code\s+interne|internal\s+code)\b")),
    ("reference", re.compile(r"\b(?:part\s*(?:no|number|#|n)|p/?n|ref(?:erence)?|item\s*(?:code|no|number|#)|code(?:\s+(?:article|produit))?|article\s*(?:code|no|n)|mpn|sku|catalog(?:ue)?\s*(?:no|number))\b")),
    ("quantity", re.compile(r"^(?:q|qt|qty|qte|quant)\.?$|\bqty\b|\bquantit|\bqte\b|\bqt\.")),
    ("unit", re.compile(r"^(?:u|um|u/m|uom|unit|units|unite|unites)\.?$|\buom\b|\bunit\s+of\s+measure\b|\bunite\s+de\s+mesure\b")),
    ("brand", re.compile(r"\b(?:brand|marque|manufacturer|fabricant|make|constructeur)\b")),
    ("notes", re.compile(r"\b(?:notes?|remarks?|comments?|observations?|remarques?|commentaires?)\b")),
    ("description", re.compile(r"\b(?:description|designation|libelle|desc|article|nomenclature|produit|product|material|materiel|item\s+description|denomination)\b")),
    ("line", re.compile(r"^(?:line|ligne|item|pos|poste|no|n°|#|sr|s/n|n|rang|lig)\.?$")),
]


def classify_header_cell(cell) -> Optional[str]:
    text = normalize(str(cell or ""))
    if not text or len(text) > 40:
        return None
    for kind, rx in COLUMN_KINDS:
        if rx.search(text):
            return kind
    return None


def detect_header(table: list) -> tuple:
    """→ (header_row_index, {kind: column}) or (None, {})."""
    best_idx, best_map = None, {}
    for i, row in enumerate(table[:MAX_HEADER_SEARCH_ROWS]):
        col_map = {}
        for j, cell in enumerate(row):
            kind = classify_header_cell(cell)
            if kind and kind != "ignore" and kind not in col_map:
                col_map[kind] = j
        if "description" in col_map and len(col_map) >= 2 and len(col_map) > len(best_map):
            best_idx, best_map = i, col_map
    return best_idx, best_map


def _cell(row, col_map, kind) -> str:
    j = col_map.get(kind)
    if j is None or j >= len(row):
        return ""
    return str(row[j] or "").strip()


_TOTAL_ROW = re.compile(r"^(?:sous[-\s]?)?total\b|^sub[-\s]?total\b|^grand\s+total\b")


def extract_from_tables(tables: list) -> list:
    items = []
    last_map, last_width = None, None
    for table in tables:
        if not table:
            continue
        header_idx, col_map = detect_header(table)
        if header_idx is None:
            # Page-break continuation of the previous table
            if last_map and len(table[0]) == last_width:
                header_idx, col_map = -1, last_map
            else:
                continue
        last_map, last_width = col_map, len(table[header_idx]) if header_idx >= 0 else last_width
        header_norm = [normalize(str(c or "")) for c in table[header_idx]] if header_idx >= 0 else None

        for row in table[header_idx + 1:]:
            if not row or not any(str(c or "").strip() for c in row):
                continue
            if header_norm and [normalize(str(c or "")) for c in row] == header_norm:
                continue
            desc = re.sub(r"\s+", " ", _cell(row, col_map, "description"))
            if len(desc) < MIN_DESC_LEN or _TOTAL_ROW.search(normalize(desc)):
                continue
            qty, estimated = parse_quantity(_cell(row, col_map, "quantity"))
            line_no = None
            raw_line = _cell(row, col_map, "line")
            if raw_line.isdigit():
                line_no = int(raw_line)
            items.append(LineItem(
                description=desc,
                quantity=qty,
                reference=_cell(row, col_map, "reference") or None,
                supplier_code=_cell(row, col_map, "supplier_code") or None,
                brand=_cell(row, col_map, "brand") or None,
                unit=normalize_unit(_cell(row, col_map, "unit")),
                notes=_cell(row, col_map, "notes") or None,
                is_estimated=estimated,
                line_number=line_no,
            ))
    return items


# ═══════════════════════════════════════════════════════════════════════
# Layer 2: text lines
# ═══════════════════════════════════════════════════════════════════════

UNIT_WORDS = (r"pcs?|pieces?|pce|units?|unites?|ea|each|kg|kgs|g|m|ml|mm|l|lt|sets?|lots?|"
              r"paires?|pairs?|rouleaux?|rolls?|boites?|boxes?|jeux?|kits?|u")
_UNIT = rf"(?P<unit>{UNIT_WORDS})\.?"
_QTY = r"(?P<qty>\d+(?:[.,]\d+)?)"

UNIT_MAP = {
    "ea": "pcs", "each": "pcs", "pcs": "pcs", "pc": "pcs", "pce": "pcs", "piece": "pcs",
    "pieces": "pcs", "unit": "pcs", "units": "pcs", "unite": "pcs", "unites": "pcs", "u": "pcs",
    "kg": "kg", "kgs": "kg", "g": "g", "m": "m", "mm": "mm", "ml": "ml", "l": "l", "lt": "l",
    "set": "set", "sets": "set", "jeu": "set", "jeux": "set", "kit": "kit", "kits": "kit",
    "lot": "lot", "lots": "lot", "paire": "pair", "paires": "pair", "pair": "pair", "pairs": "pair",
    "rouleau": "roll", "rouleaux": "roll", "roll": "roll", "rolls": "roll",
    "boite": "box", "boites": "box", "box": "box", "boxes": "box",
}


def normalize_unit(raw: str) -> Optional[str]:
    key = normalize(raw or "").strip(". ")
    if not key:
        return None
    return UNIT_MAP.get(key, key)


LINE_PATTERNS = [
    # "1  10 EA 4521337 BEARING, BALL", "10 EA 4521337 BEARING"
    ("numbered-unit-code", re.compile(
        rf"^\s*(?:(?P<line>\d{{1,3}})[.)]?\s+)?{_QTY}\s+{_UNIT}\s+(?P<code>[A-Z0-9./-]*\d[A-Z0-9./-]*)\s+(?P<desc>.+)$", re.I)),
    # "10EA4521337BEARING"
    ("compact", re.compile(
        r"^\s*(?P<qty>\d{1,4})(?P<unit>EA|PCS|PC|KG|M|L|SET|UNIT|LOT)(?P<code>\d{5,8})(?P<desc>[A-Z].+)$")),
    # "PN-4521 - Ball bearing - 10"
    ("code-desc-qty", re.compile(
        rf"^\s*(?P<code>[A-Z0-9][A-Z0-9./-]*\d[A-Z0-9./-]*)\s+[-–]\s+(?P<desc>.+?)\s+[-–]\s+{_QTY}\s*(?:{_UNIT})?\s*$", re.I)),
    # "5 x Roulement SKF 6205", "- 2x Pump"
    ("qty-x-desc", re.compile(
        rf"^\s*(?:[-•*]\s*)?{_QTY}\s*(?:{_UNIT}\s*)?[x×*]\s*(?P<desc>[^\d\s].+)$", re.I)),
    # "- 3 pcs Valve", "• 4 Filtre"
    ("bullet-qty-desc", re.compile(
        rf"^\s*[-•*]\s*{_QTY}\s*(?:{_UNIT}\s+)?(?:(?:de|of)\s+)?(?P<desc>[^\d\s].+)$", re.I)),
    # "5 pcs Roulement", "10 m de câble"
    ("qty-unit-desc", re.compile(
        rf"^\s*{_QTY}\s*{_UNIT}\s+(?:(?:de|d'|of)\s*)?(?P<desc>[^\d\s].+)$", re.I)),
    # "1. Seal kit - 4", "2) Joint : 6 pcs"
    ("numbered-desc-qty", re.compile(
        rf"^\s*(?P<line>\d{{1,3}})[.)]\s*(?P<desc>.+?)\s*[-–:]\s*{_QTY}\s*(?:{_UNIT})?\s*$", re.I)),
    # "1   Ball bearing 6205   10"
    ("columns", re.compile(
        rf"^\s*(?P<line>\d{{1,3}})\s{{2,}}(?P<desc>.+?)\s{{2,}}{_QTY}\s*(?:{_UNIT})?\s*$", re.I)),
    # "Ball bearing (10 pcs)", "Ball bearing - qty: 10"
    ("desc-qty-unit", re.compile(
        rf"^\s*(?:[-•*]\s*)?(?P<desc>.+?)\s*[-–,(]\s*(?:(?:qty|qt[eé]|quantit[eé]|quantity)\s*[:.]?\s*)?{_QTY}\s*{_UNIT}\)?\s*$", re.I)),
    ("desc-qty-label", re.compile(
        rf"^\s*(?:[-•*]\s*)?(?P<desc>.+?)\s*[-–,;]?\s*(?:qty|qt[eé]|quantit[eé]|quantity)\s*[:.=]?\s*{_QTY}\s*(?:{_UNIT})?\s*$", re.I)),
    # "Roulement 6205 : 10 pcs"
    ("desc-colon-qty", re.compile(
        rf"^\s*(?:[-•*]\s*)?(?P<desc>.+?)\s*[:=]\s*{_QTY}\s*(?:{_UNIT})?\s*$", re.I)),
]

# Lines that are never items nor continuations
NOISE_LINE = re.compile(
    r"^\s*(?:page\s*\d+|\d+\s*/\s*\d+\s*$|tel\b|t[ée]l[ée]phone|fax\b|e-?mail\b|mail\s*:|www\.|https?://|"
    r"date\b|objet\b|subject\b|from\b|de\s*:|to\b|a\s*:|cc\b|sent\b|envoy[ée]|"
    r"total\b|sous[-\s]?total|sub[-\s]?total|signature|cordialement|bien\s+cordialement|salutations|"
    r"merci|thanks?\b|thank\s+you|bonjour|bonsoir|hello|hi\b|dear\b|madame|monsieur|messieurs|regards|"
    r"best\s+regards|kind\s+regards|adresse|address|siret|ice\s*:|rc\s*:|tva|vat\b|iban|swift|capital|"
    r"veuillez|please\s+find|ci-joint|pi[eè]ce\s+jointe|attached|delai|deadline|livraison\s*:|delivery\s*:)",
    re.I,
)

_LABEL_DESC = re.compile(
    r"^(?:qty|qte|quantite|quantity|ref|reference|date|tel|fax|total|page|n°|no|item|line|ligne|"
    r"pr|rfq|po|prix|price|delai|lead\s*time|validite|validity)\.?$")

_EXPLICIT_REF = re.compile(
    r"[(\[,;-]?\s*\b(?:r[ée]f(?:[ée]rence)?|p/?n|part\s*(?:no|number|#)|code)\s*[:.#]?\s*"
    r"(?P<ref>[A-Z0-9][A-Z0-9./-]{2,})[)\]]?", re.I)
_CODE_TOKEN = re.compile(r"(?<![\w/-])(?=[A-Z0-9./-]*\d)(?=[A-Z0-9./-]*[A-Z])[A-Z0-9][A-Z0-9./-]{3,}(?![\w/-])")


def _split_reference(desc: str) -> tuple:
    """→ (description without explicit ref, reference or None)."""
    m = _EXPLICIT_REF.search(desc)
    if m:
        cleaned = (desc[:m.start()] + " " + desc[m.end():]).strip(" ,;-–")
        cleaned = re.sub(r"\s+", " ", cleaned)
        if len(cleaned) >= MIN_DESC_LEN:
            return cleaned, m.group("ref")
        return desc, m.group("ref")
    m = _CODE_TOKEN.search(desc)
    return desc, (m.group(0) if m else None)


def _clean_desc(desc: str) -> str:
    return re.sub(r"\s+", " ", desc).strip(" \t-–•*:;,.")


def match_line(line: str) -> Optional[LineItem]:
    """One item from one line, or None."""
    if not line or len(line) > MAX_LINE_LEN or NOISE_LINE.match(normalize(line)):
        return None
    for name, rx in LINE_PATTERNS:
        m = rx.match(line)
        if not m:
            continue
        groups = m.groupdict()
        desc = _clean_desc(groups.get("desc") or "")
        if len(desc) < MIN_DESC_LEN or _LABEL_DESC.match(normalize(desc)) or not re.search(r"[A-Za-zÀ-ÿ]", desc):
            continue
        qty, estimated = parse_quantity(groups.get("qty"))
        desc, ref = _split_reference(desc)
        code = groups.get("code")
        line_no = groups.get("line")
        return LineItem(
            description=desc,
            quantity=qty,
            reference=ref if ref else code,
            supplier_code=code if (code and ref and ref != code) else None,
            unit=normalize_unit(groups.get("unit") or ""),
            is_estimated=estimated,
            line_number=int(line_no) if line_no else None,
        )
    return None


def _is_header_line(line: str) -> bool:
    cells = re.split(r"\s{2,}|\t|\|", line.strip())
    kinds = {classify_header_cell(c) for c in cells if c.strip()}
    kinds.discard(None)
    return len(kinds) >= 2


def extract_from_text(text: str, continuation: bool = True) -> list:
    items = []
    last = None
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            last = None
            continue
        item = match_line(line)
        if item:
            items.append(item)
            last = item
            continue
        if (continuation and last is not None and len(line) < 200
                and not NOISE_LINE.match(normalize(line)) and not _is_header_line(line)
                and re.search(r"[A-Za-zÀ-ÿ]", line)):
            last.description = f"{last.description} {_clean_desc(line)}".strip()
            if not last.reference:
                _, ref = _split_reference(line)
                last.reference = ref
        else:
            last = None
    return items


def dedupe_items(items: list) -> list:
    seen, unique = set(), []
    for item in items:
        key = (normalize(item.description), float(item.quantity))
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


# ═══════════════════════════════════════════════════════════════════════
# Request number / general description
# ═══════════════════════════════════════════════════════════════════════

REQUEST_NUMBER_PATTERNS = [
    re.compile(r"purchase\s+requisition\s*(?:no\.?|number|n°|#)?\s*[:.]?\s*([A-Z0-9][A-Z0-9-]{3,})", re.I),
    re.compile(r"\b(PR[\s_-]?\d{6,10})\b", re.I),
    re.compile(r"\b(RFQ[\s#:_-]*[A-Z]{0,3}-?\d{3,})\b", re.I),
    re.compile(r"\b(?:n°|no\.?|num[ée]ro)\s*(?:de\s+)?(?:la\s+)?(?:demande|consultation|dossier)\s*[:.]?\s*([A-Z0-9][A-Z0-9/-]{2,})", re.I),
    re.compile(r"\b(?:demande|consultation|request|enquiry|inquiry)\s*(?:n°|no\.?|#|number)\s*[:.]?\s*([A-Z0-9][A-Z0-9/-]{2,})", re.I),
    re.compile(r"\b(?:our|notre|votre|your)\s+r[ée]f(?:[ée]rence)?\.?\s*[:.]?\s*([A-Z0-9][A-Z0-9/-]{2,})", re.I),
]

_TITLE_LINE = re.compile(r"^\s*(?:objet|subject|object|re)\s*:\s*(.{5,200})$", re.I | re.M)


def find_request_number(*texts) -> Optional[str]:
    for text in texts:
        if not text:
            continue
        for rx in REQUEST_NUMBER_PATTERNS:
            m = rx.search(text)
            if m:
                return re.sub(r"\s+", "", m.group(1)).upper()
    return None


def find_general_description(text: str) -> Optional[str]:
    m = _TITLE_LINE.search(text or "")
    return m.group(1).strip() if m else None


# ═══════════════════════════════════════════════════════════════════════
# Entry points
# ═══════════════════════════════════════════════════════════════════════

def make_placeholder_item(subject: str = "") -> LineItem:
    """The single line emitted when nothing could be extracted."""
    desc = re.sub(r"\s+", " ", subject or "").strip() or "Request without extractable items"
    return LineItem(description=desc, quantity=1, needs_manual_review=True, is_estimated=True)


def _tables_text(tables: list) -> str:
    return "\n".join(" ".join(str(c or "") for c in row) for t in tables for row in t)


def extract_items(source: ExtractionSource, brand_lookup=None) -> ExtractionResult:
    """Run the table → text (or body) layers over one source."""
    result = ExtractionResult(source=source.name, warnings=list(source.warnings))
    try:
        table_items = dedupe_items(extract_from_tables(source.tables)) if source.tables else []
        text_items = dedupe_items(extract_from_text(source.text, continuation=not source.is_body))

        if source.is_body:
            items, method = text_items, "body"
        elif table_items and len(table_items) >= len(text_items):
            items, method = table_items, ("form" if source.form else "table")
        elif text_items:
            items, method = text_items, "text"
        else:
            items, method = [], "none"

        if brand_lookup is not None:
            for item in items:
                if not item.brand:
                    found = brand_lookup.detect_brands(item.description)
                    item.brand = found[0] if found else None

        result.items = items
        result.extraction_method = method
        result.request_number = find_request_number(source.text, _tables_text(source.tables), source.subject)
        result.general_description = find_general_description(source.text) or (source.subject or None)

        confidence = LAYER_CONFIDENCE.get(method, 0) if items else 0
        if source.ocr_used:
            confidence -= OCR_PENALTY
        if items and sum(1 for i in items if i.is_estimated) > len(items) / 2:
            confidence -= ESTIMATED_PENALTY
        result.confidence = max(0, confidence)

        result.needs_verification = bool(
            source.ocr_used
            or (items and suspicious_share(items) > 0.5)
            or any(i.needs_manual_review for i in items)
        )
        if not items:
            result.warnings.append(f"{source.name}: no line items found")
    except Exception as e:
        log.error("Extraction failed for %s: %s", source.name, e, exc_info=True)
        result.items = []
        result.extraction_method = "none"
        result.warnings.append(f"{source.name}: extraction failed ({e})")

    log.info("Extracted %d items from %s via %s (confidence %s)",
             len(result.items), source.name, result.extraction_method, result.confidence)
    return result


def extract_from_attachment(att, subject: str = "", brand_lookup=None) -> ExtractionResult:
    """Read + extract one attachment; unreadable files become a warning."""
    name = att.filename if isinstance(att, (Attachment, ClassifiedAttachment)) else str(att)
    try:
        source = ExtractionSource.from_attachment(att, subject=subject)
    except DocumentReadError as e:
        log.warning("Unreadable attachment %s: %s", name, e)
        return ExtractionResult(source=name, warnings=[str(e)])
    return extract_items(source, brand_lookup=brand_lookup)
