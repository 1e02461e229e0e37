"""
document_text.py — Text and table access for request documents

One entry point, read_document(attachment) → DocumentContent, dispatching on
the file extension / content type:

  PDF    fillable form fields via pypdf (rows rebuilt from "Qty1",
         "Description1" … field names), text + tables via pdfplumber,
         OCR via pdf2image + pytesseract when there is no text layer
  Excel  pandas (openpyxl engine), every sheet as a table
  CSV    pandas with delimiter sniffing (";" is common in FR exports)
  Word   python-docx paragraphs and tables
  Text   decoded bytes; HTML rendered through BeautifulSoup
  Images nothing to read (DocumentContent with method "image")

Unreadable content raises DocumentReadError; a missing OCR engine is only
a warning.
"""

import csv
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from io import BytesIO

import pandas as pd
import pdfplumber
import pytesseract
from docx import Document
from pdf2image import convert_from_bytes
from PIL import ImageEnhance
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from src.core.models import Attachment
from src.core.text import html_to_text

log = logging.getLogger("doc_text")

OCR_DPI = 300
OCR_MAX_PAGES = 10

PDF_EXT = ("pdf",)
EXCEL_EXT = ("xlsx", "xlsm", "xls")
CSV_EXT = ("csv",)
WORD_EXT = ("docx",)
TEXT_EXT = ("txt", "text", "eml")
HTML_EXT = ("htm", "html")

DOCUMENT_EXTENSIONS = PDF_EXT + EXCEL_EXT + CSV_EXT + WORD_EXT + ("doc",) + TEXT_EXT + HTML_EXT


class DocumentReadError(Exception):
    """An attachment could not be read at all."""


@dataclass
class DocumentContent:
    text: str = ""
    tables: list = field(default_factory=list)      # list of tables; table = list of rows (list of str)
    method: str = "none"                            # form | pdf-text | pdf-ocr | excel | csv | docx | text | html | image
    ocr_used: bool = False
    warnings: list = field(default_factory=list)
    form_fields: dict = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not any(self.tables)


def document_kind(att: Attachment) -> str:
    ext = att.extension
    ctype = (att.content_type or "").lower()
    if ext in PDF_EXT or ctype == "application/pdf":
        return "pdf"
    if ext in EXCEL_EXT or "spreadsheetml" in ctype or ctype == "application/vnd.ms-excel":
        return "excel"
    if ext in CSV_EXT or ctype == "text/csv":
        return "csv"
    if ext in WORD_EXT or "wordprocessingml" in ctype:
        return "docx"
    if ext == "doc" or ctype == "application/msword":
        return "doc"
    if ext in HTML_EXT or ctype == "text/html":
        return "html"
    if ext in TEXT_EXT or ctype.startswith("text/"):
        return "text"
    if att.is_image:
        return "image"
    return "unknown"


def read_document(att: Attachment) -> DocumentContent:
    """Read one attachment. Raises DocumentReadError when nothing can be read."""
    kind = document_kind(att)
    if not att.content:
        raise DocumentReadError(f"{att.filename}: empty content")
    log.debug("Reading %s as %s (%d bytes)", att.filename, kind, att.size)

    if kind == "pdf":
        return _read_pdf(att.content, att.filename)
    if kind == "excel":
        return _read_excel(att.content, att.filename)
    if kind == "csv":
        return _read_csv(att.content, att.filename)
    if kind == "docx":
        return _read_docx(att.content, att.filename)
    if kind == "html":
        return DocumentContent(text=html_to_text(_decode(att.content)), method="html")
    if kind == "text":
        return DocumentContent(text=_decode(att.content), method="text")
    if kind == "image":
        return DocumentContent(method="image")
    if kind == "doc":
        raise DocumentReadError(f"{att.filename}: legacy .doc format is not supported")
    raise DocumentReadError(f"{att.filename}: unsupported file type")


def _decode(data: bytes) -> str:
    for enc in ("utf-8", "cp1252"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1", errors="replace")


# ─── PDF ─────────────────────────────────────────────────────────────────────

# "Description 3", "qty_3", "Item.3" → ("description", 3)
_FIELD_ROW = re.compile(r"^(.*?\D)[\s_.\-]*(\d{1,3})$")


def _read_form_fields(data: bytes) -> dict:
    """Filled AcroForm values by field name (empty dict for flat PDFs)."""
    reader = PdfReader(BytesIO(data))
    fields = reader.get_fields() or {}
    values = {}
    for name, fld in fields.items():
        val = fld.get("/V", "") if isinstance(fld, dict) else ""
        val = str(val).strip() if val else ""
        if val and val not in ("/Off",):
            values[name] = val
    return values


def _form_fields_to_table(values: dict) -> list:
    """Rebuild a row table from numbered form fields. Header row first."""
    rows = defaultdict(dict)
    columns = []
    for name, val in values.items():
        m = _FIELD_ROW.match(name.strip())
        if not m:
            continue
        col = m.group(1).strip(" _.-")
        if col not in columns:
            columns.append(col)
        rows[int(m.group(2))][col] = val
    if len(columns) < 2 or not rows:
        return []
    table = [columns]
    for n in sorted(rows):
        table.append([rows[n].get(c, "") for c in columns])
    return table


def _read_pdf(data: bytes, filename: str) -> DocumentContent:
    content = DocumentContent(method="pdf-text")

    try:
        content.form_fields = _read_form_fields(data)
    except (PdfReadError, ValueError, KeyError) as e:
        log.debug("No form fields in %s: %s", filename, e)

    if content.form_fields:
        table = _form_fields_to_table(content.form_fields)
        if table:
            content.tables.append(table)
            content.method = "form"
            log.info("Form PDF %s: %d fields, %d rows", filename, len(content.form_fields), len(table) - 1)

    pages_text = []
    try:
        with pdfplumber.open(BytesIO(data)) as pdf:
            for page in pdf.pages:
                pages_text.append(page.extract_text() or "")
                for table in page.extract_tables() or []:
                    cleaned = [[str(c or "").strip() for c in row] for row in table if row]
                    if len(cleaned) >= 2:
                        content.tables.append(cleaned)
    except Exception as e:
        # pdfminer raises a variety of parser exceptions on damaged files
        if content.form_fields:
            content.warnings.append(f"{filename}: text layer unreadable ({e})")
            return content
        raise DocumentReadError(f"{filename}: not a readable PDF ({e})") from e

    content.text = "\n".join(pages_text).strip()
    if content.text or content.method == "form":
        return content

    text, warning = _ocr_pdf(data, filename)
    content.ocr_used = True
    content.method = "pdf-ocr"
    content.text = text
    if warning:
        content.warnings.append(warning)
    return content


def _ocr_pdf(data: bytes, filename: str) -> tuple:
    """OCR a scanned PDF. Returns (text, warning-or-None)."""
    try:
        images = convert_from_bytes(data, dpi=OCR_DPI, last_page=OCR_MAX_PAGES)
    except Exception as e:
        # poppler missing or PDF unrenderable
        log.warning("OCR render failed for %s: %s", filename, e)
        return "", f"{filename}: OCR unavailable ({e})"

    lines = []
    try:
        for img in images:
            img = img.convert("L")
            img = ImageEnhance.Contrast(img).enhance(2.0)
            lines.extend(pytesseract.image_to_string(img).split("\n"))
    except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as e:
        log.warning("Tesseract failed for %s: %s", filename, e)
        return "", f"{filename}: OCR unavailable ({e})"

    log.info("OCR %s: %d pages, %d lines", filename, len(images), len(lines))
    return "\n".join(lines).strip(), None


# ─── Spreadsheets ────────────────────────────────────────────────────────────

def _frame_to_rows(df: pd.DataFrame) -> list:
    rows = []
    for values in df.fillna("").astype(str).values.tolist():
        row = [v.strip() for v in values]
        if any(row):
            rows.append(row)
    return rows


def _read_excel(data: bytes, filename: str) -> DocumentContent:
    content = DocumentContent(method="excel")
    try:
        xls = pd.ExcelFile(BytesIO(data))
        for sheet in xls.sheet_names:
            df = pd.read_excel(xls, sheet_name=sheet, header=None, dtype=str)
            rows = _frame_to_rows(df)
            if rows:
                content.tables.append(rows)
    except Exception as e:
        # zipfile / openpyxl / xlrd raise their own types on corrupt workbooks
        raise DocumentReadError(f"{filename}: not a readable spreadsheet ({e})") from e
    content.text = "\n".join("\t".join(r) for t in content.tables for r in t)
    return content


def _read_csv(data: bytes, filename: str) -> DocumentContent:
    try:
        df = pd.read_csv(BytesIO(data), header=None, dtype=str, sep=None, engine="python",
                         encoding_errors="replace")
    except (ValueError, csv.Error, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DocumentReadError(f"{filename}: not a readable CSV ({e})") from e
    rows = _frame_to_rows(df)
    return DocumentContent(
        text="\n".join("\t".join(r) for r in rows),
        tables=[rows] if rows else [],
        method="csv",
    )


# ─── Word ────────────────────────────────────────────────────────────────────

def _read_docx(data: bytes, filename: str) -> DocumentContent:
    try:
        doc = Document(BytesIO(data))
    except Exception as e:
        # python-docx surfaces zipfile / lxml errors directly
        raise DocumentReadError(f"{filename}: not a readable Word document ({e})") from e
    content = DocumentContent(method="docx")
    parts = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        rows = []
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells]
            if any(cells):
                rows.append(cells)
        if len(rows) >= 2:
            content.tables.append(rows)
        parts.extend("\t".join(r) for r in rows)
    content.text = "\n".join(parts).strip()
    return content
