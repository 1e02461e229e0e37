"""
Shared pytest fixtures for the RFQ intake test suite.

Documents (xlsx / docx / csv) are generated in memory with the same
libraries the readers use, so no binary fixtures live in the repo.
"""
import base64
import json
import os
import sys
from io import BytesIO

import pytest

_PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from src.core.config import Settings  # noqa: E402
from src.core.lookups import BrandIndex, DuplicateIndex, SupplierIndex  # noqa: E402
from src.core.models import Attachment, ExtractionResult, InboundMessage, LineItem  # noqa: E402

_ENV_VARS = (
    "LLM_MODE", "LLM_MIN_ITEMS_THRESHOLD", "LLM_MIN_CONFIDENCE_THRESHOLD",
    "ANTHROPIC_API_KEY", "AGENT_EXTRACTION_KEY", "API_USER", "API_PASS",
    "RFQ_KEYWORDS_FILE", "RFQ_DUPLICATE_INDEX_FILE", "RFQ_BRANDS_FILE",
    "RFQ_SUPPLIERS_FILE", "PIPELINE_WORKERS",
)


# ── Environment isolation ─────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """No real API keys or operator overrides leak into tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    from src.api.trace import clear_traces
    clear_traces()
    yield


@pytest.fixture
def temp_data_dir(tmp_path):
    data = tmp_path / "data"
    data.mkdir()
    return str(data)


def _write_json(path, obj):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f)
    return path


# ── Settings & lookups ────────────────────────────────────────────────────────

@pytest.fixture
def settings():
    """Default settings with the fallback extractor switched off."""
    return Settings(llm_mode="off")


@pytest.fixture
def duplicate_records():
    return [
        {"internal_id": "DDP-20260105-101", "external_reference": "PR-00012345",
         "message_id": "<orig-101@client.example>",
         "subject": "Demande de prix pompes", "sender": "achats@client.example"},
        {"internal_id": "DDP-20260110-205", "external_reference": ["RFQ-7781"],
         "subject": "Besoin filtres", "sender": "Jean Martin <jean@mine.example>"},
    ]


@pytest.fixture
def duplicates(duplicate_records):
    return DuplicateIndex.from_records(duplicate_records)


@pytest.fixture
def suppliers():
    return SupplierIndex(["sales@bearings-direct.example", "acme-supply.example"])


@pytest.fixture
def brands():
    return BrandIndex()


# ── Messages ──────────────────────────────────────────────────────────────────

@pytest.fixture
def make_message():
    """Factory: make_message(subject=..., body=..., attachments=[...], **fields)."""
    counter = {"n": 0}

    def _make(subject="", body="", attachments=(), sender="Client Buyer <buyer@client.example>",
              **kwargs):
        counter["n"] += 1
        kwargs.setdefault("id", f"msg-{counter['n']}")
        return InboundMessage(sender=sender, subject=subject, body=body,
                              attachments=tuple(attachments), **kwargs)
    return _make


def make_attachment(filename, content=b"", content_type=None, **kwargs):
    if content_type is None:
        content_type = {
            "pdf": "application/pdf",
            "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "csv": "text/csv",
            "txt": "text/plain",
            "png": "image/png",
            "jpg": "image/jpeg",
        }.get(filename.rsplit(".", 1)[-1].lower(), "application/octet-stream")
    if isinstance(content, str):
        content = content.encode("utf-8")
    return Attachment(filename=filename, content_type=content_type, content=content, **kwargs)


@pytest.fixture
def attachment():
    return make_attachment


# ── Generated documents ───────────────────────────────────────────────────────

ITEM_ROWS = [
    ["Item", "Description", "Qty", "Unit", "Part Number"],
    ["1", "Ball bearing SKF 6205", "10", "EA", "6205-2RS"],
    ["2", "Hydraulic filter element", "4", "PCS", "HF-7781"],
    ["3", "O-ring seal kit", "2", "SET", "OR-KIT-12"],
]


def xlsx_bytes(rows=None):
    import pandas as pd
    rows = rows or ITEM_ROWS
    buf = BytesIO()
    pd.DataFrame(rows).to_excel(buf, index=False, header=False, engine="openpyxl")
    return buf.getvalue()


def docx_bytes(rows=None, paragraphs=("Demande de prix",)):
    from docx import Document
    rows = rows or ITEM_ROWS
    doc = Document()
    for p in paragraphs:
        doc.add_paragraph(p)
    table = doc.add_table(rows=len(rows), cols=len(rows[0]))
    for i, row in enumerate(rows):
        for j, value in enumerate(row):
            table.cell(i, j).text = value
    buf = BytesIO()
    doc.save(buf)
    return buf.getvalue()


def csv_bytes(rows=None, sep=";"):
    rows = rows or ITEM_ROWS
    return ("\n".join(sep.join(r) for r in rows) + "\n").encode("utf-8")


def blank_pdf_bytes():
    from pypdf import PdfWriter
    writer = PdfWriter()
    writer.add_blank_page(width=595, height=842)
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


@pytest.fixture
def item_rows():
    return [list(r) for r in ITEM_ROWS]


@pytest.fixture
def rfq_xlsx():
    return make_attachment("RFQ_4521_items.xlsx", xlsx_bytes())


# ── Fallback extractor double ─────────────────────────────────────────────────

class FakeFallbackExtractor:
    """Returns a fixed result; records every call."""

    def __init__(self, items=None, confidence=80.0, warnings=None, error=None):
        self.items = items if items is not None else []
        self.confidence = confidence
        self.warnings = warnings or []
        self.error = error
        self.calls = []

    def extract_via_fallback(self, attachments):
        self.calls.append(list(attachments))
        if self.error:
            raise self.error
        result = ExtractionResult(items=[LineItem(**i) if isinstance(i, dict) else i
                                         for i in self.items],
                                  extraction_method="fallback", confidence=self.confidence)
        return result, self.confidence, list(self.warnings)


@pytest.fixture
def fake_fallback():
    return FakeFallbackExtractor


# ── Flask test client ─────────────────────────────────────────────────────────

def _basic_auth_header(user="rfq", pw="test-pass"):
    creds = base64.b64encode(f"{user}:{pw}".encode()).decode()
    return {"Authorization": f"Basic {creds}"}


class AuthenticatedClient:
    """Wraps Flask test client to add Basic Auth headers to every request."""
    def __init__(self, client, headers):
        self._client = client
        self._headers = headers

    def get(self, *args, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        return self._client.get(*args, **kwargs)

    def post(self, *args, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        return self._client.post(*args, **kwargs)

    def delete(self, *args, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        return self._client.delete(*args, **kwargs)


@pytest.fixture
def pipeline_context(settings, duplicates, suppliers, brands):
    from src.auto.pipeline import PipelineContext, RequestIdGenerator
    return PipelineContext(settings=settings, duplicates=duplicates, suppliers=suppliers,
                           brands=brands, id_generator=RequestIdGenerator())


@pytest.fixture
def app(monkeypatch, pipeline_context):
    """Flask app serving a test PipelineContext."""
    monkeypatch.setenv("API_USER", "rfq")
    monkeypatch.setenv("API_PASS", "test-pass")
    from app import create_app
    flask_app = create_app(context=pipeline_context)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    """Authenticated Flask test client (HTTP Basic Auth on every request)."""
    with app.test_client() as c:
        yield AuthenticatedClient(c, _basic_auth_header())


@pytest.fixture
def anon_client(app):
    """Unauthenticated test client."""
    with app.test_client() as c:
        yield c


@pytest.fixture
def write_json(temp_data_dir):
    def _write(name, obj):
        return _write_json(os.path.join(temp_data_dir, name), obj)
    return _write
