"""Tests for line-item extraction: quantities, table headers, text patterns,
body extraction, confidence and verification flags."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import ITEM_ROWS, make_attachment, xlsx_bytes
from src.core.lookups import BrandIndex
from src.core.models import LineItem
from src.forms.item_extractor import (
    ExtractionSource, classify_header_cell, dedupe_items, detect_header,
    extract_from_attachment, extract_from_tables, extract_from_text, extract_items,
    find_general_description, find_request_number, is_suspicious_quantity,
    make_placeholder_item, match_line, normalize_unit, parse_quantity,
)


class TestQuantity:

    def test_integers(self):
        assert parse_quantity("10") == (10, False)
        assert parse_quantity(4) == (4, False)

    def test_decimal_comma(self):
        assert parse_quantity("1,5") == (1.5, False)

    def test_thousands(self):
        assert parse_quantity("1,000") == (1000, False)
        assert parse_quantity("2 500") == (2500, False)
        assert parse_quantity("1.234,5") == (1234.5, False)

    def test_missing_defaults_to_one(self):
        assert parse_quantity("") == (1, True)
        assert parse_quantity(None) == (1, True)
        assert parse_quantity("n/a") == (1, True)
        assert parse_quantity(0) == (1, True)

    def test_line_item_never_zero(self):
        item = LineItem("Pump", quantity=0)
        assert item.quantity == 1
        assert item.is_estimated

    def test_suspicious(self):
        assert is_suspicious_quantity(10)
        assert is_suspicious_quantity(100)
        assert not is_suspicious_quantity(5)
        assert not is_suspicious_quantity(15)
        assert not is_suspicious_quantity(110)


class TestHeaders:

    def test_english_header(self):
        idx, cols = detect_header(ITEM_ROWS)
        assert idx == 0
        assert cols == {"line": 0, "description": 1, "quantity": 2, "unit": 3, "reference": 4}

    def test_french_cells(self):
        assert classify_header_cell("Désignation") == "description"
        assert classify_header_cell("Qté") == "quantity"
        assert classify_header_cell("Référence") == "reference"
        assert classify_header_cell("Prix unitaire") == "ignore"
        assert classify_header_cell("N°") == "line"
        assert classify_header_cell("Code fournisseur") == "supplier_code"

    def test_header_below_title_rows(self):
        table = [["Demande de prix", ""], ["", ""], ["Description", "Qty"], ["Pump", "2"]]
        assert detect_header(table)[0] == 2

    def test_no_description_no_header(self):
        assert detect_header([["Qty", "Unit"], ["2", "EA"]]) == (None, {})


class TestTables:

    def test_items_from_table(self):
        items = extract_from_tables([ITEM_ROWS])
        assert len(items) == 3
        first = items[0]
        assert first.description == "Ball bearing SKF 6205"
        assert first.quantity == 10
        assert first.unit == "pcs"
        assert first.reference == "6205-2RS"
        assert first.line_number == 1
        assert items[2].unit == "set"

    def test_french_table_with_price_column(self):
        table = [["N°", "Désignation", "Qté", "Référence", "Prix unitaire"],
                 ["1", "Vanne DN50", "2", "VN-50", ""],
                 ["", "Total", "", "", ""]]
        items = extract_from_tables([table])
        assert len(items) == 1
        assert items[0].reference == "VN-50"
        assert items[0].quantity == 2

    def test_continuation_table(self):
        second_page = [["4", "Gear pump", "1", "EA", "GP-1"]]
        items = extract_from_tables([ITEM_ROWS[:2], second_page])
        assert [i.description for i in items] == ["Ball bearing SKF 6205", "Gear pump"]

    def test_missing_quantity_is_estimated(self):
        items = extract_from_tables([[["Description", "Qty"], ["Pump impeller", ""]]])
        assert items[0].quantity == 1
        assert items[0].is_estimated

    def test_repeated_header_skipped(self):
        table = [["Description", "Qty"], ["Pump", "2"], ["Description", "Qty"], ["Valve", "3"]]
        assert [i.description for i in extract_from_tables([table])] == ["Pump", "Valve"]


class TestLines:

    def test_qty_x_desc(self):
        item = match_line("5 x Roulement SKF 6205")
        assert item.quantity == 5
        assert item.description == "Roulement SKF 6205"
        assert not item.is_estimated

    def test_bullet_with_unit(self):
        item = match_line("- 3 pcs Valve DN50")
        assert item.quantity == 3
        assert item.unit == "pcs"
        assert item.description == "Valve DN50"
        assert item.reference == "DN50"

    def test_desc_colon_qty(self):
        item = match_line("Roulement 6205 : 10 pcs")
        assert item.description == "Roulement 6205"
        assert item.quantity == 10

    def test_numbered_desc_qty(self):
        item = match_line("1. Seal kit - 4")
        assert item.description == "Seal kit"
        assert item.quantity == 4
        assert item.line_number == 1

    def test_unit_and_code_columns(self):
        item = match_line("1 10 EA 4521337 BEARING, BALL")
        assert item.quantity == 10
        assert item.reference == "4521337"
        assert item.line_number == 1
        unnumbered = match_line("10 EA 4521337 FILTER, OIL")
        assert unnumbered.quantity == 10
        assert unnumbered.reference == "4521337"

    def test_compact(self):
        item = match_line("10EA4521337BEARING")
        assert item.quantity == 10
        assert item.reference == "4521337"

    def test_code_desc_qty(self):
        item = match_line("PN-4521 - Ball bearing - 10")
        assert item.reference == "PN-4521"
        assert item.description == "Ball bearing"
        assert item.quantity == 10

    def test_parenthesised_qty(self):
        item = match_line("Ball bearing 6205 (10 pcs)")
        assert item.description == "Ball bearing 6205"
        assert item.quantity == 10

    def test_qty_label(self):
        assert match_line("Filtre à huile - qté : 4").quantity == 4
        assert match_line("Oil filter, qty 6").quantity == 6

    def test_explicit_reference(self):
        item = match_line("2 x Joint torique ref: OR-2040")
        assert item.reference == "OR-2040"
        assert "OR-2040" not in item.description

    def test_noise_lines(self):
        for line in ("Tel: 0522 123456", "Total: 45", "Page 1/2", "Bonjour,", "Qty: 10", ""):
            assert match_line(line) is None, line

    def test_continuation(self):
        text = "1. Seal kit - 4\n   for pump model X200\n2. Gasket - 6"
        items = extract_from_text(text)
        assert len(items) == 2
        assert items[0].description == "Seal kit for pump model X200"
        assert items[0].reference == "X200"

    def test_no_continuation_for_bodies(self):
        text = "1. Seal kit - 4\n   for pump model X200\n2. Gasket - 6"
        items = extract_from_text(text, continuation=False)
        assert items[0].description == "Seal kit"

    def test_dedupe(self):
        items = extract_from_text("5 x Pompe\n5 x pompe\n2 x Pompe")
        assert len(dedupe_items(items)) == 2

    def test_units(self):
        assert normalize_unit("EA") == "pcs"
        assert normalize_unit("Pièces") == "pcs"
        assert normalize_unit("") is None
        assert normalize_unit("drum") == "drum"


class TestHeaderFields:

    def test_request_number(self):
        assert find_request_number("Purchase Requisition No: PR-20261234") == "PR-20261234"
        assert find_request_number("", None, "Votre référence : AB-7781") == "AB-7781"
        assert find_request_number("nothing here") is None

    def test_general_description(self):
        assert find_general_description("Objet : Pièces de rechange pompe\n1 x Pompe") == "Pièces de rechange pompe"
        assert find_general_description("no title") is None


class TestExtractItems:

    def test_body_source(self):
        source = ExtractionSource.from_body("Bonjour,\n\n5 x Roulement SKF 6205\n\nCordialement",
                                            subject="Demande")
        result = extract_items(source, brand_lookup=BrandIndex())
        assert result.extraction_method == "body"
        assert result.item_count == 1
        assert result.items[0].brand == "SKF"
        assert result.confidence == 60

    def test_table_beats_text(self):
        source = ExtractionSource(name="items.xlsx", text="5 x Pompe", tables=[ITEM_ROWS])
        result = extract_items(source)
        assert result.extraction_method == "table"
        assert result.item_count == 3
        assert result.confidence == 85

    def test_form_layer(self):
        source = ExtractionSource(name="form.pdf", tables=[ITEM_ROWS], form=True)
        assert extract_items(source).extraction_method == "form"

    def test_ocr_lowers_confidence_and_flags(self):
        source = ExtractionSource(name="scan.pdf", tables=[ITEM_ROWS], ocr_used=True)
        result = extract_items(source)
        assert result.confidence == 65
        assert result.needs_verification

    def test_round_tens_flag_verification(self):
        rows = [["Description", "Qty"], ["Pump", "10"], ["Valve", "20"], ["Seal", "30"]]
        result = extract_items(ExtractionSource(name="x.csv", tables=[rows]))
        assert result.needs_verification

    def test_nothing_found(self):
        result = extract_items(ExtractionSource(name="notes.txt", text="Hello there"))
        assert result.items == []
        assert result.extraction_method == "none"
        assert result.confidence == 0
        assert any("no line items" in w for w in result.warnings)

    def test_request_number_and_title(self):
        text = "Objet : Pièces pompe\nPurchase Requisition No: PR-20261234\n5 x Pompe"
        result = extract_items(ExtractionSource(name="r.txt", text=text))
        assert result.request_number == "PR-20261234"
        assert result.general_description == "Pièces pompe"

    def test_attachment_end_to_end(self):
        result = extract_from_attachment(make_attachment("RFQ_4521_items.xlsx", xlsx_bytes()))
        assert result.item_count == 3
        assert result.source == "RFQ_4521_items.xlsx"

    def test_unreadable_attachment_is_a_warning(self):
        result = extract_from_attachment(make_attachment("old.doc", b"\xd0\xcf\x11\xe0"))
        assert result.items == []
        assert result.warnings


class TestPlaceholder:

    def test_from_subject(self):
        item = make_placeholder_item("  Demande   de prix ")
        assert item.description == "Demande de prix"
        assert item.quantity == 1
        assert item.needs_manual_review
        assert item.is_estimated

    def test_without_subject(self):
        assert make_placeholder_item("").description == "Request without extractable items"
