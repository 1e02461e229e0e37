"""Tests for the escalation policy and the fallback/cheap result merge."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.auto.escalation import fallback_wins, run_escalation, select_result, should_escalate
from src.core.config import Settings
from src.core.models import ExtractionResult, LineItem


def _items(*quantities):
    return [LineItem(f"Item {i}", quantity=q) for i, q in enumerate(quantities, 1)]


def _cheap(*quantities, **kwargs):
    return ExtractionResult(items=_items(*quantities), extraction_method="table",
                            confidence=85, source="rfq.xlsx", **kwargs)


class TestShouldEscalate:

    def test_round_tens_in_auto(self):
        items = _items(10, 20, 30)
        assert should_escalate(3, False, items, "auto")

    def test_good_result_in_auto(self):
        assert not should_escalate(4, False, _items(2, 5, 1, 7), "auto")

    def test_too_few_items_in_auto(self):
        assert should_escalate(2, False, _items(2, 5), "auto")
        assert not should_escalate(2, False, _items(2, 5), "auto", min_items=2)

    def test_manual_review_in_auto(self):
        assert should_escalate(5, True, _items(1, 2, 3, 4, 5), "auto")

    def test_off_never(self):
        assert not should_escalate(0, True, [], "off")

    @pytest.mark.parametrize("count", [0, 1, 5, 50])
    def test_always_always(self, count):
        assert should_escalate(count, False, _items(*([3] * count)), "always")

    def test_fallback_only_when_empty(self):
        assert should_escalate(0, False, [], "fallback")
        assert not should_escalate(1, True, _items(10), "fallback")

    def test_auto_escalates_whenever_fallback_would(self):
        for count in range(0, 6):
            items = _items(*([2] * count))
            if should_escalate(count, False, items, "fallback"):
                assert should_escalate(count, False, items, "auto")


class TestFallbackWins:

    def test_more_items_wins(self):
        assert fallback_wins(2, 3, "auto")
        assert not fallback_wins(3, 3, "auto")
        assert not fallback_wins(3, 1, "fallback")

    def test_always_takes_any_non_empty_result(self):
        assert fallback_wins(5, 1, "always")
        assert not fallback_wins(5, 0, "always")

    def test_select_result(self):
        cheap, richer = _cheap(1, 2), _cheap(1, 2, 3)
        assert select_result(cheap, richer, "auto") is richer
        assert select_result(richer, cheap, "auto") is richer
        assert select_result(cheap, None, "always") is cheap


class TestRunEscalation:

    def test_not_escalated(self, fake_fallback):
        fb = fake_fallback(items=[{"description": "x"}])
        cheap = _cheap(2, 5, 1, 7)
        result, decision = run_escalation(cheap, [], fb, Settings(llm_mode="auto"))
        assert result is cheap
        assert not decision.escalated
        assert fb.calls == []

    def test_fallback_replaces_when_richer(self, fake_fallback):
        fb = fake_fallback(items=[{"description": f"Part {i}", "quantity": i} for i in range(1, 5)],
                           confidence=88)
        result, decision = run_escalation(_cheap(10, 20, 30), ["doc"], fb, Settings(llm_mode="auto"))
        assert decision.escalated and decision.replaced
        assert decision.cheap_count == 3
        assert decision.fallback_count == 4
        assert result.extraction_method == "fallback"
        assert result.confidence == 88
        assert not result.needs_verification
        assert fb.calls == [["doc"]]

    def test_cheap_kept_when_fallback_not_richer(self, fake_fallback):
        fb = fake_fallback(items=[{"description": "Only one"}])
        cheap = _cheap(10, 20, 30)
        result, decision = run_escalation(cheap, [], fb, Settings(llm_mode="auto"))
        assert result is cheap
        assert decision.escalated and not decision.replaced
        assert result.item_count == 3

    def test_always_mode_replaces(self, fake_fallback):
        fb = fake_fallback(items=[{"description": "Only one"}], confidence=70)
        result, decision = run_escalation(_cheap(1, 2, 3, 4), [], fb, Settings(llm_mode="always"))
        assert decision.replaced
        assert result.item_count == 1

    def test_always_mode_returns_fallback_items_only(self, fake_fallback):
        fb = fake_fallback(items=[{"description": "Pump", "reference": "P-1"}])
        cheap = ExtractionResult(items=[LineItem("Gear", reference="G-9"),
                                        LineItem("Seal", reference="S-2")])
        result, decision = run_escalation(cheap, [], fb, Settings(llm_mode="always"))
        assert decision.replaced
        assert [i.description for i in result.items] == ["Pump"]
        assert not any("kept from cheap" in w for w in result.warnings)

    def test_low_confidence_needs_verification(self, fake_fallback):
        fb = fake_fallback(items=[{"description": "A"}, {"description": "B"}], confidence=40)
        result, _ = run_escalation(ExtractionResult(), [], fb, Settings(llm_mode="fallback"))
        assert result.needs_verification

    def test_failure_keeps_cheap(self, fake_fallback):
        fb = fake_fallback(error=RuntimeError("timeout"))
        cheap = _cheap(5)
        result, decision = run_escalation(cheap, [], fb, Settings(llm_mode="auto"))
        assert result is cheap
        assert decision.escalated
        assert decision.error == "timeout"
        assert any("fallback extraction failed" in w for w in result.warnings)

    def test_cheap_references_merged(self, fake_fallback):
        fb = fake_fallback(items=[{"description": "Pump", "reference": "P-1"},
                                  {"description": "Valve", "reference": "V-2"},
                                  {"description": "Seal"}])
        cheap = ExtractionResult(items=[LineItem("Pump", reference="p-1"),
                                        LineItem("Gear", reference="G-9")])
        result, decision = run_escalation(cheap, [], fb, Settings(llm_mode="auto"))
        assert decision.replaced
        assert [i.reference for i in result.items] == ["P-1", "V-2", None, "G-9"]

    def test_fallback_warnings_carried(self, fake_fallback):
        fb = fake_fallback(items=[], warnings=["fallback extractor not configured"])
        result, _ = run_escalation(_cheap(2), [], fb, Settings(llm_mode="auto"))
        assert "fallback extractor not configured" in result.warnings

    def test_off_mode_never_calls(self, fake_fallback):
        fb = fake_fallback(items=[{"description": "x"}])
        run_escalation(ExtractionResult(), [], fb, Settings(llm_mode="off"))
        assert fb.calls == []
