"""Tests for the Claude-backed fallback extractor (HTTP mocked)."""

import json
import os
import sys

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import make_attachment
from src.agents.fallback_extractor import (
    FallbackExtractionError, LlmFallbackExtractor, parse_response,
)
from src.core.config import Settings


class FakeResponse:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def _answer(obj):
    return {"content": [{"type": "text", "text": json.dumps(obj)}]}


class TestParseResponse:

    def test_items(self):
        result, confidence = parse_response(json.dumps({
            "request_number": "PR-20261234",
            "confidence": 82,
            "items": [
                {"description": "Ball bearing", "quantity": 10, "reference": "6205-2RS", "unit": "EA"},
                {"description": "Seal", "quantity": None},
                {"description": ""},
                "junk",
            ],
        }), source="rfq.pdf")
        assert confidence == 82
        assert result.request_number == "PR-20261234"
        assert result.item_count == 2
        assert result.items[0].unit == "pcs"
        assert result.items[1].quantity == 1 and result.items[1].is_estimated
        assert result.extraction_method == "fallback"

    def test_code_fence(self):
        result, _ = parse_response('```json\n{"items": [{"description": "Pump", "quantity": 2}]}\n```')
        assert result.items[0].quantity == 2

    def test_not_json(self):
        with pytest.raises(FallbackExtractionError):
            parse_response("Sorry, I cannot help with that.")

    def test_not_object(self):
        with pytest.raises(FallbackExtractionError):
            parse_response("[1, 2]")


class TestLlmFallbackExtractor:

    def test_unavailable_without_key(self):
        ex = LlmFallbackExtractor(settings=Settings())
        assert not ex.available
        with pytest.raises(FallbackExtractionError, match="no API key"):
            ex.extract_via_fallback([make_attachment("list.txt", "5 x Pompe")])

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test-000000000")
        assert LlmFallbackExtractor().available

    def test_successful_call(self):
        session = FakeSession(FakeResponse(_answer({
            "confidence": 75,
            "items": [{"description": "Pompe", "quantity": 5}, {"description": "Vanne", "quantity": 2}],
        })))
        ex = LlmFallbackExtractor(api_key="sk-test", settings=Settings(llm_timeout_sec=12), session=session)
        result, confidence, warnings = ex.extract_via_fallback([make_attachment("list.txt", "5 x Pompe\n2 x Vanne")])
        assert confidence == 75
        assert [i.description for i in result.items] == ["Pompe", "Vanne"]
        assert warnings == []
        url, kwargs = session.calls[0]
        assert url.endswith("/v1/messages")
        assert kwargs["timeout"] == 12
        assert kwargs["headers"]["x-api-key"] == "sk-test"
        assert "5 x Pompe" in kwargs["json"]["messages"][0]["content"]

    def test_default_posts_per_call(self, monkeypatch):
        calls = []

        def fake_post(url, **kwargs):
            calls.append(url)
            return FakeResponse(_answer({"items": [{"description": "Pompe", "quantity": 5}]}))

        monkeypatch.setattr(requests, "post", fake_post)
        ex = LlmFallbackExtractor(api_key="sk-test")
        assert ex.session is None
        for _ in range(2):
            result, _, _ = ex.extract_via_fallback([make_attachment("list.txt", "5 x Pompe")])
            assert result.items[0].description == "Pompe"
        assert len(calls) == 2

    def test_http_error(self):
        session = FakeSession(FakeResponse({}, status=529))
        ex = LlmFallbackExtractor(api_key="sk-test", session=session)
        with pytest.raises(FallbackExtractionError, match="API call failed"):
            ex.extract_via_fallback([make_attachment("list.txt", "5 x Pompe")])

    def test_network_error(self):
        session = FakeSession(error=requests.ConnectionError("unreachable"))
        ex = LlmFallbackExtractor(api_key="sk-test", session=session)
        with pytest.raises(FallbackExtractionError):
            ex.extract_via_fallback([make_attachment("list.txt", "5 x Pompe")])

    def test_unexpected_shape(self):
        session = FakeSession(FakeResponse({"content": []}))
        ex = LlmFallbackExtractor(api_key="sk-test", session=session)
        with pytest.raises(FallbackExtractionError, match="unexpected"):
            ex.extract_via_fallback([make_attachment("list.txt", "5 x Pompe")])

    def test_nothing_readable(self):
        session = FakeSession(FakeResponse(_answer({"items": []})))
        ex = LlmFallbackExtractor(api_key="sk-test", session=session)
        with pytest.raises(FallbackExtractionError, match="no readable text"):
            ex.extract_via_fallback([make_attachment("old.doc", b"\xd0\xcf")])
        assert session.calls == []
