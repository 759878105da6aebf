"""Tests for the language-model adapters. The Ollama HTTP API is faked with monkeypatch."""
import json

import pytest
import requests

from core.enums import EntityType
from services.llm_service import FLAGS_MIN_LLM_CHARS, HeuristicLLMAdapter, OllamaLLMAdapter


class FakeResponse:

    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(response=self)

    def json(self):
        return self.payload


@pytest.fixture
def adapter():
    return OllamaLLMAdapter("http://ollama:11434/", "test-model", timeout=5)


def answer_with(monkeypatch, text, calls=None):
    def fake_post(url, json=None, timeout=None):
        if calls is not None:
            calls.append((url, json, timeout))
        return FakeResponse({"response": text})
    monkeypatch.setattr("services.llm_service.requests.post", fake_post)


def fail_with(monkeypatch, error):
    def fake_post(url, json=None, timeout=None):
        raise error
    monkeypatch.setattr("services.llm_service.requests.post", fake_post)


class TestOllamaChat:

    def test_success(self, adapter, monkeypatch):
        calls = []
        answer_with(monkeypatch, "  hi there  ", calls)
        assert adapter.chat("hello", json_output=True) == {"answer": "hi there", "status": "success"}
        url, payload, timeout = calls[0]
        assert url == "http://ollama:11434/api/generate"
        assert payload["model"] == "test-model"
        assert payload["format"] == "json"
        assert timeout == 5

    def test_empty_prompt(self, adapter):
        assert adapter.chat("   ")["status"] == "error"

    @pytest.mark.parametrize("error, message", [
        (requests.exceptions.Timeout(), "LLM request timed out"),
        (requests.exceptions.ConnectionError(), "Cannot connect to LLM service"),
    ])
    def test_transport_errors(self, adapter, monkeypatch, error, message):
        fail_with(monkeypatch, error)
        assert adapter.chat("hello") == {"error": message, "status": "error"}

    def test_http_error(self, adapter, monkeypatch):
        monkeypatch.setattr("services.llm_service.requests.post",
                            lambda url, json=None, timeout=None: FakeResponse({"error": "boom"}, 500))
        assert adapter.chat("hello") == {"error": "LLM error: 500", "status": "error"}


class TestOllamaTasks:

    async def test_summary_is_truncated(self, adapter, monkeypatch):
        answer_with(monkeypatch, "x" * 300)
        summary = await adapter.generate_summary("text", max_length=50)
        assert summary == "x" * 50 + "..."

    async def test_summary_falls_back_to_first_paragraph(self, adapter, monkeypatch):
        fail_with(monkeypatch, requests.exceptions.ConnectionError())
        assert await adapter.generate_summary("First part.\n\nSecond part.") == "First part."

    async def test_questions_are_cleaned(self, adapter, monkeypatch):
        answer_with(monkeypatch, "1. What is it?\n- Why use it?\nNot a question\n3) How fast?")
        assert await adapter.generate_questions("text", count=2) == ["What is it?", "Why use it?"]

    async def test_entities_parsed(self, adapter, monkeypatch):
        answer_with(monkeypatch, json.dumps({"entities": [
            {"type": "Technology", "name": "Redis", "mentions": 2},
            {"type": "gadget", "name": "Widget"},
        ]}))
        entities = await adapter.extract_entities("text")
        assert [(e.type, e.name, e.mentions) for e in entities] == [
            (EntityType.TECHNOLOGY, "Redis", 2), (EntityType.CONCEPT, "Widget", 1),
        ]

    async def test_unparsable_entities_fall_back_to_patterns(self, adapter, monkeypatch):
        answer_with(monkeypatch, "not json")
        entities = await adapter.extract_entities("We deploy with Docker.")
        assert [e.name for e in entities] == ["Docker"]

    async def test_short_text_flags_skip_the_model(self, adapter, monkeypatch):
        fail_with(monkeypatch, AssertionError("model must not be called"))
        flags = await adapter.detect_semantic_flags("Should we?")
        assert flags["is_question"]

    async def test_long_text_flags_from_model(self, adapter, monkeypatch):
        answer_with(monkeypatch, '{"is_decision": true, "is_question": false}')
        flags = await adapter.detect_semantic_flags("a" * FLAGS_MIN_LLM_CHARS)
        assert flags == {"is_decision": True, "is_question": False, "is_action": False}

    async def test_change_summary_fallback(self, adapter, monkeypatch):
        fail_with(monkeypatch, requests.exceptions.Timeout())
        assert adapter.supports_change_summary
        assert await adapter.generate_change_summary("a", "b") == "1 line(s) added, 1 line(s) removed"


class TestHeuristicAdapter:

    async def test_offline_behaviour(self):
        adapter = HeuristicLLMAdapter()
        assert await adapter.generate_summary("Intro.\n\nMore.") == "Intro."
        assert await adapter.generate_questions("plain") == ["What is this about?"]
        assert (await adapter.detect_semantic_flags("We decided on Go."))["is_decision"]
        assert await adapter.generate_change_summary("same", "same") == "No content changes"
