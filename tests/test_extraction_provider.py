"""Extraction provider tests: request validation, envelope parsing, Gemini and OpenAI adapters, registry."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.services.extraction_provider import (
    UNKNOWN_TYPE,
    ExtractionProviderError,
    ExtractionRequest,
    MalformedResponse,
    ProviderConfigurationError,
    build_instruction,
    coerce_usage,
    get_extraction_provider,
    list_providers,
    map_candidates,
    parse_envelope,
)
from app.services.extraction_provider_gemini import GeminiExtractionProvider
from app.services.extraction_provider_openai import OpenAIExtractionProvider


def _request(**kwargs) -> ExtractionRequest:
    params = {"document_id": "doc-1", "page_numbers": [1, 2], "pdf_bytes": b"%PDF-1.4"}
    params.update(kwargs)
    return ExtractionRequest(**params)


def _gemini_body(text: str, usage: dict | None = None) -> dict:
    body = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    if usage is not None:
        body["usageMetadata"] = usage
    return body


def _gemini(handler) -> GeminiExtractionProvider:
    return GeminiExtractionProvider(api_key="test-key", model="gemini-test", transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

def test_request_requires_exactly_one_content():
    with pytest.raises(ValueError):
        ExtractionRequest(document_id="d", page_numbers=[1])
    with pytest.raises(ValueError):
        ExtractionRequest(document_id="d", page_numbers=[1], pdf_bytes=b"x", embedded_text={1: "t"})


def test_request_requires_pages():
    with pytest.raises(ValueError):
        ExtractionRequest(document_id="d", page_numbers=[], pdf_bytes=b"x")


def test_instruction_lists_pages_and_languages():
    text = build_instruction([3, 4, 5], "es,en")
    assert "[3, 4, 5]" in text
    assert "es,en" in text
    assert '"items"' in text


# ---------------------------------------------------------------------------
# Envelope / mapping
# ---------------------------------------------------------------------------

def test_envelope_from_fenced_prose():
    raw = 'Here you go:\n```json\n{"items": [{"page": 1, "text": "Must log in"}]}\n```'
    assert parse_envelope(raw) == {"items": [{"page": 1, "text": "Must log in"}]}


def test_envelope_bare_list():
    assert parse_envelope('[{"page": 2, "text": "x"}]') == {"items": [{"page": 2, "text": "x"}]}


def test_envelope_skips_bracketed_prose():
    raw = (
        "Found requirements [see below]:\n```json\n"
        '{"items": [{"page": 1, "text": "The system must log in users", "type": "security", "confidence": 0.9}]}\n'
        "```"
    )

    envelope = parse_envelope(raw)

    assert [(c.page, c.text) for c in map_candidates(envelope)] == [(1, "The system must log in users")]


@pytest.mark.parametrize("raw", ["", "   ", "no json here at all", "42", '{"usage": {}}', "[see below]"])
def test_envelope_malformed(raw):
    with pytest.raises(MalformedResponse):
        parse_envelope(raw)


def test_map_candidates_filters_and_coerces():
    envelope = {"items": [
        {"page": 1, "text": "Keep me", "type": "security", "confidence": 1.7, "rationale": "must"},
        {"page": 2.0, "text": "Float page", "confidence": "high"},
        {"page": "3", "text": "String page"},
        {"page": 4, "text": None},
        "not a dict",
        {"page": True, "text": "Bool page"},
    ]}

    out = map_candidates(envelope)

    assert [(c.page, c.text) for c in out] == [(1, "Keep me"), (2, "Float page")]
    assert out[0].confidence == 1.0
    assert out[0].type == "security"
    assert out[1].confidence == 0.0
    assert out[1].type == UNKNOWN_TYPE
    assert out[1].rationale is None


def test_map_candidates_without_items():
    assert map_candidates({"usage": {}}) == []


def test_usage_prefers_envelope_then_metadata():
    usage = coerce_usage({"usage": {"promptTokens": 10, "completionTokens": 5, "totalTokens": 15}})
    assert usage.to_dict() == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}

    usage = coerce_usage({}, {"promptTokenCount": 7, "candidatesTokenCount": 3, "totalTokenCount": 10})
    assert usage.to_dict() == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}

    assert coerce_usage({}, None) is None


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_gemini_structured_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        text = json.dumps({"items": [{"page": 1, "text": "Export to PDF", "type": "functional", "confidence": 0.8}]})
        return httpx.Response(200, json=_gemini_body(text, {"promptTokenCount": 100, "candidatesTokenCount": 20, "totalTokenCount": 120}))

    result = await _gemini(handler).extract(_request())

    assert len(seen) == 1
    assert seen[0].url.path == "/v1beta/models/gemini-test:generateContent"
    assert seen[0].url.params["key"] == "test-key"
    payload = json.loads(seen[0].content)
    assert payload["generationConfig"]["responseMimeType"] == "application/json"
    assert payload["contents"][0]["parts"][1]["inlineData"]["mimeType"] == "application/pdf"
    assert [(c.page, c.text, c.confidence) for c in result.candidates] == [(1, "Export to PDF", 0.8)]
    assert result.usage.total_tokens == 120


@pytest.mark.asyncio
async def test_gemini_retries_without_structured_output():
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        payloads.append(payload)
        if "generationConfig" in payload:
            return httpx.Response(400, json={"error": {"message": "responseSchema is not supported for this model"}})
        return httpx.Response(200, json=_gemini_body('```json\n{"items": [{"page": 2, "text": "Retry worked"}]}\n```'))

    result = await _gemini(handler).extract(_request())

    assert len(payloads) == 2
    assert "generationConfig" not in payloads[1]
    assert [c.text for c in result.candidates] == ["Retry worked"]


@pytest.mark.asyncio
async def test_gemini_other_400_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "API key not valid"}})

    with pytest.raises(ExtractionProviderError) as exc_info:
        await _gemini(handler).extract(_request())

    assert len(calls) == 1
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_gemini_server_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="Service Unavailable")

    with pytest.raises(ExtractionProviderError) as exc_info:
        await _gemini(handler).extract(_request())

    assert exc_info.value.status_code == 503
    assert not isinstance(exc_info.value, MalformedResponse)


@pytest.mark.asyncio
async def test_gemini_unparseable_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_gemini_body("I could not find any requirements."))

    with pytest.raises(MalformedResponse):
        await _gemini(handler).extract(_request())


@pytest.mark.asyncio
async def test_gemini_embedded_text_parts():
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json=_gemini_body('{"items": []}'))

    request = _request(pdf_bytes=None, embedded_text={2: "second", 1: "first"})
    result = await _gemini(handler).extract(request)

    parts = payloads[0]["contents"][0]["parts"]
    assert [p["text"] for p in parts[1:]] == ["page:1\nfirst", "page:2\nsecond"]
    assert result.candidates == []


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_maps_content_and_usage():
    resp = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content='{"items": [{"page": 1, "text": "SSO login", "confidence": 0.7}]}'))],
        usage=SimpleNamespace(prompt_tokens=50, completion_tokens=10, total_tokens=60),
    )
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=resp)
    client.__aenter__.return_value = client

    with patch("app.services.extraction_provider_openai.AsyncOpenAI", return_value=client):
        result = await OpenAIExtractionProvider(api_key="sk-test").extract(_request())

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0]["content"][1]["type"] == "file"
    assert [(c.page, c.text) for c in result.candidates] == [(1, "SSO login")]
    assert result.usage.to_dict() == {"prompt_tokens": 50, "completion_tokens": 10, "total_tokens": 60}
    client.__aexit__.assert_awaited_once()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_registry_lists_builtin_providers():
    assert {"gemini", "openai"} <= set(list_providers())


def test_unknown_provider_rejected():
    with pytest.raises(ProviderConfigurationError):
        get_extraction_provider("tesseract")


def test_gemini_without_key_rejected():
    with patch("app.config.GEMINI_API_KEY", None):
        with pytest.raises(ProviderConfigurationError):
            get_extraction_provider("gemini")


def test_gemini_built_with_override_key():
    provider = get_extraction_provider("gemini", api_key="override-key", model="gemini-x")
    assert isinstance(provider, GeminiExtractionProvider)
    assert provider.api_key == "override-key"
    assert provider.model_path == "models/gemini-x"
