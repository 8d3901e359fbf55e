"""Gemini (Google AI Studio) extraction provider over the generateContent REST API."""
import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.services.extraction_provider import (
    TYPE_VOCABULARY,
    ExtractionProvider,
    ExtractionProviderError,
    ExtractionRequest,
    ExtractionResult,
    MalformedResponse,
    StructuredOutputUnsupported,
    build_instruction,
    coerce_usage,
    map_candidates,
    parse_envelope,
)

logger = logging.getLogger(__name__)

# Structured output: response schema in Gemini's OpenAPI subset
RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "items": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "page": {"type": "INTEGER"},
                    "text": {"type": "STRING"},
                    "type": {"type": "STRING", "enum": list(TYPE_VOCABULARY)},
                    "confidence": {"type": "NUMBER"},
                    "rationale": {"type": "STRING"},
                },
                "required": ["page", "text"],
            },
        },
    },
    "required": ["items"],
}

_STRUCTURED_OUTPUT_MARKERS = ("responsemimetype", "response_mime_type", "responseschema", "response_schema", "json mode")


def _mentions_structured_output(body: str) -> bool:
    lowered = (body or "").lower()
    return any(marker in lowered for marker in _STRUCTURED_OUTPUT_MARKERS)


class GeminiExtractionProvider(ExtractionProvider):
    """Gemini provider. One POST per batch; structured output first, plain JSON-in-text on rejection."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash-lite",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 120.0,
        prompt_version: str = "v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model_path = model if model.startswith("models/") else f"models/{model}"
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.prompt_version = prompt_version
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.base_url}/v1beta/{self.model_path}:generateContent"

    def _build_parts(self, request: ExtractionRequest) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [
            {"text": build_instruction(request.page_numbers, request.language_hint or "es,en", self.prompt_version)}
        ]
        if request.embedded_text:
            for page in sorted(request.embedded_text):
                parts.append({"text": f"page:{page}\n{request.embedded_text[page]}"})
        elif request.pdf_bytes:
            parts.append({
                "inlineData": {
                    "mimeType": "application/pdf",
                    "data": base64.b64encode(request.pdf_bytes).decode("ascii"),
                }
            })
        elif request.images:
            for page in sorted(request.images):
                parts.append({
                    "inlineData": {
                        "mimeType": "image/png",
                        "data": base64.b64encode(request.images[page]).decode("ascii"),
                    }
                })
        return parts

    async def _post(self, body: Dict[str, Any], *, structured: bool) -> Dict[str, Any]:
        payload = dict(body)
        if structured:
            payload["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, params={"key": self.api_key}, json=payload)
        except httpx.HTTPError as e:
            raise ExtractionProviderError(f"Gemini request failed: {type(e).__name__}: {e}") from e

        if resp.status_code == 400 and structured and _mentions_structured_output(resp.text):
            raise StructuredOutputUnsupported(
                f"Gemini rejected structured output: {resp.text[:500]}", status_code=400
            )
        if not resp.is_success:
            raise ExtractionProviderError(
                f"Gemini request failed: {resp.status_code} {resp.text[:1000]}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse(f"Gemini response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedResponse("Gemini response is not a JSON object")
        return data

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        body = {"contents": [{"role": "user", "parts": self._build_parts(request)}]}
        try:
            data = await self._post(body, structured=True)
        except StructuredOutputUnsupported as e:
            logger.warning("[%s] %s; retrying without structured output", request.document_id, e)
            data = await self._post(body, structured=False)

        content_text = "".join(
            part.get("text") or ""
            for candidate in (data.get("candidates") or [])
            for part in ((candidate.get("content") or {}).get("parts") or [])
        ).strip()
        envelope = parse_envelope(content_text)
        candidates = map_candidates(envelope)
        usage = coerce_usage(envelope, data.get("usageMetadata"))
        logger.info(
            "[%s] Gemini returned %s candidates for pages %s",
            request.document_id, len(candidates), request.page_numbers,
        )
        return ExtractionResult(
            document_id=request.document_id,
            candidates=candidates,
            usage=usage,
            raw_response=data,
        )
