"""OpenAI extraction provider (optional second backend, chat completions)."""
import base64
import logging
from typing import Any, Dict, List

from openai import APIError, APIStatusError, AsyncOpenAI, BadRequestError

from app.services.extraction_provider import (
    ExtractionProvider,
    ExtractionProviderError,
    ExtractionRequest,
    ExtractionResult,
    StructuredOutputUnsupported,
    build_instruction,
    coerce_usage,
    map_candidates,
    parse_envelope,
)

logger = logging.getLogger(__name__)


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI API provider (chat completions with JSON response format)."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        timeout: float = 120.0,
        prompt_version: str = "v1",
        temperature: float = 0.1,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.prompt_version = prompt_version
        self.temperature = temperature

    def _build_content(self, request: ExtractionRequest) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": build_instruction(request.page_numbers, request.language_hint or "es,en", self.prompt_version)}
        ]
        if request.embedded_text:
            for page in sorted(request.embedded_text):
                content.append({"type": "text", "text": f"page:{page}\n{request.embedded_text[page]}"})
        elif request.pdf_bytes:
            data = base64.b64encode(request.pdf_bytes).decode("ascii")
            content.append({
                "type": "file",
                "file": {"filename": f"{request.document_id}.pdf", "file_data": f"data:application/pdf;base64,{data}"},
            })
        elif request.images:
            for page in sorted(request.images):
                data = base64.b64encode(request.images[page]).decode("ascii")
                content.append({"type": "image_url", "image_url": {"url": f"data:image/png;base64,{data}"}})
        return content

    async def _complete(self, client: AsyncOpenAI, messages: list, *, structured: bool):
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if structured:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            return await client.chat.completions.create(**kwargs)
        except BadRequestError as e:
            if structured and "response_format" in str(e):
                raise StructuredOutputUnsupported(f"OpenAI rejected response_format: {e}", status_code=400) from e
            raise ExtractionProviderError(f"OpenAI request failed: {e}", status_code=400) from e
        except APIStatusError as e:
            raise ExtractionProviderError(f"OpenAI request failed: {e.status_code} {e}", status_code=e.status_code) from e
        except APIError as e:
            raise ExtractionProviderError(f"OpenAI request failed: {e}") from e

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        messages = [{"role": "user", "content": self._build_content(request)}]
        async with AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout) as client:
            try:
                resp = await self._complete(client, messages, structured=True)
            except StructuredOutputUnsupported as e:
                logger.warning("[%s] %s; retrying without response_format", request.document_id, e)
                resp = await self._complete(client, messages, structured=False)

        content_text = ""
        if resp.choices and resp.choices[0].message.content:
            content_text = resp.choices[0].message.content
        envelope = parse_envelope(content_text)
        token_metadata = None
        if resp.usage is not None:
            token_metadata = {
                "prompt_tokens": resp.usage.prompt_tokens,
                "completion_tokens": resp.usage.completion_tokens,
                "total_tokens": resp.usage.total_tokens,
            }
        return ExtractionResult(
            document_id=request.document_id,
            candidates=map_candidates(envelope),
            usage=coerce_usage(envelope, token_metadata),
            raw_response=resp.model_dump() if hasattr(resp, "model_dump") else resp,
        )
