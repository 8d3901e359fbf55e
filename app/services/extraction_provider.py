"""Extraction provider abstraction: document-understanding backends that turn pages into requirement candidates.

To add a new provider:
1. Subclass ExtractionProvider and implement extract().
2. Call register_provider("name", factory) where factory is a callable (config_dict) -> ExtractionProvider.
3. Select it with OCR_PROVIDER=name.

Adapters are untrusted: whatever the backend returns goes through parse_envelope()
and map_candidates() before it reaches the tick.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import math

from app.services.prompt_registry import get_prompt
from app.services.utils import iter_json_values, parse_json_response

logger = logging.getLogger(__name__)

PROMPT_NAME = "requirement_extraction"

# Types the provider is asked to choose from; "unknown" marks a missing type.
TYPE_VOCABULARY = ("functional", "non_functional", "security", "performance", "ux")
UNKNOWN_TYPE = "unknown"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ProviderConfigurationError(ValueError):
    """Missing credentials, unknown provider name, or missing prompt. Not retried."""


class ExtractionProviderError(Exception):
    """HTTP failure or unusable response from the extraction backend."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(ExtractionProviderError):
    """No parseable JSON payload after stripping fences and prose."""


class StructuredOutputUnsupported(ExtractionProviderError):
    """Backend rejected structured-output mode; adapters retry once without it."""


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

@dataclass
class ExtractionRequest:
    """One batch: page numbers of one document plus exactly one content representation.

    * ``pdf_bytes``: raw bytes of the source file
    * ``images``: page number -> PNG bytes
    * ``embedded_text``: page number -> pre-extracted text
    """

    document_id: str
    page_numbers: List[int]
    pdf_bytes: Optional[bytes] = None
    images: Optional[Dict[int, bytes]] = None
    embedded_text: Optional[Dict[int, str]] = None
    language_hint: Optional[str] = None

    def __post_init__(self):
        supplied = [x for x in (self.pdf_bytes, self.images, self.embedded_text) if x]
        if len(supplied) != 1:
            raise ValueError(
                "ExtractionRequest needs exactly one of pdf_bytes, images, embedded_text "
                f"(got {len(supplied)})"
            )
        if not self.page_numbers:
            raise ValueError("ExtractionRequest needs at least one page number")


@dataclass
class ExtractedCandidate:
    page: int
    text: str
    type: str = UNKNOWN_TYPE
    confidence: float = 0.0
    rationale: Optional[str] = None


@dataclass
class ExtractionUsage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ExtractionResult:
    document_id: str
    candidates: List[ExtractedCandidate] = field(default_factory=list)
    usage: Optional[ExtractionUsage] = None
    raw_response: Any = None


class ExtractionProvider(ABC):
    """Abstract base class for extraction providers."""

    name: str = "base"

    @abstractmethod
    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        """Run one extraction call for the batch in *request*."""
        pass


# ---------------------------------------------------------------------------
# Shared helpers (instruction, envelope parsing, candidate mapping)
# ---------------------------------------------------------------------------

def build_instruction(page_numbers: List[int], language_hint: str, version: str = "v1") -> str:
    """Render the versioned extraction prompt for a batch."""
    template = get_prompt(PROMPT_NAME, version)
    if not template:
        raise ProviderConfigurationError(f"Prompt {PROMPT_NAME}/{version} not found")
    return template.format(
        page_list=", ".join(str(p) for p in page_numbers),
        language_hint=language_hint,
    )


def _as_envelope(obj) -> Optional[dict]:
    """``obj`` as an envelope when it is one: a dict with an ``items`` list, or a list of dicts."""
    if isinstance(obj, dict) and isinstance(obj.get("items"), list):
        return obj
    if isinstance(obj, list) and all(isinstance(x, dict) for x in obj):
        return {"items": obj}
    return None


def parse_envelope(content_text: Optional[str]) -> dict:
    """Parse the provider's text payload into ``{"items": [...], "usage"?: {...}}``.

    Prose may surround the payload and may itself contain brackets, so every
    '{' / '[' offset is tried before falling back to repair.
    """
    if not content_text or not content_text.strip():
        raise MalformedResponse("Provider response missing content")
    for obj in iter_json_values(content_text):
        envelope = _as_envelope(obj)
        if envelope is not None:
            return envelope
    try:
        obj = parse_json_response(content_text)
    except (json.JSONDecodeError, ValueError) as e:
        raise MalformedResponse(f"Failed to parse provider response JSON: {e}") from e
    envelope = _as_envelope(obj)
    if envelope is None:
        raise MalformedResponse("Provider response JSON has no items list")
    return envelope


def _as_page(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _clamp_confidence(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def map_candidates(envelope: dict) -> List[ExtractedCandidate]:
    """Keep items with an integer page and string text; coerce the rest."""
    items = envelope.get("items")
    if not isinstance(items, list):
        return []
    out = []
    for item in items:
        if not isinstance(item, dict):
            continue
        page = _as_page(item.get("page"))
        text = item.get("text")
        if page is None or not isinstance(text, str):
            continue
        raw_type = item.get("type")
        rationale = item.get("rationale")
        out.append(ExtractedCandidate(
            page=page,
            text=text,
            type=raw_type if isinstance(raw_type, str) and raw_type else UNKNOWN_TYPE,
            confidence=_clamp_confidence(item.get("confidence")),
            rationale=rationale if isinstance(rationale, str) else None,
        ))
    return out


def _opt_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def coerce_usage(envelope: dict, token_metadata: Optional[dict] = None) -> Optional[ExtractionUsage]:
    """Usage from the envelope's own ``usage`` block, else from the provider's token metadata.

    Accepts camelCase (``promptTokens``), snake_case (``prompt_tokens``) and
    Gemini ``usageMetadata`` (``promptTokenCount``) keys.
    """
    for src in (envelope.get("usage"), token_metadata):
        if not isinstance(src, dict) or not src:
            continue
        return ExtractionUsage(
            prompt_tokens=_opt_int(src.get("prompt_tokens", src.get("promptTokens", src.get("promptTokenCount")))),
            completion_tokens=_opt_int(src.get("completion_tokens", src.get("completionTokens", src.get("candidatesTokenCount")))),
            total_tokens=_opt_int(src.get("total_tokens", src.get("totalTokens", src.get("totalTokenCount")))),
        )
    return None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

# Registry: provider name -> factory(config: dict) -> ExtractionProvider
_PROVIDER_REGISTRY: Dict[str, Callable[[Dict[str, Any]], ExtractionProvider]] = {}


def register_provider(name: str, factory: Callable[[Dict[str, Any]], ExtractionProvider]) -> None:
    """Register an extraction provider. factory(config_dict) must return an ExtractionProvider instance."""
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Provider name must be non-empty")
    _PROVIDER_REGISTRY[name] = factory


def list_providers() -> list[str]:
    """Return registered provider names."""
    return sorted(_PROVIDER_REGISTRY.keys())


def _gemini_factory(config: Dict[str, Any]) -> ExtractionProvider:
    """Build GeminiExtractionProvider from config dict (for registry)."""
    from app.config import GEMINI_API_KEY, GEMINI_BASE_URL, OCR_MODEL
    from app.services.extraction_provider_gemini import GeminiExtractionProvider

    api_key = config.get("api_key") or GEMINI_API_KEY
    if not api_key:
        raise ProviderConfigurationError(
            "GOOGLE_AI_STUDIO_API_KEY (or GOOGLE_API_KEY) is required for the Gemini provider"
        )
    return GeminiExtractionProvider(
        api_key=api_key,
        model=config.get("model") or OCR_MODEL,
        base_url=config.get("base_url") or GEMINI_BASE_URL,
        timeout=config.get("timeout") or 120.0,
        prompt_version=config.get("prompt_version") or "v1",
    )


def _openai_factory(config: Dict[str, Any]) -> ExtractionProvider:
    """Build OpenAIExtractionProvider from config dict (for registry)."""
    from app.config import OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_MODEL
    from app.services.extraction_provider_openai import OpenAIExtractionProvider

    api_key = config.get("api_key") or OPENAI_API_KEY
    if not api_key:
        raise ProviderConfigurationError("OPENAI_API_KEY is required for the OpenAI provider")
    return OpenAIExtractionProvider(
        api_key=api_key,
        model=config.get("model") or OPENAI_MODEL,
        base_url=config.get("base_url") or OPENAI_BASE_URL,
        timeout=config.get("timeout") or 120.0,
        prompt_version=config.get("prompt_version") or "v1",
    )


register_provider("gemini", _gemini_factory)
register_provider("openai", _openai_factory)


def get_extraction_provider(name: Optional[str] = None, **overrides: Any) -> ExtractionProvider:
    """Build the configured provider (``OCR_PROVIDER`` unless *name* is given).

    Raises ProviderConfigurationError for unknown names or missing credentials.
    """
    from app.config import AI_REQUEST_TIMEOUT_SECONDS, EXTRACTION_PROMPT_VERSION, EXTRACTION_PROVIDER

    provider_name = (name or EXTRACTION_PROVIDER or "").lower().strip()
    factory = _PROVIDER_REGISTRY.get(provider_name)
    if not factory:
        raise ProviderConfigurationError(
            f"Unknown extraction provider: {provider_name!r}. Registered: {list_providers()}"
        )
    cfg = {"timeout": AI_REQUEST_TIMEOUT_SECONDS, "prompt_version": EXTRACTION_PROMPT_VERSION, **overrides}
    provider = factory(cfg)
    logger.info("Extraction provider: %s", provider_name)
    return provider
