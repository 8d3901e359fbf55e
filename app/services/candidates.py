"""Normalization of provider candidates before they are stored."""
from dataclasses import dataclass
from typing import Iterable, List, Optional

from app.services.extraction_provider import TYPE_VOCABULARY, ExtractedCandidate


@dataclass
class NormalizedCandidate:
    page: int
    text: str
    type: Optional[str]  # None when the provider gave no recognised type
    confidence: float
    rationale: Optional[str]
    status: str  # draft or low_confidence


def normalize_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().lower()
    return value if value in TYPE_VOCABULARY else None


def initial_status(confidence: float, threshold: float) -> str:
    """``draft`` at or above the threshold, ``low_confidence`` below it."""
    return "draft" if confidence >= threshold else "low_confidence"


def normalize_candidates(
    candidates: Iterable[ExtractedCandidate],
    confidence_threshold: float = 0.5,
) -> List[NormalizedCandidate]:
    """Trim text, drop empty entries and exact (case-insensitive) repeats within the batch,
    null out unrecognised types and assign the initial review status."""
    seen: set[str] = set()
    out: List[NormalizedCandidate] = []
    for c in candidates:
        text = (c.text or "").strip()
        if not text:
            continue
        key = text.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(NormalizedCandidate(
            page=c.page,
            text=text,
            type=normalize_type(c.type),
            confidence=c.confidence,
            rationale=(c.rationale or "").strip() or None,
            status=initial_status(c.confidence, confidence_threshold),
        ))
    return out
