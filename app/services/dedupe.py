"""Near-duplicate grouping of requirement candidate texts.

Pure functions, no I/O. Similarity is the mean of the Jaccard index and the
Dice coefficient over the sets of words longer than two characters. Grouping
is greedy and single-pass, so groups never overlap.
"""
import re
from dataclasses import dataclass, field
from typing import Hashable, Iterable, List, NamedTuple

DEFAULT_THRESHOLD = 0.82
DEFAULT_MIN_LENGTH = 20

_QUOTES_RE = re.compile("[`´'’\"“”]")
_NON_WORD_RE = re.compile(r"[^a-z0-9áéíóúüñ\s]")
_SPACES_RE = re.compile(r"\s+")


class DedupeCandidate(NamedTuple):
    id: Hashable
    text: str


@dataclass
class DuplicateGroup:
    representative_id: Hashable
    duplicate_ids: List[Hashable] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "representativeId": str(self.representative_id),
            "duplicates": [str(d) for d in self.duplicate_ids],
        }


def normalize_text(text: str) -> str:
    text = (text or "").lower()
    text = _QUOTES_RE.sub("", text)
    text = _NON_WORD_RE.sub(" ", text)
    return _SPACES_RE.sub(" ", text).strip()


def tokenize(normalized: str) -> set[str]:
    return {t for t in normalized.split(" ") if len(t) > 2}


def similarity(a: set[str], b: set[str]) -> float:
    """Mean of Jaccard and Dice over two token sets (0 when either is empty)."""
    if not a or not b:
        return 0.0
    overlap = len(a & b)
    jaccard = overlap / (len(a) + len(b) - overlap)
    dice = (2 * overlap) / (len(a) + len(b))
    return (jaccard + dice) / 2


def group_duplicates(
    candidates: Iterable[DedupeCandidate],
    threshold: float = DEFAULT_THRESHOLD,
    min_length: int = DEFAULT_MIN_LENGTH,
) -> List[DuplicateGroup]:
    """Partition candidates into non-overlapping duplicate groups.

    Candidates whose normalized text is shorter than *min_length* (or has no
    tokens) never take part. Each remaining candidate, in input order, becomes
    the representative of every later unvisited candidate that has the same
    normalized text or a similarity >= *threshold*. Only groups with at least
    one duplicate are returned.
    """
    items = [DedupeCandidate(*c) for c in candidates]
    if not items:
        return []

    prepared = []
    for c in items:
        normalized = normalize_text(c.text)
        tokens = tokenize(normalized)
        eligible = len(normalized) >= min_length and bool(tokens)
        prepared.append((c.id, normalized, tokens, eligible))

    visited: set = set()
    groups: List[DuplicateGroup] = []
    for i, (cid, normalized, tokens, eligible) in enumerate(prepared):
        if cid in visited:
            continue
        visited.add(cid)
        if not eligible:
            continue

        duplicates = []
        for other_id, other_norm, other_tokens, other_eligible in prepared[i + 1:]:
            if other_id in visited or not other_eligible:
                continue
            if normalized == other_norm or similarity(tokens, other_tokens) >= threshold:
                duplicates.append(other_id)
                visited.add(other_id)

        if duplicates:
            groups.append(DuplicateGroup(representative_id=cid, duplicate_ids=duplicates))
    return groups
