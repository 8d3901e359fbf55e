"""Candidate review workflow: update / approve / reject, plus document review views.

Candidate states: draft | low_confidence -> approved | rejected (terminal).
Transitions are conditional updates guarded by the non-terminal statuses, so a
second approve (or reject) fails instead of overwriting history.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Document, Requirement, RequirementCandidate, RequirementSource
from app.services.dedupe import DedupeCandidate, group_duplicates
from app.services.extraction_provider import TYPE_VOCABULARY
from app.worker import db as db_handler

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("draft", "low_confidence")
TERMINAL_STATUSES = ("approved", "rejected")

# Marks an optional field the caller did not send (None means "clear it").
UNSET: Any = object()


class CandidateNotFound(LookupError):
    pass


class DocumentNotFound(LookupError):
    pass


class CandidateTransitionError(Exception):
    """Candidate is already approved/rejected."""

    def __init__(self, candidate_id: UUID, status: str):
        super().__init__(f"Candidate {candidate_id} is already {status}")
        self.candidate_id = candidate_id
        self.status = status


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _validate_type(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if value not in TYPE_VOCABULARY:
        raise ValueError(f"type must be one of {', '.join(TYPE_VOCABULARY)}")
    return value


async def get_candidate(db: AsyncSession, document_id: UUID, candidate_id: UUID) -> RequirementCandidate:
    result = await db.execute(
        select(RequirementCandidate)
        .where(RequirementCandidate.id == candidate_id, RequirementCandidate.document_id == document_id)
        .execution_options(populate_existing=True)
    )
    candidate = result.scalar_one_or_none()
    if candidate is None:
        raise CandidateNotFound(f"Candidate {candidate_id} not found")
    return candidate


async def _transition(db: AsyncSession, candidate_id: UUID, **values: Any) -> bool:
    """Conditional update of an open candidate; False if it was already terminal."""
    result = await db.execute(
        update(RequirementCandidate)
        .where(RequirementCandidate.id == candidate_id, RequirementCandidate.status.in_(OPEN_STATUSES))
        .values(updated_at=_utc_now_naive(), **values)
        .returning(RequirementCandidate.id)
        .execution_options(synchronize_session=False)
    )
    return result.first() is not None


# ---------------------------------------------------------------------------
# Candidate actions
# ---------------------------------------------------------------------------

async def update_candidate(
    db: AsyncSession,
    document_id: UUID,
    candidate_id: UUID,
    *,
    text: Any = UNSET,
    type: Any = UNSET,
    confidence: Any = UNSET,
    rationale: Any = UNSET,
) -> RequirementCandidate:
    """Edit an open candidate; status is unchanged."""
    candidate = await get_candidate(db, document_id, candidate_id)
    if candidate.status in TERMINAL_STATUSES:
        raise CandidateTransitionError(candidate_id, candidate.status)

    values: dict[str, Any] = {}
    if text is not UNSET:
        text = (text or "").strip()
        if not text:
            raise ValueError("text must not be empty")
        values["text"] = text
    if type is not UNSET:
        values["type"] = _validate_type(type)
    if confidence is not UNSET:
        if confidence is None or not 0 <= float(confidence) <= 1:
            raise ValueError("confidence must be between 0 and 1")
        values["confidence"] = float(confidence)
    if rationale is not UNSET:
        values["rationale"] = (rationale or "").strip() or None
    if not values:
        return candidate

    if not await _transition(db, candidate_id, **values):
        await db.rollback()
        raise CandidateTransitionError(candidate_id, "closed")
    await db.commit()
    return await get_candidate(db, document_id, candidate_id)


async def approve_candidate(
    db: AsyncSession,
    document_id: UUID,
    candidate_id: UUID,
    *,
    user_id: Optional[str],
    title: str,
    description: str,
    type: Optional[str] = None,
    priority: Optional[int] = None,
    status: Optional[str] = None,
) -> tuple[Requirement, RequirementCandidate]:
    """Promote an open candidate to a Requirement (with provenance) in one transaction."""
    title = (title or "").strip()
    description = (description or "").strip()
    if not title or len(title) > 200:
        raise ValueError("title must be 1-200 characters")
    if not description:
        raise ValueError("description is required")
    if priority is not None and not 1 <= int(priority) <= 5:
        raise ValueError("priority must be between 1 and 5")
    _validate_type(type)

    candidate = await get_candidate(db, document_id, candidate_id)
    if candidate.status in TERMINAL_STATUSES:
        raise CandidateTransitionError(candidate_id, candidate.status)

    requirement = Requirement(
        project_id=candidate.project_id,
        title=title,
        description=description,
        type=type or candidate.type,
        priority=int(priority) if priority is not None else 3,
        status=(status or "").strip() or "analysis",
        created_by=user_id,
    )
    db.add(requirement)
    await db.flush()
    db.add(RequirementSource(
        requirement_id=requirement.id,
        candidate_id=candidate.id,
        document_id=candidate.document_id,
        page_id=candidate.page_id,
    ))

    won = await _transition(
        db,
        candidate_id,
        status="approved",
        requirement_id=requirement.id,
        reviewed_by=user_id,
        reviewed_at=_utc_now_naive(),
    )
    if not won:
        # Lost to a concurrent approve/reject: discard the requirement too.
        await db.rollback()
        raise CandidateTransitionError(candidate_id, "closed")
    await db.commit()
    logger.info("[%s] Candidate %s approved as requirement %s by %s", document_id, candidate_id, requirement.id, user_id)
    return requirement, await get_candidate(db, document_id, candidate_id)


async def reject_candidate(
    db: AsyncSession,
    document_id: UUID,
    candidate_id: UUID,
    *,
    user_id: Optional[str],
) -> RequirementCandidate:
    candidate = await get_candidate(db, document_id, candidate_id)
    if candidate.status in TERMINAL_STATUSES:
        raise CandidateTransitionError(candidate_id, candidate.status)
    if not await _transition(db, candidate_id, status="rejected", reviewed_by=user_id, reviewed_at=_utc_now_naive()):
        await db.rollback()
        raise CandidateTransitionError(candidate_id, "closed")
    await db.commit()
    logger.info("[%s] Candidate %s rejected by %s", document_id, candidate_id, user_id)
    return await get_candidate(db, document_id, candidate_id)


# ---------------------------------------------------------------------------
# Document views / operator actions
# ---------------------------------------------------------------------------

async def get_document_review(db: AsyncSession, document_id: UUID) -> dict:
    """Document, pages, candidates and duplicate groups over the open candidates."""
    document = await db_handler.get_document(db, document_id)
    if document is None:
        raise DocumentNotFound(f"Document {document_id} not found")
    pages = await db_handler.get_document_pages(db, document_id)
    result = await db.execute(
        select(RequirementCandidate)
        .where(RequirementCandidate.document_id == document_id)
        .order_by(RequirementCandidate.created_at, RequirementCandidate.id)
    )
    candidates = list(result.scalars().all())
    duplicates = group_duplicates(
        DedupeCandidate(c.id, c.text) for c in candidates if c.status in OPEN_STATUSES
    )
    return {
        "document": document,
        "pages": pages,
        "candidates": candidates,
        "duplicates": duplicates,
    }


async def set_document_hidden(db: AsyncSession, document_id: UUID, hidden: bool) -> Document:
    result = await db.execute(
        update(Document)
        .where(Document.id == document_id)
        .values(hidden=bool(hidden), updated_at=_utc_now_naive())
        .returning(Document.id)
        .execution_options(synchronize_session=False)
    )
    if result.first() is None:
        await db.rollback()
        raise DocumentNotFound(f"Document {document_id} not found")
    await db.commit()
    return await db_handler.get_document(db, document_id)


async def requeue_failed_pages(db: AsyncSession, document_id: UUID) -> int:
    """Operator action: failed pages back to ``queued`` and the document to ``queued``."""
    document = await db_handler.get_document(db, document_id)
    if document is None:
        raise DocumentNotFound(f"Document {document_id} not found")
    count = await db_handler.requeue_failed_pages(db, document_id)
    if count:
        await db_handler.update_document_status(db, document_id, "queued", last_ocr_error=None)
    await db.commit()
    logger.info("[%s] Requeued %s failed pages", document_id, count)
    return count
