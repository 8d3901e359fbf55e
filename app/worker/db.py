"""
Extraction pipeline database handler.

All tick and ingestion persistence goes through this module: reads and writes
to Document, DocumentPage, RequirementCandidate and ProcessingEvent, plus
commit/rollback helpers.

Functions do not commit (the caller owns the transaction) except
:func:`claim_pages`, whose claim must be visible to concurrent ticks at once.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    Document,
    DocumentPage,
    ProcessingEvent,
    RequirementCandidate,
)

logger = logging.getLogger(__name__)

PENDING_PAGE_STATUSES = ("queued", "processing")


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Documents & pages (creation / reads)
# ---------------------------------------------------------------------------

async def create_document(db: AsyncSession, **fields: Any) -> Document:
    """Add a new Document in ``queued`` status and flush to get its id."""
    fields.setdefault("status", "queued")
    document = Document(**fields)
    db.add(document)
    await db.flush()
    return document


async def create_pages(db: AsyncSession, document_id: UUID, page_count: int) -> list[DocumentPage]:
    """Add pages 1..page_count in ``queued`` status."""
    pages = [
        DocumentPage(document_id=document_id, page_number=n, status="queued")
        for n in range(1, page_count + 1)
    ]
    db.add_all(pages)
    await db.flush()
    return pages


async def get_document(db: AsyncSession, document_id: UUID) -> Document | None:
    result = await db.execute(
        select(Document)
        .where(Document.id == document_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_queued_pages(db: AsyncSession, limit: int) -> list[DocumentPage]:
    """Oldest ``queued`` pages across all documents (FIFO)."""
    result = await db.execute(
        select(DocumentPage)
        .where(DocumentPage.status == "queued")
        .order_by(DocumentPage.created_at, DocumentPage.page_number)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_document_pages(db: AsyncSession, document_id: UUID) -> list[DocumentPage]:
    result = await db.execute(
        select(DocumentPage)
        .where(DocumentPage.document_id == document_id)
        .order_by(DocumentPage.page_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def build_document_lock_statement(document_id: UUID):
    return select(Document.id).where(Document.id == document_id).with_for_update()


async def lock_document(db: AsyncSession, document_id: UUID) -> None:
    """Row-lock the document until the caller's transaction ends.

    Taken before the pending-pages check so concurrent ticks finishing
    batches of the same document decide its status one after another.
    """
    await db.execute(build_document_lock_statement(document_id))


async def has_pending_pages(db: AsyncSession, document_id: UUID) -> bool:
    """True while any page of the document is still ``queued`` or ``processing``."""
    result = await db.execute(
        select(func.count())
        .select_from(DocumentPage)
        .where(
            DocumentPage.document_id == document_id,
            DocumentPage.status.in_(PENDING_PAGE_STATUSES),
        )
    )
    return (result.scalar() or 0) > 0


async def count_documents_created_since(db: AsyncSession, uploaded_by: str, since: datetime) -> int:
    """Documents uploaded by *uploaded_by* with ``created_at >= since`` (naive UTC)."""
    result = await db.execute(
        select(func.count())
        .select_from(Document)
        .where(Document.uploaded_by == uploaded_by, Document.created_at >= since)
    )
    return int(result.scalar() or 0)


# ---------------------------------------------------------------------------
# Claim (the only concurrency control between ticks)
# ---------------------------------------------------------------------------

def build_claim_statement(page_ids: Sequence[UUID]):
    """Conditional ``queued -> processing`` flip; RETURNING yields the ids actually won."""
    return (
        update(DocumentPage)
        .where(
            DocumentPage.id.in_(list(page_ids)),
            DocumentPage.status == "queued",
        )
        .values(status="processing", updated_at=_utc_now_naive())
        .returning(DocumentPage.id)
        .execution_options(synchronize_session=False)
    )


async def claim_pages(db: AsyncSession, page_ids: Sequence[UUID]) -> list[UUID]:
    """Atomically claim *page_ids*; returns the subset this caller won. Commits."""
    if not page_ids:
        return []
    result = await db.execute(build_claim_statement(page_ids))
    claimed = [row[0] for row in result.fetchall()]
    await db.commit()
    if len(claimed) < len(page_ids):
        logger.info("[db] claim_pages: won %s of %s pages", len(claimed), len(page_ids))
    return claimed


# ---------------------------------------------------------------------------
# Batch results
# ---------------------------------------------------------------------------

async def insert_candidates(db: AsyncSession, rows: list[dict]) -> int:
    """Bulk insert candidate rows in one statement. Returns the number of rows."""
    if not rows:
        return 0
    await db.execute(insert(RequirementCandidate), rows)
    return len(rows)


async def mark_page_processed(
    db: AsyncSession,
    page_id: UUID,
    *,
    confidence: float | None,
    text: str | None,
) -> None:
    await db.execute(
        update(DocumentPage)
        .where(DocumentPage.id == page_id)
        .values(
            status="processed",
            confidence=confidence,
            text=text,
            error_message=None,
            processed_at=_utc_now_naive(),
            updated_at=_utc_now_naive(),
        )
        .execution_options(synchronize_session=False)
    )


async def mark_pages_failed(
    db: AsyncSession,
    page_ids: Iterable[UUID],
    error_message: str,
    *,
    only_pending: bool = False,
) -> int:
    """Set pages to ``failed`` with *error_message*.

    With ``only_pending`` the update is guarded by ``status IN (queued, processing)``
    so pages already finished by someone else are left alone.
    """
    ids = list(page_ids)
    if not ids:
        return 0
    stmt = update(DocumentPage).where(DocumentPage.id.in_(ids))
    if only_pending:
        stmt = stmt.where(DocumentPage.status.in_(PENDING_PAGE_STATUSES))
    result = await db.execute(
        stmt.values(
            status="failed",
            error_message=(error_message or "Unknown error")[:2000],
            processed_at=_utc_now_naive(),
            updated_at=_utc_now_naive(),
        ).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def update_document_status(
    db: AsyncSession,
    document_id: UUID,
    status: str,
    *,
    batches_increment: int = 0,
    candidates_increment: int = 0,
    **fields: Any,
) -> None:
    """Set document status (plus any extra columns in *fields*).

    Counters are incremented with SQL expressions so concurrent ticks on the
    same document never lose an update.
    """
    values: dict[str, Any] = {"status": status, "updated_at": _utc_now_naive(), **fields}
    if batches_increment:
        values["batches_processed"] = Document.batches_processed + batches_increment
    if candidates_increment:
        values["candidates_found"] = Document.candidates_found + candidates_increment
    await db.execute(
        update(Document)
        .where(Document.id == document_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def record_processing_event(
    db: AsyncSession,
    document_id: UUID,
    *,
    batch_pages: list[int],
    status: str,
    message: str | None = None,
    candidates_inserted: int = 0,
    metadata: dict | None = None,
    started_at: datetime | None = None,
) -> ProcessingEvent:
    """Append one ProcessingEvent (never updated afterwards)."""
    event = ProcessingEvent(
        document_id=document_id,
        batch_pages=list(batch_pages),
        pages_processed=len(batch_pages),
        status=status,
        message=message,
        candidates_inserted=candidates_inserted,
        event_metadata=metadata,
        started_at=started_at,
        finished_at=_utc_now_naive(),
    )
    db.add(event)
    return event


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

async def requeue_failed_pages(db: AsyncSession, document_id: UUID) -> int:
    """Reset ``failed`` pages of a document to ``queued``; returns the count."""
    result = await db.execute(
        update(DocumentPage)
        .where(DocumentPage.document_id == document_id, DocumentPage.status == "failed")
        .values(status="queued", error_message=None, processed_at=None, updated_at=_utc_now_naive())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Commit helpers
# ---------------------------------------------------------------------------

async def safe_commit(db: AsyncSession) -> bool:
    """Commit; on failure rollback and return False."""
    try:
        await db.commit()
        return True
    except Exception as exc:
        logger.error("[db] commit failed, rolling back: %s", exc, exc_info=True)
        await db.rollback()
        return False


async def safe_rollback(db: AsyncSession) -> None:
    """Rollback; never raises."""
    try:
        await db.rollback()
    except Exception as exc:
        logger.error("[db] rollback failed: %s", exc, exc_info=True)
