"""
Extraction tick error helpers.

Centralises the "classify -> fail pages -> fail document -> failed event"
pattern so every batch failure is recorded the same way.
"""
from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.extraction_provider import ExtractionProviderError, MalformedResponse
from app.services.storage import BlobStoreError
from app.worker import db as db_handler

logger = logging.getLogger(__name__)


def classify_batch_error(error: BaseException) -> str:
    """Map an exception to the error_type stored on the failed ProcessingEvent."""
    if isinstance(error, BlobStoreError):
        return "download"
    if isinstance(error, MalformedResponse):
        return "malformed_response"
    if isinstance(error, ExtractionProviderError):
        return "provider"
    if isinstance(error, SQLAlchemyError):
        return "persistence"
    return "other"


async def record_batch_failure(
    db: AsyncSession,
    document_id: UUID,
    page_ids: list[UUID],
    page_numbers: list[int],
    error: Exception | str,
    *,
    started_at: datetime | None = None,
) -> str:
    """Persist a failed batch and return its error_type.

    * Pages still ``queued``/``processing`` become ``failed`` with the message.
    * The document becomes ``failed`` with ``last_ocr_error`` set.
    * A ``failed`` ProcessingEvent is appended with ``{"error_type": ...}``.

    The caller must have rolled back the batch transaction first.
    """
    err_str = str(error) or type(error).__name__
    error_type = classify_batch_error(error) if isinstance(error, BaseException) else "other"

    try:
        await db_handler.mark_pages_failed(db, page_ids, err_str, only_pending=True)
        await db_handler.update_document_status(db, document_id, "failed", last_ocr_error=err_str[:2000])
        await db_handler.record_processing_event(
            db,
            document_id,
            batch_pages=page_numbers,
            status="failed",
            message=err_str[:2000],
            candidates_inserted=0,
            metadata={"error_type": error_type},
            started_at=started_at,
        )
        await db_handler.safe_commit(db)
    except Exception as persist_exc:
        logger.error("[%s] Failed to persist batch failure: %s", document_id, persist_exc, exc_info=True)
        await db_handler.safe_rollback(db)

    return error_type
