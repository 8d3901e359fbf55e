"""Unit tests for app.worker.errors."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.services.extraction_provider import ExtractionProviderError, MalformedResponse
from app.services.storage import BlobStoreError
from app.worker.errors import classify_batch_error, record_batch_failure


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "error, expected",
    [
        (BlobStoreError("Failed to download PDF: 404"), "download"),
        (MalformedResponse("not json"), "malformed_response"),
        (ExtractionProviderError("503", status_code=503), "provider"),
        (OperationalError("INSERT", {}, Exception("db down")), "persistence"),
        (ValueError("unexpected"), "other"),
    ],
)
def test_classify_batch_error(error, expected):
    assert classify_batch_error(error) == expected


# ---------------------------------------------------------------------------
# record_batch_failure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_record_batch_failure_writes_pages_document_and_event(store, db):
    doc = store.add_document(page_count=2)
    pages = store.pages_of(doc.id)
    for p in pages:
        p.status = "processing"

    error_type = await record_batch_failure(
        db, doc.id, [p.id for p in pages], [1, 2], ExtractionProviderError("quota exceeded", status_code=429),
    )

    assert error_type == "provider"
    assert all(p.status == "failed" and p.error_message == "quota exceeded" for p in pages)
    assert doc.status == "failed"
    assert doc.last_ocr_error == "quota exceeded"
    (event,) = store.events_of(doc.id)
    assert event.status == "failed"
    assert event.batch_pages == [1, 2]
    assert event.candidates_inserted == 0
    assert event.event_metadata == {"error_type": "provider"}


@pytest.mark.asyncio
async def test_record_batch_failure_leaves_finished_pages(store, db):
    doc = store.add_document(page_count=2)
    done, pending = store.pages_of(doc.id)
    done.status = "processed"
    pending.status = "processing"

    await record_batch_failure(db, doc.id, [done.id, pending.id], [1, 2], RuntimeError("boom"))

    assert done.status == "processed"
    assert pending.status == "failed"


@pytest.mark.asyncio
async def test_record_batch_failure_uses_type_name_for_empty_message(store, db):
    doc = store.add_document(page_count=1)

    await record_batch_failure(db, doc.id, [store.pages_of(doc.id)[0].id], [1], TimeoutError())

    assert doc.last_ocr_error == "TimeoutError"


@pytest.mark.asyncio
async def test_record_batch_failure_swallows_persist_errors(db):
    handler = AsyncMock()
    handler.mark_pages_failed.side_effect = RuntimeError("connection reset")

    with patch("app.worker.errors.db_handler", handler):
        error_type = await record_batch_failure(db, uuid4(), [uuid4()], [1], BlobStoreError("gone"))

    assert error_type == "download"
    handler.safe_rollback.assert_awaited_once()
    handler.safe_commit.assert_not_awaited()
