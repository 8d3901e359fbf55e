"""
Batch tick processor.

One call to :func:`run_tick` processes up to ``max_batches_per_tick`` batches:

1. Fetch the oldest ``queued`` pages (``batch_size * 3``).
2. Keep only pages of the first page's document, sorted, truncated to ``batch_size``.
3. Claim them with one conditional ``queued -> processing`` update.
4. Resolve the document, sign its blob URL, download, call the extraction provider.
5. Store normalized candidates, per-page results, document progress and a
   success event in one transaction.

A document that is gone or whose blob URL cannot be signed fails only its own
pages and the loop moves on. Any other batch failure fails the pages and the
document, appends a failed event, and ends the tick.

The tick holds no state between calls; it is safe to run concurrently from the
scheduler loop, the HTTP trigger and post-upload ingestion.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.candidates import NormalizedCandidate, normalize_candidates
from app.services.extraction_provider import (
    ExtractionProvider,
    ExtractionRequest,
    get_extraction_provider,
)
from app.services.storage import BlobStoreError, GCSBlobStore, get_blob_store
from app.worker import db as db_handler
from app.worker.config import WorkerConfig, load_worker_config
from app.worker.errors import record_batch_failure

logger = logging.getLogger(__name__)

SIGNED_URL_ERROR = "Unable to generate signed URL for extraction"


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BatchPage(NamedTuple):
    id: UUID
    document_id: UUID
    page_number: int


@dataclass
class TickSummary:
    processed_batches: int = 0
    candidates_inserted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "processed" if self.processed_batches > 0 else "idle"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "processedBatches": self.processed_batches,
            "candidatesInserted": self.candidates_inserted,
            "errors": list(self.errors),
        }


# ---------------------------------------------------------------------------
# Batch selection
# ---------------------------------------------------------------------------

async def select_batch(db: AsyncSession, batch_size: int) -> list[BatchPage]:
    """Oldest queued pages of a single document, sorted by page number."""
    pages = await db_handler.get_queued_pages(db, batch_size * 3)
    if not pages:
        return []
    rows = [BatchPage(p.id, p.document_id, p.page_number) for p in pages]
    document_id = rows[0].document_id
    same_doc = sorted((r for r in rows if r.document_id == document_id), key=lambda r: r.page_number)
    return same_doc[:batch_size]


# ---------------------------------------------------------------------------
# Result persistence helpers
# ---------------------------------------------------------------------------

def _candidate_rows(
    candidates: list[NormalizedCandidate],
    *,
    document_id: UUID,
    project_id: UUID,
    page_id_by_number: dict[int, UUID],
) -> list[dict]:
    return [
        {
            "document_id": document_id,
            "project_id": project_id,
            "page_id": page_id_by_number.get(c.page),
            "text": c.text,
            "type": c.type,
            "confidence": c.confidence,
            "rationale": c.rationale,
            "status": c.status,
            "created_by": None,
        }
        for c in candidates
    ]


def _page_results(candidates: list[NormalizedCandidate], page_numbers: list[int]) -> dict[int, tuple]:
    """page_number -> (mean confidence or None, joined text or None)."""
    by_page: dict[int, list[NormalizedCandidate]] = defaultdict(list)
    for c in candidates:
        by_page[c.page].append(c)
    results = {}
    for number in page_numbers:
        items = by_page.get(number, [])
        confidence = sum(c.confidence for c in items) / len(items) if items else None
        text = "\n\n".join(c.text for c in items) or None
        results[number] = (confidence, text)
    return results


async def _fail_without_exception(
    db: AsyncSession,
    batch: list[BatchPage],
    message: str,
    *,
    document_id: UUID | None,
    started_at: datetime,
) -> None:
    """Fail only this batch's pages (missing document / unsigned URL); the tick continues."""
    await db_handler.mark_pages_failed(db, [p.id for p in batch], message)
    if document_id is not None:
        await db_handler.lock_document(db, document_id)
        pending = await db_handler.has_pending_pages(db, document_id)
        await db_handler.update_document_status(
            db,
            document_id,
            "processing" if pending else "completed",
            last_ocr_error=message,
        )
        await db_handler.record_processing_event(
            db,
            document_id,
            batch_pages=[p.page_number for p in batch],
            status="failed",
            message=message,
            metadata={"error_type": "download"},
            started_at=started_at,
        )
    await db_handler.safe_commit(db)


# ---------------------------------------------------------------------------
# One batch
# ---------------------------------------------------------------------------

async def process_batch(
    db: AsyncSession,
    batch: list[BatchPage],
    summary: TickSummary,
    *,
    provider: ExtractionProvider,
    blob_store: GCSBlobStore,
    worker_cfg: WorkerConfig,
) -> bool:
    """Process one claimed batch. Returns False when the tick must stop."""
    document_id = batch[0].document_id
    page_ids = [p.id for p in batch]
    page_numbers = [p.page_number for p in batch]
    page_id_by_number = {p.page_number: p.id for p in batch}
    started_at = _utc_now_naive()

    document = await db_handler.get_document(db, document_id)
    if document is None:
        logger.error("[%s] Document not found; failing pages %s", document_id, page_numbers)
        await _fail_without_exception(db, batch, "Document not found", document_id=None, started_at=started_at)
        summary.errors.append(f"Document {document_id} not found")
        return True

    project_id = document.project_id
    bucket = document.storage_bucket
    path = document.storage_path
    language_hint = document.language or worker_cfg.language_hint

    try:
        signed_url = await blob_store.signed_url(bucket, path, worker_cfg.signed_url_ttl_seconds)
    except BlobStoreError as e:
        logger.error("[%s] Signed URL failed: %s", document_id, e)
        await _fail_without_exception(db, batch, SIGNED_URL_ERROR, document_id=document_id, started_at=started_at)
        summary.errors.append(f"Signed URL generation failed for document {document_id}: {e}")
        return True

    try:
        pdf_bytes = await blob_store.fetch(signed_url, timeout=worker_cfg.download_timeout_seconds)
        result = await provider.extract(ExtractionRequest(
            document_id=str(document_id),
            page_numbers=page_numbers,
            pdf_bytes=pdf_bytes,
            language_hint=language_hint,
        ))
        candidates = normalize_candidates(result.candidates, worker_cfg.confidence_threshold)

        # --- Steps 8-11: one transaction ---
        inserted = await db_handler.insert_candidates(db, _candidate_rows(
            candidates,
            document_id=document_id,
            project_id=project_id,
            page_id_by_number=page_id_by_number,
        ))
        for number, (confidence, text) in _page_results(candidates, page_numbers).items():
            await db_handler.mark_page_processed(db, page_id_by_number[number], confidence=confidence, text=text)

        await db_handler.lock_document(db, document_id)
        pending = await db_handler.has_pending_pages(db, document_id)
        await db_handler.update_document_status(
            db,
            document_id,
            "processing" if pending else "completed",
            batches_increment=1,
            candidates_increment=inserted,
            last_ocr_error=None,
            last_processed_at=_utc_now_naive(),
        )
        await db_handler.record_processing_event(
            db,
            document_id,
            batch_pages=page_numbers,
            status="success",
            message=f"Processed pages {page_numbers}",
            candidates_inserted=inserted,
            metadata={"usage": result.usage.to_dict()} if result.usage else None,
            started_at=started_at,
        )
        await db.commit()
    except Exception as e:
        logger.error("[%s] Batch %s failed: %s", document_id, page_numbers, e, exc_info=True)
        await db_handler.safe_rollback(db)
        error_type = await record_batch_failure(db, document_id, page_ids, page_numbers, e, started_at=started_at)
        summary.errors.append(f"Extraction batch failed for document {document_id} ({error_type}): {e}")
        return False

    summary.processed_batches += 1
    summary.candidates_inserted += inserted
    logger.info(
        "[%s] Batch %s done: %s candidates, document %s",
        document_id, page_numbers, inserted, "processing" if pending else "completed",
    )
    return True


# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------

async def run_tick(
    db: AsyncSession,
    *,
    provider: ExtractionProvider | None = None,
    blob_store: GCSBlobStore | None = None,
    worker_cfg: WorkerConfig | None = None,
) -> TickSummary:
    """Run one tick. Raises ProviderConfigurationError if no provider can be built."""
    if worker_cfg is None:
        worker_cfg = load_worker_config()
    summary = TickSummary()

    for iteration in range(worker_cfg.max_batches_per_tick):
        batch = await select_batch(db, worker_cfg.batch_size)
        if not batch:
            break

        # Built only once there is work, so idle ticks need no credentials.
        if provider is None:
            provider = get_extraction_provider(timeout=worker_cfg.provider_timeout_seconds)
        if blob_store is None:
            blob_store = get_blob_store()

        claimed_ids = set(await db_handler.claim_pages(db, [p.id for p in batch]))
        if not claimed_ids:
            logger.info("[%s] Pages claimed by another tick; stopping", batch[0].document_id)
            break
        batch = [p for p in batch if p.id in claimed_ids]
        logger.info(
            "[%s] Tick batch %s/%s: pages %s",
            batch[0].document_id, iteration + 1, worker_cfg.max_batches_per_tick,
            [p.page_number for p in batch],
        )

        keep_going = await process_batch(
            db,
            batch,
            summary,
            provider=provider,
            blob_store=blob_store,
            worker_cfg=worker_cfg,
        )
        if not keep_going:
            break

    logger.info(
        "Tick %s: %s batches, %s candidates, %s errors",
        summary.status, summary.processed_batches, summary.candidates_inserted, len(summary.errors),
    )
    return summary
