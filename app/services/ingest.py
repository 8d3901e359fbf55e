"""Document ingestion: validate, enforce the daily quota, create queued pages, run eager ticks."""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Document, DocumentPage
from app.services.extraction_provider import ExtractionProvider
from app.services.pdf import PdfReadError, read_pdf_metadata
from app.services.quota import enforce_upload_quota
from app.services.storage import GCSBlobStore, get_blob_store
from app.worker import db as db_handler
from app.worker.config import WorkerConfig, load_worker_config
from app.worker.tick import TickSummary, run_tick

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 200
MAX_PATH_LENGTH = 500
MAX_BUCKET_LENGTH = 120
MAX_LANGUAGE_LENGTH = 16
MAX_DECLARED_PAGES = 600
_HASH_RE = re.compile(r"^[0-9a-fA-F]{16,128}$")
_CONTROL_WS_RE = re.compile(r"[\t\r\n]+")


class IngestValidationError(ValueError):
    """Bad payload or page count; raised before any state is created."""


@dataclass
class IngestResult:
    document: Document
    pages: List[DocumentPage]
    processing: Optional[TickSummary]


def sanitize_name(name: str) -> str:
    cleaned = _CONTROL_WS_RE.sub(" ", name or "").strip()
    if not cleaned:
        raise IngestValidationError("Document name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise IngestValidationError(f"Document name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


def _validate_payload(
    storage_path: str,
    storage_bucket: str,
    pages: Optional[int],
    source_hash: Optional[str],
    language: Optional[str],
) -> None:
    if not storage_path or len(storage_path) > MAX_PATH_LENGTH:
        raise IngestValidationError(f"storage_path must be 1-{MAX_PATH_LENGTH} characters")
    if not storage_bucket or len(storage_bucket) > MAX_BUCKET_LENGTH:
        raise IngestValidationError(f"storage_bucket must be 1-{MAX_BUCKET_LENGTH} characters")
    if pages is not None and (isinstance(pages, bool) or not isinstance(pages, int) or not 0 < pages <= MAX_DECLARED_PAGES):
        raise IngestValidationError(f"pages must be an integer between 1 and {MAX_DECLARED_PAGES}")
    if source_hash is not None and not _HASH_RE.match(source_hash):
        raise IngestValidationError("source_hash must be 16-128 hex characters")
    if language is not None and len(language) > MAX_LANGUAGE_LENGTH:
        raise IngestValidationError(f"language must be at most {MAX_LANGUAGE_LENGTH} characters")


async def ingest_document(
    db: AsyncSession,
    *,
    project_id: UUID,
    name: str,
    storage_path: str,
    uploaded_by: str,
    storage_bucket: Optional[str] = None,
    uploader_email: Optional[str] = None,
    pages: Optional[int] = None,
    source_hash: Optional[str] = None,
    language: Optional[str] = None,
    provider: Optional[ExtractionProvider] = None,
    blob_store: Optional[GCSBlobStore] = None,
    worker_cfg: Optional[WorkerConfig] = None,
    now: Optional[datetime] = None,
) -> IngestResult:
    """Create a queued document and its pages, then run up to ``ingest_tick_attempts`` ticks.

    Raises IngestValidationError (bad payload / page count) or UploadLimitReached
    before anything is written. Tick failures are logged, never raised.
    """
    from app.config import GCS_BUCKET, OCR_MAX_PAGES

    if worker_cfg is None:
        worker_cfg = load_worker_config()
    name = sanitize_name(name)
    storage_path = (storage_path or "").strip()
    storage_bucket = (storage_bucket or GCS_BUCKET or "").strip()
    language = (language or "").strip() or None
    _validate_payload(storage_path, storage_bucket, pages, source_hash, language)

    await enforce_upload_quota(db, uploaded_by, uploader_email, now=now)

    # --- Resolve page count / content hash ---
    if pages is None:
        if blob_store is None:
            blob_store = get_blob_store()
        data = await blob_store.download(storage_bucket, storage_path)
        try:
            meta = read_pdf_metadata(data)
        except PdfReadError as e:
            raise IngestValidationError(str(e)) from e
        pages = meta.page_count
        source_hash = source_hash or meta.sha256
        logger.info("Resolved %s: %s pages, sha256 %s", storage_path, pages, meta.sha256[:12])

    if not 1 <= pages <= OCR_MAX_PAGES:
        raise IngestValidationError(f"Document must have between 1 and {OCR_MAX_PAGES} pages (got {pages})")

    # --- Create document + queued pages ---
    document = await db_handler.create_document(
        db,
        project_id=project_id,
        name=name,
        storage_bucket=storage_bucket,
        storage_path=storage_path,
        source_hash=source_hash,
        language=language,
        page_count=pages,
        uploaded_by=uploaded_by,
    )
    await db_handler.create_pages(db, document.id, pages)
    await db.commit()
    document_id = document.id
    logger.info("[%s] Ingested %r (%s pages) for %s", document_id, name, pages, uploaded_by)

    # --- Eager ticks so short documents finish within the request ---
    summary: Optional[TickSummary] = None
    for attempt in range(worker_cfg.ingest_tick_attempts):
        try:
            summary = await run_tick(db, provider=provider, blob_store=blob_store, worker_cfg=worker_cfg)
        except Exception as e:
            logger.error("[%s] Eager tick %s failed: %s", document_id, attempt + 1, e, exc_info=True)
            await db_handler.safe_rollback(db)
            summary = None
            break
        if summary.processed_batches == 0 or summary.errors:
            break

    document = await db_handler.get_document(db, document_id)
    page_rows = await db_handler.get_document_pages(db, document_id)
    return IngestResult(document=document, pages=page_rows, processing=summary)
