import logging
from typing import Literal, Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ENV
from app.database import get_db
from app.models import Document, DocumentPage, Requirement, RequirementCandidate
from app.services.extraction_provider import ProviderConfigurationError
from app.services.ingest import IngestValidationError, ingest_document
from app.services.quota import UploadLimitReached
from app.services.review import (
    UNSET,
    CandidateNotFound,
    CandidateTransitionError,
    DocumentNotFound,
    approve_candidate,
    get_document_review,
    reject_candidate,
    requeue_failed_pages,
    set_document_hidden,
    update_candidate,
)
from app.services.storage import BlobStoreError
from app.worker.tick import run_tick

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)  # Reduce SQLAlchemy verbosity
logging.getLogger('httpx').setLevel(logging.WARNING)  # Signed URLs carry credentials in the query string

app = FastAPI(title="Requirements Ingest", version="0.1.0")

# CORS - in dev allow any origin so the review UI (any port) works
cors_origins = ["*"] if ENV == "dev" else []
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,  # must be False when allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Accept ``Bearer <CRON_SECRET>`` (or the raw secret). Open when no secret is configured."""
    from app.config import CRON_SECRET

    if not CRON_SECRET:
        return
    token = (authorization or "").strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    if token != CRON_SECRET:
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, set by the authenticating proxy in front of this service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return x_user_id.strip()


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _document_to_dict(doc: Document) -> dict:
    return {
        "id": str(doc.id),
        "project_id": str(doc.project_id),
        "name": doc.name,
        "storage_bucket": doc.storage_bucket,
        "storage_path": doc.storage_path,
        "source_hash": doc.source_hash,
        "language": doc.language,
        "status": doc.status,
        "page_count": doc.page_count,
        "batches_processed": doc.batches_processed,
        "candidates_found": doc.candidates_found,
        "last_ocr_error": doc.last_ocr_error,
        "hidden": doc.hidden,
        "uploaded_by": doc.uploaded_by,
        "last_processed_at": _iso(doc.last_processed_at),
        "created_at": _iso(doc.created_at),
        "updated_at": _iso(doc.updated_at),
    }


def _page_to_dict(page: DocumentPage) -> dict:
    return {
        "id": str(page.id),
        "page_number": page.page_number,
        "status": page.status,
        "confidence": page.confidence,
        "text": page.text,
        "error_message": page.error_message,
        "processed_at": _iso(page.processed_at),
    }


def _candidate_to_dict(c: RequirementCandidate) -> dict:
    return {
        "id": str(c.id),
        "document_id": str(c.document_id),
        "project_id": str(c.project_id),
        "page_id": str(c.page_id) if c.page_id else None,
        "text": c.text,
        "type": c.type,
        "confidence": c.confidence,
        "rationale": c.rationale,
        "status": c.status,
        "requirement_id": str(c.requirement_id) if c.requirement_id else None,
        "reviewed_by": c.reviewed_by,
        "reviewed_at": _iso(c.reviewed_at),
        "created_at": _iso(c.created_at),
    }


def _requirement_to_dict(r: Requirement) -> dict:
    return {
        "id": str(r.id),
        "project_id": str(r.project_id),
        "title": r.title,
        "description": r.description,
        "type": r.type,
        "priority": r.priority,
        "status": r.status,
        "created_by": r.created_by,
    }


# ---------------------------------------------------------------------------
# Health / tick trigger
# ---------------------------------------------------------------------------

@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/jobs/tick", dependencies=[Depends(require_cron_secret)])
@app.post("/jobs/tick", dependencies=[Depends(require_cron_secret)])
async def tick_endpoint(db: AsyncSession = Depends(get_db)):
    """Run one extraction tick. Idempotent; safe on overlapping schedules."""
    try:
        summary = await run_tick(db)
    except ProviderConfigurationError as e:
        logger.error("Tick aborted: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    return summary.to_dict()


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class IngestRequest(BaseModel):
    project_id: UUID
    document_name: str = Field(..., min_length=1, max_length=200)
    storage_path: str = Field(..., min_length=1, max_length=500)
    storage_bucket: Optional[str] = Field(None, min_length=1, max_length=120)
    pages: Optional[int] = Field(None, gt=0, le=600)
    language: Optional[str] = Field(None, max_length=16)
    source_hash: Optional[str] = Field(None, pattern=r"^[0-9a-fA-F]{16,128}$")


@app.post("/ingest", status_code=201)
async def ingest_endpoint(
    body: IngestRequest = Body(...),
    user_id: str = Depends(require_user),
    x_user_email: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    """Register an uploaded document, queue its pages, and run eager ticks."""
    try:
        result = await ingest_document(
            db,
            project_id=body.project_id,
            name=body.document_name,
            storage_path=body.storage_path,
            storage_bucket=body.storage_bucket,
            uploaded_by=user_id,
            uploader_email=x_user_email,
            pages=body.pages,
            source_hash=body.source_hash,
            language=body.language,
        )
    except UploadLimitReached as e:
        return JSONResponse(status_code=429, content=e.to_dict())
    except IngestValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BlobStoreError as e:
        logger.error("Ingest could not read %s: %s", body.storage_path, e)
        raise HTTPException(status_code=400, detail="Unable to read document from storage")

    return {
        "document": _document_to_dict(result.document),
        "pages": [_page_to_dict(p) for p in result.pages],
        "processing": result.processing.to_dict() if result.processing else None,
    }


# ---------------------------------------------------------------------------
# Documents / review
# ---------------------------------------------------------------------------

@app.get("/documents/{document_id}")
async def get_document_endpoint(
    document_id: UUID,
    db: AsyncSession = Depends(get_db),
    _user: str = Depends(require_user),
):
    """Document with pages, candidates and duplicate groups over open candidates."""
    try:
        review = await get_document_review(db, document_id)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    return {
        "document": _document_to_dict(review["document"]),
        "pages": [_page_to_dict(p) for p in review["pages"]],
        "candidates": [_candidate_to_dict(c) for c in review["candidates"]],
        "duplicates": [g.to_dict() for g in review["duplicates"]],
    }


class DocumentPatch(BaseModel):
    hidden: bool


@app.patch("/documents/{document_id}")
async def patch_document_endpoint(
    document_id: UUID,
    body: DocumentPatch = Body(...),
    _user: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        document = await set_document_hidden(db, document_id, body.hidden)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    return {"document": _document_to_dict(document)}


class CandidatePatch(BaseModel):
    action: Literal["update", "approve", "reject"]
    text: Optional[str] = None
    type: Optional[str] = None
    confidence: Optional[float] = None
    rationale: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    status: Optional[str] = None


@app.patch("/documents/{document_id}/candidates/{candidate_id}")
async def patch_candidate_endpoint(
    document_id: UUID,
    candidate_id: UUID,
    body: CandidatePatch = Body(...),
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Review action on one candidate: update, approve (promote) or reject."""
    try:
        if body.action == "update":
            sent = body.model_fields_set
            candidate = await update_candidate(
                db,
                document_id,
                candidate_id,
                text=body.text if "text" in sent else UNSET,
                type=body.type if "type" in sent else UNSET,
                confidence=body.confidence if "confidence" in sent else UNSET,
                rationale=body.rationale if "rationale" in sent else UNSET,
            )
            return {"candidate": _candidate_to_dict(candidate)}

        if body.action == "approve":
            if not body.title or not body.description:
                raise HTTPException(status_code=400, detail="title and description are required to approve")
            requirement, candidate = await approve_candidate(
                db,
                document_id,
                candidate_id,
                user_id=user_id,
                title=body.title,
                description=body.description,
                type=body.type,
                priority=body.priority,
                status=body.status,
            )
            return {"candidate": _candidate_to_dict(candidate), "requirement": _requirement_to_dict(requirement)}

        candidate = await reject_candidate(db, document_id, candidate_id, user_id=user_id)
        return {"candidate": _candidate_to_dict(candidate)}
    except CandidateNotFound:
        raise HTTPException(status_code=404, detail="Candidate not found")
    except CandidateTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/documents/{document_id}/requeue", dependencies=[Depends(require_cron_secret)])
async def requeue_document_endpoint(document_id: UUID, db: AsyncSession = Depends(get_db)):
    """Operator action: put failed pages back in the queue (no automatic retry exists)."""
    try:
        count = await requeue_failed_pages(db, document_id)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    return {"document_id": str(document_id), "requeued_pages": count}
