from sqlalchemy import Boolean, Column, String, DateTime, Integer, Text, ForeignKey, Float, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from app.database import Base


class Document(Base):
    """An uploaded requirements document (PDF) split into pages for extraction."""
    __tablename__ = "requirement_documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    storage_bucket = Column(String(120), nullable=False)
    storage_path = Column(String(500), nullable=False)
    source_hash = Column(String(128), nullable=True)
    language = Column(String(16), nullable=True)  # e.g. "es,en"; None = service default
    status = Column(String(20), default="queued", nullable=False)  # queued, processing, completed, failed
    page_count = Column(Integer, default=0, nullable=False)
    batches_processed = Column(Integer, default=0, nullable=False)
    candidates_found = Column(Integer, default=0, nullable=False)
    last_ocr_error = Column(Text, nullable=True)
    hidden = Column(Boolean, default=False, nullable=False)
    uploaded_by = Column(String(255), nullable=True, index=True)
    last_processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class DocumentPage(Base):
    __tablename__ = "document_pages"
    __table_args__ = (
        UniqueConstraint("document_id", "page_number", name="uq_document_pages_document_page"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("requirement_documents.id", ondelete="CASCADE"), nullable=False)
    page_number = Column(Integer, nullable=False)  # 1-based
    status = Column(String(20), default="queued", nullable=False, index=True)  # queued, processing, processed, failed
    text = Column(Text, nullable=True)  # Candidate texts joined by blank lines
    confidence = Column(Float, nullable=True)  # Mean candidate confidence for the page
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class RequirementCandidate(Base):
    """Provider-extracted requirement awaiting human review."""
    __tablename__ = "requirement_candidates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("requirement_documents.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), nullable=False)
    page_id = Column(UUID(as_uuid=True), ForeignKey("document_pages.id", ondelete="SET NULL"), nullable=True)
    text = Column(Text, nullable=False)
    type = Column(String(32), nullable=True)  # functional, non_functional, security, performance, ux
    confidence = Column(Float, default=0.0, nullable=False)
    rationale = Column(Text, nullable=True)
    status = Column(String(20), default="draft", nullable=False)  # draft, low_confidence, approved, rejected
    requirement_id = Column(UUID(as_uuid=True), ForeignKey("requirements.id", ondelete="SET NULL"), nullable=True)
    created_by = Column(String(255), nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Requirement(Base):
    __tablename__ = "requirements"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    type = Column(String(32), nullable=True)
    priority = Column(Integer, default=3, nullable=False)  # 1 (highest) .. 5
    status = Column(String(32), default="analysis", nullable=False)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class RequirementSource(Base):
    """Provenance link: which candidate (and page) a requirement was promoted from."""
    __tablename__ = "requirement_sources"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    requirement_id = Column(UUID(as_uuid=True), ForeignKey("requirements.id", ondelete="CASCADE"), nullable=False)
    candidate_id = Column(UUID(as_uuid=True), ForeignKey("requirement_candidates.id", ondelete="SET NULL"), nullable=True)
    document_id = Column(UUID(as_uuid=True), ForeignKey("requirement_documents.id", ondelete="SET NULL"), nullable=True)
    page_id = Column(UUID(as_uuid=True), ForeignKey("document_pages.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ProcessingEvent(Base):
    """Append-only log of batch outcomes for a document."""
    __tablename__ = "document_processing_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("requirement_documents.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_pages = Column(JSONB, nullable=False)  # list of page numbers in the batch
    pages_processed = Column(Integer, default=0, nullable=False)
    status = Column(String(20), nullable=False)  # success, failed
    message = Column(Text, nullable=True)
    candidates_inserted = Column(Integer, default=0, nullable=False)
    event_metadata = Column("metadata", JSONB, nullable=True)  # {"usage": {...}} or {"error_type": ...}
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
