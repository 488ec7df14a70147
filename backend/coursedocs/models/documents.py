"""
SQLAlchemy ORM Models — Documents & Chunks

Mapped classes (2.x style) with full async support. Column types are the
portable ones (Uuid, JSON with a JSONB variant) so the same models run on
PostgreSQL in production and on SQLite in the test suite.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from coursedocs.schemas.documents import DocumentStatus

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in DocumentStatus)


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → extraction → chunking.

    State machine (status column, rules in coursedocs.models.status):
        pending    — raw bytes stored, pipeline not yet started
        processing — a run (identified by run_id) owns the document
        completed  — chunk set committed, available for retrieval
        failed     — pipeline error (see error_message), zero chunks

    storage_ref, size_bytes and mime_type are written once at creation and
    never updated; reprocessing re-reads the raw bytes through storage_ref.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="documents_status_check"),
        Index("idx_documents_owner_id", "owner_id"),
        Index("idx_documents_status",   "status", "created_at"),
        Index("idx_documents_course",   "course_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Identity collaborator ids, trusted as given
    owner_id:  Mapped[uuid.UUID]     = mapped_column(Uuid, nullable=False)
    course_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    original_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Filename exactly as supplied by the uploader",
    )
    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Sanitized basename used for the blob key",
    )
    mime_type: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Canonical MIME type accepted by the validator",
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)

    storage_ref: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Opaque blob store reference to the raw bytes",
    )

    # Ingestion state machine
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=DocumentStatus.PENDING.value,
        server_default=DocumentStatus.PENDING.value,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    # run_id identifies the only run allowed to finish the document
    run_id:        Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    processing_started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last re-publish by the stale-pending scanner",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    chunks: Mapped[list["Chunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Chunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} owner={self.owner_id} "
            f"status={self.status} file={self.original_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model — document_chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One text fragment of a Document's extracted text.
    Ids are generated fresh on every successful run and never reused.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_position"),
        CheckConstraint("chunk_index >= 0", name="chunks_index_non_negative"),
        Index("idx_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content:     Mapped[str] = mapped_column(Text, nullable=False)
    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        _JSON,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return f"<Chunk doc={self.document_id} index={self.chunk_index} chars={len(self.content)}>"
