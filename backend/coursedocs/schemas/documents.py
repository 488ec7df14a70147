"""
Document Ingestion — Pydantic Schemas

Covers everything the ingestion core hands back to its collaborators:
  - Allow-list and size ceiling enforced by the validator
  - Lifecycle status enum (persisted on `documents.status`)
  - Read models for status polling, chunk consumption and listings
  - Structured error bodies for every synchronous failure

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - status is the async pipeline state; callers poll it after submit().
  - All timestamps are timezone-aware UTC datetimes where the store keeps them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Allowed MIME types, enforced before touching blob storage
# ---------------------------------------------------------------------------

MIME_PDF  = "application/pdf"
MIME_DOC  = "application/msword"                                                     # legacy .doc
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"  # .docx
MIME_JPEG = "image/jpeg"
MIME_PNG  = "image/png"

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {MIME_PDF, MIME_DOC, MIME_DOCX, MIME_JPEG, MIME_PNG}
)

# Non-canonical spellings seen from browsers
MIME_ALIASES: dict[str, str] = {
    "image/jpg":   MIME_JPEG,
    "image/pjpeg": MIME_JPEG,
}

# Extension used for the blob key of each canonical type
EXTENSION_FOR_TYPE: dict[str, str] = {
    MIME_PDF:  ".pdf",
    MIME_DOC:  ".doc",
    MIME_DOCX: ".docx",
    MIME_JPEG: ".jpg",
    MIME_PNG:  ".png",
}

# 10 MiB hard ceiling (inclusive)
MAX_FILE_SIZE_BYTES: int = 10 * 1024 * 1024


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status column.
    Transitions: pending → processing → completed | failed
                 failed → processing (reprocess)
    """
    PENDING    = "pending"      # record exists, pipeline not yet started
    PROCESSING = "processing"   # a run owns the document
    COMPLETED  = "completed"    # chunks committed, ready for retrieval
    FAILED     = "failed"       # terminal failure, see error_message


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

class DocumentStatusView(BaseModel):
    """Polled by collaborators to track async processing progress."""
    model_config = ConfigDict(from_attributes=True)

    document_id:   UUID
    status:        DocumentStatus
    error_message: str | None = None
    chunk_count:   int = Field(0, description="Committed chunks (0 unless completed)")
    attempt_count: int = 0
    updated_at:    datetime | None = None


class ChunkView(BaseModel):
    """One committed chunk, as consumed by the retrieval collaborator."""
    model_config = ConfigDict(from_attributes=True)

    id:          UUID
    document_id: UUID
    chunk_index: int
    content:     str
    metadata:    dict[str, Any] = Field(default_factory=dict)
    created_at:  datetime | None = None


class ChunkSearchHit(BaseModel):
    """A chunk matched by plain-text search, with its document's display name."""
    chunk_id:      UUID
    document_id:   UUID
    original_name: str
    chunk_index:   int
    content:       str


class DocumentSummary(BaseModel):
    document_id:   UUID
    owner_id:      UUID
    course_id:     str | None
    original_name: str
    mime_type:     str
    size_bytes:    int
    status:        DocumentStatus
    error_message: str | None = None
    chunk_count:   int = 0
    created_at:    datetime | None = None


class Pagination(BaseModel):
    total:       int
    page:        int
    limit:       int
    total_pages: int


class DocumentPage(BaseModel):
    documents:  list[DocumentSummary]
    pagination: Pagination


class DocumentContext(BaseModel):
    """Concatenated chunk text of completed documents, for prompt building."""
    document_ids: list[UUID]
    full_text:    str
    total_chunks: int


class ReprocessAccepted(BaseModel):
    document_id: UUID
    run_id:      UUID
    status:      DocumentStatus = DocumentStatus.PROCESSING


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error; may appear in a list."""
    field:   str | None = Field(None, description="Input field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for every synchronous failure.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str              = Field(..., description="Stable machine-readable code")
    message:    str              = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None       = Field(None, description="Trace ID for log correlation")
