"""
Ingestion error taxonomy.

Synchronous errors (raised straight to the caller of submit/reprocess):
  ValidationError       bad mime type, size, or empty upload; nothing persisted
  StorageWriteError     blob store rejected the raw bytes; nothing persisted
  ConcurrencyConflict   reprocess requested while a run is in flight
  DocumentNotFound      unknown document id
  InvalidTransition     a status change the state machine forbids
  DispatchError         a reprocess run could not be published

Asynchronous errors (caught by the pipeline, stored as the document's
error_message, document ends FAILED):
  StorageFetchError     raw bytes unavailable at processing time
  ExtractionError       format-specific decode / OCR failure
  ChunkingError         extracted text empty or degenerate
"""

from __future__ import annotations

from uuid import UUID

from coursedocs.schemas.documents import ErrorDetail, ErrorResponse


class IngestionError(Exception):
    """Base class. `code` is the stable machine-readable error code."""

    code = "INGESTION_ERROR"
    # Prefix used when the error is recorded as a document diagnostic
    stage = "Processing error"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def diagnostic(self) -> str:
        return f"{self.stage}: {self.message}"

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error_code=self.code,
            message=self.message,
            details=[ErrorDetail(field=self.field, message=self.message, code=self.code)],
        )


class ValidationError(IngestionError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, code: str | None = None, field: str | None = "file") -> None:
        super().__init__(message, field=field)
        if code:
            self.code = code


class StorageWriteError(IngestionError):
    code = "STORAGE_ERROR"
    stage = "Storage write error"


class StorageFetchError(IngestionError):
    code = "STORAGE_FETCH_ERROR"
    stage = "Storage fetch error"


class ExtractionError(IngestionError):
    code = "EXTRACTION_ERROR"
    stage = "Text extraction error"


class ChunkingError(IngestionError):
    code = "CHUNKING_ERROR"
    stage = "Chunking error"


class DocumentNotFound(IngestionError):
    code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: UUID) -> None:
        super().__init__(f"Document '{document_id}' was not found.", field=None)
        self.document_id = document_id


class ConcurrencyConflict(IngestionError):
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, document_id: UUID, reason: str = "IN_PROGRESS") -> None:
        super().__init__(
            f"Document '{document_id}' is already being processed.", field=None
        )
        self.document_id = document_id
        self.reason = reason


class InvalidTransition(IngestionError):
    code = "INVALID_TRANSITION"

    def __init__(self, source: str, target: str) -> None:
        super().__init__(f"Illegal status transition {source} -> {target}", field=None)
        self.source = source
        self.target = target


class DispatchError(IngestionError):
    """The processing task could not be handed to the worker substrate."""

    code = "DISPATCH_ERROR"
    stage = "Dispatch error"
