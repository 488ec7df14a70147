"""
Document Pipeline — one run per call

  1. Acquire       claim PENDING → PROCESSING (first run), or verify the
                   caller's claim (reprocess run, run_id given)
  2. Fetch         raw bytes by storage_ref            StorageFetchError
  3. Extract       per-format extractor + normalize    ExtractionError
  4. Chunk         fixed-window chunker                ChunkingError
  5. Commit        replace chunk set + COMPLETED in one transaction
     or Fail       FAILED + diagnostic, zero chunks

Every step after acquisition is wrapped: whatever goes wrong ends as a
FAILED document with a diagnostic, and run() itself never raises. The
terminal write is a compare-and-set on (status=processing, run_id), so a
run whose document was deleted or re-claimed in the meantime discards its
result instead of overwriting a newer run.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursedocs.core.errors import IngestionError, StorageFetchError
from coursedocs.db import queries
from coursedocs.db.session import session_scope
from coursedocs.processing.chunking import WindowChunker, chunk_statistics
from coursedocs.processing.extractor import TextExtractorOrchestrator
from coursedocs.schemas.documents import DocumentStatus
from coursedocs.storage.blob import BlobStore

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED    = "failed"
OUTCOME_SKIPPED   = "skipped"     # claim rejected, another run owns the document
OUTCOME_DISCARDED = "discarded"   # run lost ownership before its terminal write


@dataclass
class PipelineOutcome:
    document_id:   uuid.UUID
    status:        str
    run_id:        uuid.UUID | None = None
    chunk_count:   int = 0
    error_message: str | None = None
    elapsed_ms:    float = 0.0
    statistics:    dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        """JSON-safe form, used as the Celery task result."""
        return {
            "status":        self.status,
            "document_id":   str(self.document_id),
            "run_id":        str(self.run_id) if self.run_id else None,
            "chunk_count":   self.chunk_count,
            "error_message": self.error_message,
            "elapsed_ms":    round(self.elapsed_ms),
        }


@dataclass(frozen=True)
class _ClaimedRun:
    run_id:        uuid.UUID
    storage_ref:   str
    mime_type:     str
    original_name: str
    attempt:       int


class DocumentPipeline:
    """
    Stateless across runs; safe to share between concurrent runs.
    Receives the session factory, never a live session, because each step
    commits on its own.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: BlobStore,
        extractor: TextExtractorOrchestrator,
        chunker: WindowChunker,
    ) -> None:
        self._session_factory = session_factory
        self._blobs     = blob_store
        self._extractor = extractor
        self._chunker   = chunker

    async def run(
        self,
        document_id: uuid.UUID,
        run_id: uuid.UUID | None = None,
    ) -> PipelineOutcome:
        t0 = time.monotonic()

        try:
            claimed = await self._acquire(document_id, run_id)
        except Exception as exc:
            # Nothing was claimed, so there is no run to fail
            logger.exception("Claim failed | doc=%s run=%s", document_id, run_id)
            return PipelineOutcome(
                document_id=document_id,
                status=OUTCOME_SKIPPED,
                run_id=run_id,
                error_message=f"Unexpected error: {exc}",
            )

        if claimed is None:
            return PipelineOutcome(document_id=document_id, status=OUTCOME_SKIPPED, run_id=run_id)

        run_id = claimed.run_id
        logger.info(
            "Processing | doc=%s run=%s attempt=%d type=%s",
            document_id, run_id, claimed.attempt, claimed.mime_type,
        )

        try:
            chunks = await self._produce_chunks(document_id, claimed)
        except IngestionError as exc:
            logger.warning("Processing failed | doc=%s run=%s error=%s", document_id, run_id, exc.diagnostic())
            return await self._fail(document_id, run_id, exc.diagnostic(), t0)
        except Exception as exc:
            logger.exception("Processing crashed | doc=%s run=%s", document_id, run_id)
            return await self._fail(document_id, run_id, f"Unexpected error: {exc}", t0)

        try:
            async with session_scope(self._session_factory) as db:
                committed = await queries.complete_run(db, document_id, run_id, chunks)
        except Exception as exc:
            logger.exception("Chunk commit failed | doc=%s run=%s", document_id, run_id)
            return await self._fail(document_id, run_id, f"Unexpected error: {exc}", t0)

        elapsed = (time.monotonic() - t0) * 1000
        if not committed:
            logger.warning(
                "Run superseded, result discarded | doc=%s run=%s chunks=%d",
                document_id, run_id, len(chunks),
            )
            return PipelineOutcome(
                document_id=document_id, status=OUTCOME_DISCARDED,
                run_id=run_id, elapsed_ms=elapsed,
            )

        stats = chunk_statistics(chunks)
        logger.info(
            "Processing complete | doc=%s run=%s chunks=%d avg_len=%d tokens=%d elapsed_ms=%.0f",
            document_id, run_id, stats["total_chunks"], stats["average_length"],
            stats["estimated_tokens"], elapsed,
        )
        return PipelineOutcome(
            document_id=document_id,
            status=OUTCOME_COMPLETED,
            run_id=run_id,
            chunk_count=len(chunks),
            elapsed_ms=elapsed,
            statistics=stats,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _acquire(
        self,
        document_id: uuid.UUID,
        run_id: uuid.UUID | None,
    ) -> _ClaimedRun | None:
        async with session_scope(self._session_factory) as db:
            if run_id is None:
                run_id = uuid.uuid4()
                doc = await queries.claim_for_processing(db, document_id, run_id)
                if doc is None:
                    current = await queries.get_document(db, document_id)
                    logger.warning(
                        "Skipping run, document not pending | doc=%s status=%s",
                        document_id, current.status if current else "missing",
                    )
                    return None
            else:
                doc = await queries.get_document(db, document_id)
                if (
                    doc is None
                    or doc.status != DocumentStatus.PROCESSING.value
                    or doc.run_id != run_id
                ):
                    logger.warning(
                        "Skipping run, claim no longer held | doc=%s run=%s status=%s",
                        document_id, run_id, doc.status if doc else "missing",
                    )
                    return None

            return _ClaimedRun(
                run_id=run_id,
                storage_ref=doc.storage_ref,
                mime_type=doc.mime_type,
                original_name=doc.original_name,
                attempt=doc.attempt_count,
            )

    async def _produce_chunks(self, document_id: uuid.UUID, claimed: _ClaimedRun):
        try:
            data = await self._blobs.get(claimed.storage_ref)
        except StorageFetchError:
            raise
        except Exception as exc:
            raise StorageFetchError(f"Raw bytes unavailable: {exc}") from exc

        extraction = await self._extractor.extract(data, claimed.mime_type)

        return self._chunker.split(
            extraction.text,
            base_metadata={
                "document_id": str(document_id),
                "source":      claimed.original_name,
                "mime_type":   claimed.mime_type,
                "strategy":    extraction.strategy,
                "used_ocr":    extraction.used_ocr,
                "page_count":  extraction.page_count,
                "word_count":  extraction.word_count,
            },
        )

    async def _fail(
        self,
        document_id: uuid.UUID,
        run_id: uuid.UUID,
        error_message: str,
        t0: float,
    ) -> PipelineOutcome:
        elapsed = (time.monotonic() - t0) * 1000
        try:
            async with session_scope(self._session_factory) as db:
                recorded = await queries.fail_run(db, document_id, run_id, error_message)
        except Exception:
            # Document stays PROCESSING; only a manual reprocess recovers it
            logger.exception("Could not record failure | doc=%s run=%s", document_id, run_id)
            recorded = False

        if not recorded:
            logger.warning("Failure not recorded, run no longer owns document | doc=%s run=%s", document_id, run_id)
            return PipelineOutcome(
                document_id=document_id, status=OUTCOME_DISCARDED, run_id=run_id,
                error_message=error_message, elapsed_ms=elapsed,
            )

        return PipelineOutcome(
            document_id=document_id, status=OUTCOME_FAILED, run_id=run_id,
            error_message=error_message, elapsed_ms=elapsed,
        )
