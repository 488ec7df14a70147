"""
Celery Tasks — Document Processing

Task: process_document
  Runs DocumentPipeline once for a document. The pipeline claims (or
  verifies) the document, extracts, chunks and records COMPLETED or FAILED
  itself, so the task never raises for a document-level failure and is
  never retried automatically: a FAILED document is recovered by an
  explicit reprocess.

Task: requeue_stale_pending
  Beat task. Re-publishes documents left 'pending' longer than
  settings.stale_pending_minutes (broker outage at submission time). Each
  document is stamped with last_published_at in the same transaction, so it
  is re-published at most once per window. A duplicate delivery is still
  harmless: only one run can win the PENDING → PROCESSING claim.

Documents stuck in 'processing' after a worker crash are not recovered
here; reprocess rejects them until their status is reset.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, AsyncGenerator

from celery import Task

from coursedocs.workers.celery_app import INGEST_QUEUE, celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # Called from inside a running loop (e.g. eager mode in an async test)
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Worker-side wiring
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def _worker_components():
    """Stateless collaborators, built once per worker process."""
    from coursedocs.core.config import get_settings
    from coursedocs.processing.chunking import ChunkerConfig, WindowChunker
    from coursedocs.processing.extractor import TextExtractorOrchestrator
    from coursedocs.storage.blob import S3BlobStore

    settings = get_settings()
    return (
        S3BlobStore.from_settings(settings),
        TextExtractorOrchestrator.from_settings(settings),
        WindowChunker(ChunkerConfig(settings.chunk_size, settings.chunk_overlap)),
    )


@asynccontextmanager
async def _worker_session_factory() -> AsyncGenerator:
    """
    Engine scoped to one task invocation. Each run_async call has its own
    event loop, and pooled async connections cannot cross loops.
    """
    from coursedocs.db.session import build_session_factory, create_engine_from_settings

    engine = create_engine_from_settings()
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="coursedocs.workers.tasks.process_document",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(
    self: Task,
    *,
    document_id: str,
    run_id: str | None = None,
) -> dict[str, Any]:
    """Run the ingestion pipeline for one document."""
    return run_async(
        _process_document_async(
            document_id=uuid.UUID(document_id),
            run_id=uuid.UUID(run_id) if run_id else None,
        )
    )


async def _process_document_async(
    document_id: uuid.UUID,
    run_id: uuid.UUID | None,
) -> dict[str, Any]:
    from coursedocs.services.pipeline import DocumentPipeline

    blob_store, extractor, chunker = _worker_components()
    async with _worker_session_factory() as session_factory:
        pipeline = DocumentPipeline(session_factory, blob_store, extractor, chunker)
        outcome = await pipeline.run(document_id, run_id)
    return outcome.as_dict()


# ---------------------------------------------------------------------------
# Stale-pending scanner (Celery Beat, every 60 seconds)
# ---------------------------------------------------------------------------

@celery_app.task(
    name="coursedocs.workers.tasks.requeue_stale_pending",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_pending() -> dict[str, int]:
    """Re-publish documents stuck in 'pending'."""
    return run_async(_requeue_stale_pending_async())


async def _requeue_stale_pending_async(limit: int = 50) -> dict[str, int]:
    from coursedocs.core.config import get_settings
    from coursedocs.db.queries import mark_stale_pending
    from coursedocs.db.session import session_scope

    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.stale_pending_minutes)

    async with _worker_session_factory() as session_factory:
        async with session_scope(session_factory) as db:
            stale_ids = await mark_stale_pending(db, cutoff, limit=limit)

    for document_id in stale_ids:
        process_document.apply_async(
            kwargs={"document_id": str(document_id), "run_id": None},
            queue=INGEST_QUEUE,
            countdown=5,
        )
        logger.info("Re-queued stale document | doc=%s", document_id)

    return {"requeued": len(stale_ids)}
