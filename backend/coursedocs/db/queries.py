"""
Document / chunk persistence helpers.

Every status change that can race is a single conditional UPDATE whose
row count decides the outcome:

  claim_for_processing   status IN (allowed)              → processing
  complete_run           status = processing AND run_id   → completed
  fail_run               status = processing AND run_id   → failed

The chunk set is rewritten in the same transaction as the status change
that owns it, so readers never observe a partial set.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coursedocs.models.documents import Chunk, Document
from coursedocs.models.status import (
    DISPATCHABLE_FROM,
    REPROCESSABLE_FROM,
    check_transition,
)
from coursedocs.processing.chunking import TextChunk
from coursedocs.schemas.documents import DocumentStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_document(db: AsyncSession, document_id: uuid.UUID) -> Document | None:
    result = await db.execute(
        select(Document)
        .where(Document.id == document_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def load_chunks(db: AsyncSession, document_id: uuid.UUID) -> list[Chunk]:
    result = await db.execute(
        select(Chunk)
        .where(Chunk.document_id == document_id)
        .order_by(Chunk.chunk_index)
    )
    return list(result.scalars().all())


async def count_chunks(
    db: AsyncSession,
    document_ids: Iterable[uuid.UUID],
) -> dict[uuid.UUID, int]:
    ids = list(document_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(Chunk.document_id, func.count(Chunk.id))
        .where(Chunk.document_id.in_(ids))
        .group_by(Chunk.document_id)
    )
    counts = {doc_id: 0 for doc_id in ids}
    counts.update({doc_id: n for doc_id, n in result.all()})
    return counts


async def search_chunks(
    db: AsyncSession,
    query: str,
    owner_id: uuid.UUID,
    limit: int = 10,
) -> list[tuple[Chunk, str]]:
    """Case-insensitive substring match over the owner's completed documents."""
    result = await db.execute(
        select(Chunk, Document.original_name)
        .join(Document, Chunk.document_id == Document.id)
        .where(
            Document.owner_id == owner_id,
            Document.status == DocumentStatus.COMPLETED.value,
            Chunk.content.icontains(query, autoescape=True),
        )
        .order_by(Chunk.created_at.desc(), Chunk.chunk_index)
        .limit(limit)
    )
    return [(chunk, name) for chunk, name in result.all()]


async def mark_stale_pending(
    db: AsyncSession,
    older_than: datetime,
    limit: int = 50,
) -> list[uuid.UUID]:
    """
    Stamp `last_published_at` on pending documents created before
    `older_than` and not re-published since, oldest first. Returns the
    stamped ids; a document is returned at most once per window.
    """
    stale = (
        select(Document.id)
        .where(
            Document.status == DocumentStatus.PENDING.value,
            Document.created_at < older_than,
            or_(Document.last_published_at.is_(None), Document.last_published_at < older_than),
        )
        .order_by(Document.created_at)
        .limit(limit)
    )
    result = await db.execute(
        update(Document)
        .where(Document.id.in_(stale), Document.status == DocumentStatus.PENDING.value)
        .values(last_published_at=_utcnow())
        .returning(Document.id)
        .execution_options(synchronize_session=False)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Status machine writes
# ---------------------------------------------------------------------------

async def claim_for_processing(
    db: AsyncSession,
    document_id: uuid.UUID,
    run_id: uuid.UUID,
    *,
    reprocess: bool = False,
) -> Document | None:
    """
    Atomically move a document into `processing` for the run `run_id`.

    Returns the claimed document, or None when the stored status did not
    allow the transition (or the document does not exist). Any chunks left
    behind are removed in the same transaction.
    """
    allowed = REPROCESSABLE_FROM if reprocess else DISPATCHABLE_FROM
    for source in allowed:
        check_transition(source, DocumentStatus.PROCESSING, reprocess=reprocess)

    result = await db.execute(
        update(Document)
        .where(
            Document.id == document_id,
            Document.status.in_([s.value for s in allowed]),
        )
        .values(
            status=DocumentStatus.PROCESSING.value,
            run_id=run_id,
            error_message=None,
            attempt_count=Document.attempt_count + 1,
            processing_started_at=_utcnow(),
            processing_completed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.debug("Claim rejected | doc=%s run=%s reprocess=%s", document_id, run_id, reprocess)
        return None

    await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
    return await get_document(db, document_id)


async def complete_run(
    db: AsyncSession,
    document_id: uuid.UUID,
    run_id: uuid.UUID,
    chunks: Sequence[TextChunk],
) -> bool:
    """
    Replace the chunk set and mark the document completed.
    Returns False (writing nothing) if `run_id` no longer owns the document.
    """
    check_transition(DocumentStatus.PROCESSING, DocumentStatus.COMPLETED)
    result = await db.execute(
        update(Document)
        .where(
            Document.id == document_id,
            Document.status == DocumentStatus.PROCESSING.value,
            Document.run_id == run_id,
        )
        .values(
            status=DocumentStatus.COMPLETED.value,
            error_message=None,
            processing_completed_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
    db.add_all(
        Chunk(
            id=uuid.uuid4(),
            document_id=document_id,
            chunk_index=chunk.index,
            content=chunk.content,
            chunk_metadata=dict(chunk.metadata),
        )
        for chunk in chunks
    )
    await db.flush()
    return True


async def fail_run(
    db: AsyncSession,
    document_id: uuid.UUID,
    run_id: uuid.UUID,
    error_message: str,
) -> bool:
    """Mark the document failed with a diagnostic; guarantees zero chunks."""
    check_transition(DocumentStatus.PROCESSING, DocumentStatus.FAILED)
    result = await db.execute(
        update(Document)
        .where(
            Document.id == document_id,
            Document.status == DocumentStatus.PROCESSING.value,
            Document.run_id == run_id,
        )
        .values(
            status=DocumentStatus.FAILED.value,
            error_message=error_message or "Unknown error",
            processing_completed_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
    return True


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

async def delete_documents(
    db: AsyncSession,
    document_ids: Iterable[uuid.UUID],
    owner_id: uuid.UUID | None = None,
) -> list[Document]:
    """
    Delete documents and their chunks. Returns the deleted rows so the
    caller can release their blobs.
    """
    ids = list(document_ids)
    if not ids:
        return []

    stmt = select(Document).where(Document.id.in_(ids))
    if owner_id is not None:
        stmt = stmt.where(Document.owner_id == owner_id)
    docs = list((await db.execute(stmt)).scalars().all())
    if not docs:
        return []

    doc_ids = [d.id for d in docs]
    # Chunks go first: the FK cascade is not guaranteed on every backend
    await db.execute(delete(Chunk).where(Chunk.document_id.in_(doc_ids)))
    await db.execute(
        delete(Document)
        .where(Document.id.in_(doc_ids))
        .execution_options(synchronize_session=False)
    )
    return docs
