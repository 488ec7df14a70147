"""
Document Ingestion Service

Entry points exposed to collaborators (HTTP layer, retrieval component):

  submit(...)               validate → store blob → insert PENDING → publish
  reprocess(document_id)    CAS → PROCESSING with a fresh run_id → publish
  get_status / get_chunks   polling and consumption
  delete / delete_many      record + chunks in one transaction, then blob
  list_documents            paginated listing with chunk counts
  update_course             re-associate a document with a course
  get_document_context      concatenated text of completed documents
  search_chunks             plain-text search over completed chunks

Invariants enforced here:
  - Nothing is persisted when validation or the blob write fails.
  - submit() returns as soon as the PENDING record is committed; a failed
    publish is logged, not raised (the stale-pending scanner re-publishes).
  - reprocess() never reads status and writes it in separate steps; the
    claim is a single conditional UPDATE.

Authorization is the caller's concern: owner_id is trusted as given.
"""

from __future__ import annotations

import logging
import math
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursedocs.core.config import Settings, get_settings
from coursedocs.core.errors import (
    ConcurrencyConflict,
    DispatchError,
    DocumentNotFound,
    StorageWriteError,
)
from coursedocs.db import queries
from coursedocs.db.session import get_session_factory, session_scope
from coursedocs.models.documents import Document
from coursedocs.processing.chunking import ChunkerConfig, WindowChunker
from coursedocs.processing.extractor import TextExtractorOrchestrator
from coursedocs.schemas.documents import (
    ChunkSearchHit,
    ChunkView,
    DocumentContext,
    DocumentPage,
    DocumentStatus,
    DocumentStatusView,
    DocumentSummary,
    Pagination,
    ReprocessAccepted,
)
from coursedocs.services.dispatch import TaskPublisher, build_publisher
from coursedocs.services.pipeline import DocumentPipeline
from coursedocs.services.validation import sanitize_filename, validate_upload
from coursedocs.storage.blob import BlobStore, S3BlobStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
CONTEXT_SEPARATOR = "\n\n---\n\n"


class IngestionService:
    """
    Stateless service object; safe to share across requests.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: BlobStore,
        publisher: TaskPublisher,
    ) -> None:
        self._session_factory = session_factory
        self._blobs     = blob_store
        self._publisher = publisher

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        owner_id: uuid.UUID,
        course_id: str | None,
        original_name: str,
        mime_type: str,
        raw_bytes: bytes,
    ) -> uuid.UUID:
        """
        Accept an upload and schedule its processing.
        Raises ValidationError / StorageWriteError with nothing persisted.
        """
        raw_bytes = raw_bytes or b""
        canonical = validate_upload(mime_type, len(raw_bytes), original_name)

        document_id = uuid.uuid4()
        safe_filename = sanitize_filename(original_name)

        logger.info(
            "Ingest start | owner=%s course=%s doc=%s file=%s type=%s size=%d",
            owner_id, course_id, document_id, safe_filename, canonical, len(raw_bytes),
        )

        # ---- Store raw bytes ---------------------------------------------
        try:
            storage_ref = await self._blobs.put(
                owner_id, document_id, canonical, raw_bytes,
                metadata={"filename": safe_filename},
            )
        except StorageWriteError:
            raise
        except Exception as exc:
            logger.exception("Blob write failed | doc=%s", document_id)
            raise StorageWriteError(f"Could not store upload: {exc}") from exc

        # ---- Persist PENDING record --------------------------------------
        try:
            async with session_scope(self._session_factory) as db:
                db.add(Document(
                    id=document_id,
                    owner_id=owner_id,
                    course_id=course_id,
                    original_name=original_name or safe_filename,
                    filename=safe_filename,
                    mime_type=canonical,
                    size_bytes=len(raw_bytes),
                    storage_ref=storage_ref,
                    status=DocumentStatus.PENDING.value,
                ))
        except Exception:
            logger.exception("Document insert failed | doc=%s", document_id)
            await self._discard_blob(storage_ref, document_id)
            raise

        # ---- Publish -----------------------------------------------------
        try:
            await self._publisher.publish_processing_task(document_id)
        except Exception as exc:
            # Non-fatal: the record is committed and the stale-pending
            # scanner re-publishes it.
            logger.error("Failed to publish processing task | doc=%s error=%s", document_id, exc)

        return document_id

    # ------------------------------------------------------------------
    # Reprocessing
    # ------------------------------------------------------------------

    async def reprocess(self, document_id: uuid.UUID) -> ReprocessAccepted:
        """
        Restart the pipeline for a document that is not currently processing.
        Raises DocumentNotFound or ConcurrencyConflict with no state change.
        """
        run_id = uuid.uuid4()

        async with session_scope(self._session_factory) as db:
            doc = await queries.claim_for_processing(db, document_id, run_id, reprocess=True)
            if doc is None:
                current = await queries.get_document(db, document_id)
                if current is None:
                    raise DocumentNotFound(document_id)
                logger.info("Reprocess rejected | doc=%s status=%s", document_id, current.status)
                raise ConcurrencyConflict(document_id)

        logger.info("Reprocess accepted | doc=%s run=%s attempt=%d", document_id, run_id, doc.attempt_count)

        try:
            await self._publisher.publish_processing_task(document_id, run_id)
        except Exception as exc:
            # The claim is ours; release it as FAILED so the document is not
            # left PROCESSING with no run behind it.
            error = DispatchError(f"Could not schedule processing: {exc}")
            logger.error("Reprocess publish failed | doc=%s run=%s error=%s", document_id, run_id, exc)
            try:
                async with session_scope(self._session_factory) as db:
                    await queries.fail_run(db, document_id, run_id, error.diagnostic())
            except Exception:
                logger.exception("Could not release claim | doc=%s run=%s", document_id, run_id)
            raise error from exc

        return ReprocessAccepted(document_id=document_id, run_id=run_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_status(self, document_id: uuid.UUID) -> DocumentStatusView:
        async with session_scope(self._session_factory) as db:
            doc = await self._require(db, document_id)
            counts = await queries.count_chunks(db, [document_id])

        return DocumentStatusView(
            document_id=doc.id,
            status=DocumentStatus(doc.status),
            error_message=doc.error_message,
            chunk_count=counts.get(document_id, 0),
            attempt_count=doc.attempt_count,
            updated_at=doc.updated_at,
        )

    async def get_chunks(self, document_id: uuid.UUID) -> list[ChunkView]:
        async with session_scope(self._session_factory) as db:
            await self._require(db, document_id)
            chunks = await queries.load_chunks(db, document_id)

        return [
            ChunkView(
                id=c.id,
                document_id=c.document_id,
                chunk_index=c.chunk_index,
                content=c.content,
                metadata=c.chunk_metadata or {},
                created_at=c.created_at,
            )
            for c in chunks
        ]

    async def list_documents(
        self,
        owner_id: uuid.UUID,
        course_id: str | None = None,
        status: DocumentStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> DocumentPage:
        """Newest first; limit is capped at MAX_PAGE_SIZE."""
        page  = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        filters = [Document.owner_id == owner_id]
        if course_id is not None:
            filters.append(Document.course_id == course_id)
        if status is not None:
            filters.append(Document.status == DocumentStatus(status).value)

        async with session_scope(self._session_factory) as db:
            total = (await db.execute(
                select(func.count(Document.id)).where(*filters)
            )).scalar_one()
            docs = list((await db.execute(
                select(Document)
                .where(*filters)
                .order_by(Document.created_at.desc(), Document.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )).scalars().all())
            counts = await queries.count_chunks(db, [d.id for d in docs])

        return DocumentPage(
            documents=[
                DocumentSummary(
                    document_id=d.id,
                    owner_id=d.owner_id,
                    course_id=d.course_id,
                    original_name=d.original_name,
                    mime_type=d.mime_type,
                    size_bytes=d.size_bytes,
                    status=DocumentStatus(d.status),
                    error_message=d.error_message,
                    chunk_count=counts.get(d.id, 0),
                    created_at=d.created_at,
                )
                for d in docs
            ],
            pagination=Pagination(
                total=total,
                page=page,
                limit=limit,
                total_pages=math.ceil(total / limit) if total else 0,
            ),
        )

    async def get_document_context(self, document_ids: list[uuid.UUID]) -> DocumentContext:
        """
        Text of the given documents for prompt building. Documents that are
        missing or not COMPLETED are left out.
        """
        sections: list[str] = []
        included: list[uuid.UUID] = []
        total_chunks = 0

        async with session_scope(self._session_factory) as db:
            for document_id in dict.fromkeys(document_ids):
                doc = await queries.get_document(db, document_id)
                if doc is None or doc.status != DocumentStatus.COMPLETED.value:
                    continue
                chunks = await queries.load_chunks(db, document_id)
                body = "\n\n".join(c.content for c in chunks)
                sections.append(f"=== {doc.original_name} ===\n\n{body}")
                included.append(document_id)
                total_chunks += len(chunks)

        return DocumentContext(
            document_ids=included,
            full_text=CONTEXT_SEPARATOR.join(sections),
            total_chunks=total_chunks,
        )

    async def search_chunks(
        self,
        query: str,
        owner_id: uuid.UUID,
        limit: int = 10,
    ) -> list[ChunkSearchHit]:
        if not query or not query.strip():
            return []
        async with session_scope(self._session_factory) as db:
            rows = await queries.search_chunks(
                db, query.strip(), owner_id, min(max(limit, 1), MAX_PAGE_SIZE)
            )
        return [
            ChunkSearchHit(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                original_name=name,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
            )
            for chunk, name in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def update_course(self, document_id: uuid.UUID, course_id: str | None) -> None:
        """Move a document to another course, or detach it (course_id=None)."""
        async with session_scope(self._session_factory) as db:
            result = await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(course_id=course_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise DocumentNotFound(document_id)
        logger.info("Course updated | doc=%s course=%s", document_id, course_id)

    async def delete(self, document_id: uuid.UUID) -> None:
        """Delete record and chunks, then the blob (best effort)."""
        async with session_scope(self._session_factory) as db:
            deleted = await queries.delete_documents(db, [document_id])
        if not deleted:
            raise DocumentNotFound(document_id)

        logger.info("Document deleted | doc=%s status=%s", document_id, deleted[0].status)
        await self._discard_blob(deleted[0].storage_ref, document_id)

    async def delete_many(
        self,
        document_ids: list[uuid.UUID],
        owner_id: uuid.UUID | None = None,
    ) -> int:
        """
        Bulk delete. Ids that do not exist (or belong to another owner when
        owner_id is given) are ignored. Returns the number deleted.
        """
        async with session_scope(self._session_factory) as db:
            deleted = await queries.delete_documents(db, document_ids, owner_id=owner_id)

        for doc in deleted:
            await self._discard_blob(doc.storage_ref, doc.id)
        logger.info("Bulk delete | requested=%d deleted=%d", len(document_ids), len(deleted))
        return len(deleted)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _require(db: AsyncSession, document_id: uuid.UUID) -> Document:
        doc = await queries.get_document(db, document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        return doc

    async def _discard_blob(self, storage_ref: str, document_id: uuid.UUID) -> None:
        try:
            await self._blobs.delete(storage_ref)
        except Exception as exc:
            logger.warning("Blob delete failed | doc=%s ref=%s error=%s", document_id, storage_ref, exc)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_pipeline(
    blob_store: BlobStore | None = None,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> DocumentPipeline:
    settings = settings or get_settings()
    return DocumentPipeline(
        session_factory=session_factory or get_session_factory(),
        blob_store=blob_store or S3BlobStore.from_settings(settings),
        extractor=TextExtractorOrchestrator.from_settings(settings),
        chunker=WindowChunker(ChunkerConfig(settings.chunk_size, settings.chunk_overlap)),
    )


def build_ingestion_service(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    blob_store: BlobStore | None = None,
) -> IngestionService:
    """Assemble the service from settings (dispatch backend, blob store, DB)."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    blob_store = blob_store or S3BlobStore.from_settings(settings)

    runner = None
    if settings.dispatch_backend == "local":
        runner = build_pipeline(blob_store, settings, session_factory).run

    return IngestionService(
        session_factory=session_factory,
        blob_store=blob_store,
        publisher=build_publisher(runner, settings),
    )
