"""
Integration Tests — DocumentPipeline
════════════════════════════════════
Real extraction (PyMuPDF / python-docx), real chunker, real database; the
blob store is the in-memory fake from conftest.py.

Coverage targets:
  ✅ PENDING PDF / DOCX → COMPLETED with ordered chunks and source metadata
  ✅ Corrupted PDF           → FAILED "Text extraction error: …", zero chunks
  ✅ Text-less PDF           → FAILED "Chunking error: …"
  ✅ Missing / unreadable blob → FAILED "Storage fetch error: …"
  ✅ Unexpected exception    → FAILED "Unexpected error: …"
  ✅ Claim not held          → skipped, nothing written
  ✅ Run reassigned mid-flight → result discarded, newer owner untouched
  ✅ Reprocessing identical bytes → identical chunk text, fresh chunk ids
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import update

from coursedocs.db import queries
from coursedocs.db.session import session_scope
from coursedocs.models.documents import Document
from coursedocs.processing.extractor import TextExtractorOrchestrator
from coursedocs.schemas.documents import MIME_DOC, MIME_DOCX, MIME_PDF, DocumentStatus
from coursedocs.services.pipeline import (
    OUTCOME_COMPLETED,
    OUTCOME_DISCARDED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
)


async def _stored_document(blob_store, make_document, data: bytes, mime_type: str = MIME_PDF, **columns):
    ref = await blob_store.put(uuid.uuid4(), uuid.uuid4(), mime_type, data)
    return await make_document(storage_ref=ref, mime_type=mime_type, **columns)


async def _state(session_factory, document_id):
    async with session_scope(session_factory) as db:
        doc = await queries.get_document(db, document_id)
        chunks = await queries.load_chunks(db, document_id)
    return doc, chunks


# ─────────────────────────────────────────────────────────────────────────────
# Happy paths
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.ingestion
class TestSuccessfulRuns:

    async def test_pdf_completes(self, session_factory, blob_store, make_document, make_pipeline, three_page_pdf):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf, original_name="bio-week1.pdf")

        outcome = await make_pipeline().run(doc_id)

        assert outcome.status == OUTCOME_COMPLETED
        assert outcome.error_message is None
        doc, chunks = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.COMPLETED.value
        assert doc.error_message is None
        assert doc.attempt_count == 1
        assert len(chunks) == outcome.chunk_count > 1
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert all(len(c.content) <= 200 for c in chunks)

        meta = chunks[0].chunk_metadata
        assert meta["document_id"] == str(doc_id)
        assert meta["source"] == "bio-week1.pdf"
        assert meta["strategy"] == "pymupdf"
        assert meta["page_count"] == 3
        assert meta["used_ocr"] is False
        assert outcome.statistics["total_chunks"] == len(chunks)

    async def test_docx_completes(self, session_factory, blob_store, make_document, make_pipeline, make_docx, sample_text):
        data = make_docx(sample_text.split("\n\n"), table=[["Term", "Meaning"], ["ATP", "energy carrier"]])
        doc_id = await _stored_document(blob_store, make_document, data, MIME_DOCX, original_name="notes.docx")

        outcome = await make_pipeline().run(doc_id)

        assert outcome.status == OUTCOME_COMPLETED
        _, chunks = await _state(session_factory, doc_id)
        text = "\n".join(c.content for c in chunks)
        assert "Photosynthesis" in text
        assert "ATP | energy carrier" in text
        assert chunks[0].chunk_metadata["strategy"] == "python-docx"

    async def test_first_chunk_is_prefix_of_text(self, session_factory, blob_store, make_document, make_pipeline, orchestrator, three_page_pdf):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf)

        await make_pipeline().run(doc_id)

        extracted = await orchestrator.extract(three_page_pdf, MIME_PDF)
        _, chunks = await _state(session_factory, doc_id)
        assert extracted.text.startswith(chunks[0].content)


# ─────────────────────────────────────────────────────────────────────────────
# Failures end FAILED with a diagnostic
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.ingestion
class TestFailedRuns:

    async def test_corrupted_pdf(self, session_factory, blob_store, make_document, make_pipeline, corrupted_pdf_bytes):
        doc_id = await _stored_document(blob_store, make_document, corrupted_pdf_bytes)

        outcome = await make_pipeline().run(doc_id)

        assert outcome.status == OUTCOME_FAILED
        doc, chunks = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED.value
        assert doc.error_message
        assert doc.error_message.startswith("Text extraction error: ")
        assert chunks == []

    async def test_pdf_without_text(self, session_factory, blob_store, make_document, make_pipeline, make_pdf):
        doc_id = await _stored_document(blob_store, make_document, make_pdf(["", ""]))

        await make_pipeline().run(doc_id)

        doc, chunks = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED.value
        assert doc.error_message == "Chunking error: Extracted text is empty"
        assert chunks == []

    async def test_missing_blob(self, session_factory, make_document, make_pipeline):
        doc_id = await make_document(storage_ref="mem://gone")

        await make_pipeline().run(doc_id)

        doc, _ = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED.value
        assert doc.error_message == "Storage fetch error: Object not found: mem://gone"

    async def test_unreadable_blob(self, session_factory, blob_store, make_document, make_pipeline, three_page_pdf, monkeypatch):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf)

        async def broken_get(ref):
            raise ConnectionError("connection reset by peer")

        monkeypatch.setattr(blob_store, "get", broken_get)
        await make_pipeline().run(doc_id)

        doc, _ = await _state(session_factory, doc_id)
        assert doc.error_message == "Storage fetch error: Raw bytes unavailable: connection reset by peer"

    async def test_unexpected_exception(self, session_factory, blob_store, make_document, make_pipeline, stub_extractor):
        doc_id = await _stored_document(blob_store, make_document, b"legacy word bytes", MIME_DOC)
        stub_extractor.error = RuntimeError("segfault in converter")

        outcome = await make_pipeline().run(doc_id)

        assert outcome.status == OUTCOME_FAILED
        doc, chunks = await _state(session_factory, doc_id)
        assert doc.error_message == "Unexpected error: segfault in converter"
        assert chunks == []

    async def test_unregistered_type_fails_loudly(self, session_factory, blob_store, make_document, make_pipeline, three_page_pdf):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf)
        pdf_less = make_pipeline(extractor=TextExtractorOrchestrator({}))

        await pdf_less.run(doc_id)

        doc, _ = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED.value
        assert "No extractor registered" in doc.error_message


# ─────────────────────────────────────────────────────────────────────────────
# Ownership
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestOwnership:

    async def test_first_run_skips_non_pending(self, session_factory, blob_store, make_document, make_pipeline, three_page_pdf):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf, status=DocumentStatus.COMPLETED)

        outcome = await make_pipeline().run(doc_id)

        assert outcome.status == OUTCOME_SKIPPED
        doc, _ = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.COMPLETED.value
        assert doc.attempt_count == 0

    async def test_missing_document_skipped(self, make_pipeline):
        outcome = await make_pipeline().run(uuid.uuid4())
        assert outcome.status == OUTCOME_SKIPPED

    async def test_reprocess_run_requires_matching_claim(self, session_factory, blob_store, make_document, make_pipeline, three_page_pdf):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf)
        async with session_scope(session_factory) as db:
            await queries.claim_for_processing(db, doc_id, uuid.uuid4(), reprocess=True)

        outcome = await make_pipeline().run(doc_id, run_id=uuid.uuid4())

        assert outcome.status == OUTCOME_SKIPPED
        doc, chunks = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.PROCESSING.value
        assert chunks == []

    async def test_reprocess_run_with_claim(self, session_factory, blob_store, make_document, make_pipeline, three_page_pdf):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf, status=DocumentStatus.FAILED)
        run_id = uuid.uuid4()
        async with session_scope(session_factory) as db:
            await queries.claim_for_processing(db, doc_id, run_id, reprocess=True)

        outcome = await make_pipeline().run(doc_id, run_id=run_id)

        assert outcome.status == OUTCOME_COMPLETED
        assert outcome.run_id == run_id

    async def test_reassigned_run_discards_result(self, session_factory, blob_store, make_document, make_pipeline, stub_extractor, sample_text):
        doc_id = await _stored_document(blob_store, make_document, b"doc bytes", MIME_DOC)
        newer_run = uuid.uuid4()

        class _ReassigningExtractor(type(stub_extractor)):
            async def extract(self, data):
                # Another run takes ownership while this one is extracting
                async with session_scope(session_factory) as db:
                    await db.execute(
                        update(Document).where(Document.id == doc_id).values(run_id=newer_run)
                    )
                return await super().extract(data)

        pipeline = make_pipeline(extractor=TextExtractorOrchestrator({MIME_DOC: _ReassigningExtractor(sample_text)}))
        outcome = await pipeline.run(doc_id)

        assert outcome.status == OUTCOME_DISCARDED
        doc, chunks = await _state(session_factory, doc_id)
        assert doc.status == DocumentStatus.PROCESSING.value
        assert doc.run_id == newer_run
        assert chunks == []

    async def test_failure_after_deletion_is_discarded(self, session_factory, blob_store, make_document, make_pipeline, stub_extractor):
        doc_id = await _stored_document(blob_store, make_document, b"doc bytes", MIME_DOC)

        class _DeletingExtractor(type(stub_extractor)):
            async def extract(self, data):
                async with session_scope(session_factory) as db:
                    await queries.delete_documents(db, [doc_id])
                raise RuntimeError("too late anyway")

        pipeline = make_pipeline(extractor=TextExtractorOrchestrator({MIME_DOC: _DeletingExtractor()}))
        outcome = await pipeline.run(doc_id)

        assert outcome.status == OUTCOME_DISCARDED
        doc, chunks = await _state(session_factory, doc_id)
        assert doc is None
        assert chunks == []


# ─────────────────────────────────────────────────────────────────────────────
# Reproducibility
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReprocessing:

    async def test_same_bytes_same_chunks_new_ids(self, session_factory, blob_store, make_document, make_pipeline, three_page_pdf):
        doc_id = await _stored_document(blob_store, make_document, three_page_pdf)
        pipeline = make_pipeline()
        await pipeline.run(doc_id)
        _, first = await _state(session_factory, doc_id)

        run_id = uuid.uuid4()
        async with session_scope(session_factory) as db:
            await queries.claim_for_processing(db, doc_id, run_id, reprocess=True)
        await pipeline.run(doc_id, run_id)
        doc, second = await _state(session_factory, doc_id)

        assert doc.attempt_count == 2
        assert [c.content for c in first] == [c.content for c in second]
        assert not {c.id for c in first} & {c.id for c in second}
