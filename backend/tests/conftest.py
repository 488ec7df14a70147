"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  settings, db_engine, session_factory   per-test file-backed SQLite database
  blob_store                             in-memory BlobStore fake
  stub_extractor, orchestrator           controllable extraction
  make_pipeline, make_service            wired DocumentPipeline / IngestionService
  make_pdf, make_docx                    real documents built with PyMuPDF / python-docx

Environment strategy:
  - No PostgreSQL, S3, broker or tesseract binary is needed.
  - Each test gets its own sqlite+aiosqlite database file under tmp_path;
    file-backed (not :memory:) so concurrent sessions see each other's
    commits and contend for the write lock like real connections do.
  - Celery uses the in-memory broker; tasks are invoked directly.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # state machine, pipeline and service tests
"""

from __future__ import annotations

import io
import os
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any coursedocs imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./coursedocs-test.db")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("DISPATCH_BACKEND",      "local")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("OCR_BACKEND",           "tesseract")
os.environ.setdefault("APP_ENV",               "development")

from coursedocs.core.config import Settings  # noqa: E402
from coursedocs.core.errors import StorageFetchError, StorageWriteError  # noqa: E402
from coursedocs.db.session import (  # noqa: E402
    build_session_factory,
    create_engine_from_settings,
    init_models,
)
from coursedocs.processing.chunking import ChunkerConfig, WindowChunker  # noqa: E402
from coursedocs.processing.extractor import (  # noqa: E402
    BaseTextExtractor,
    DocxExtractor,
    ExtractionResult,
    PdfExtractor,
    TextExtractorOrchestrator,
)
from coursedocs.schemas.documents import (  # noqa: E402
    EXTENSION_FOR_TYPE,
    MIME_DOC,
    MIME_DOCX,
    MIME_JPEG,
    MIME_PDF,
    MIME_PNG,
)
from coursedocs.storage.blob import BlobStore  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Identity fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def owner_id() -> uuid.UUID:
    """A stable UUID used as the uploading user across all tests."""
    return uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


@pytest.fixture
def course_id() -> str:
    return "course-cs101"


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        dispatch_backend="local",
        chunk_size=200,
        chunk_overlap=40,
        pdf_ocr_fallback=False,
        extraction_timeout_seconds=30,
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    engine = create_engine_from_settings(settings)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def make_document(session_factory, owner_id):
    """Insert a Document row directly, bypassing submit()."""
    from coursedocs.db.session import session_scope
    from coursedocs.models.documents import Document
    from coursedocs.schemas.documents import DocumentStatus

    async def _insert(
        status: DocumentStatus = DocumentStatus.PENDING,
        storage_ref: str = "mem://missing",
        mime_type: str = MIME_PDF,
        original_name: str = "notes.pdf",
        **columns,
    ) -> uuid.UUID:
        document_id = columns.pop("id", None) or uuid.uuid4()
        async with session_scope(session_factory) as db:
            db.add(Document(
                id=document_id,
                owner_id=columns.pop("owner_id", owner_id),
                course_id=columns.pop("course_id", None),
                original_name=original_name,
                filename=original_name,
                mime_type=mime_type,
                size_bytes=columns.pop("size_bytes", 1024),
                storage_ref=storage_ref,
                status=DocumentStatus(status).value,
                **columns,
            ))
        return document_id

    return _insert


# ─────────────────────────────────────────────────────────────────────────────
# In-memory blob store
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryBlobStore(BlobStore):
    """Dict-backed BlobStore. Flip fail_writes / fail_deletes to simulate outages."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_writes  = False
        self.fail_deletes = False

    async def put(self, owner_id, document_id, mime_type, data, metadata=None) -> str:
        if self.fail_writes:
            raise StorageWriteError("bucket unavailable")
        ref = f"mem://{owner_id}/{document_id}{EXTENSION_FOR_TYPE.get(mime_type, '')}"
        self.objects[ref] = bytes(data)
        return ref

    async def get(self, storage_ref: str) -> bytes:
        try:
            return self.objects[storage_ref]
        except KeyError:
            raise StorageFetchError(f"Object not found: {storage_ref}") from None

    async def delete(self, storage_ref: str) -> None:
        if self.fail_deletes:
            raise ConnectionError("bucket unavailable")
        self.objects.pop(storage_ref, None)


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


# ─────────────────────────────────────────────────────────────────────────────
# Extraction
# ─────────────────────────────────────────────────────────────────────────────

class StubExtractor(BaseTextExtractor):
    """
    Returns `text` (or raises `error`) regardless of input bytes.
    Attributes may be changed between runs to script reprocess scenarios.
    """

    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        super().__init__()
        self.text  = text
        self.error = error
        self.calls = 0

    @property
    def strategy_name(self) -> str:
        return "stub"

    async def extract(self, data: bytes) -> ExtractionResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ExtractionResult(text=self.text, strategy=self.strategy_name)


SAMPLE_TEXT = (
    "Photosynthesis converts light energy into chemical energy. "
    "It takes place in the chloroplasts of plant cells.\n\n"
    "The light-dependent reactions occur in the thylakoid membranes. "
    "They produce ATP and NADPH while releasing oxygen.\n\n"
    "The Calvin cycle uses ATP and NADPH to fix carbon dioxide into sugars. "
    "It runs in the stroma and does not need light directly.\n\n"
    "Factors such as light intensity, temperature and carbon dioxide "
    "concentration limit the overall rate of photosynthesis."
)


@pytest.fixture
def sample_text() -> str:
    return SAMPLE_TEXT


@pytest.fixture
def stub_extractor(sample_text) -> StubExtractor:
    return StubExtractor(text=sample_text)


@pytest.fixture
def orchestrator(stub_extractor) -> TextExtractorOrchestrator:
    """
    Real PDF and DOCX extractors (no OCR); the stub stands in for the
    OCR-backed image path and legacy .doc conversion.
    """
    return TextExtractorOrchestrator({
        MIME_PDF:  PdfExtractor(ocr=None),
        MIME_DOCX: DocxExtractor(),
        MIME_DOC:  stub_extractor,
        MIME_JPEG: stub_extractor,
        MIME_PNG:  stub_extractor,
    })


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline + service factories
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_pipeline(session_factory, blob_store, orchestrator, settings):
    def _build(extractor: TextExtractorOrchestrator | None = None, chunker: WindowChunker | None = None):
        from coursedocs.services.pipeline import DocumentPipeline
        return DocumentPipeline(
            session_factory=session_factory,
            blob_store=blob_store,
            extractor=extractor or orchestrator,
            chunker=chunker or WindowChunker(ChunkerConfig(settings.chunk_size, settings.chunk_overlap)),
        )
    return _build


@pytest.fixture
def mock_publisher():
    """Mocked TaskPublisher: records calls without running anything."""
    from coursedocs.services.dispatch import TaskPublisher
    publisher = MagicMock(spec=TaskPublisher)
    publisher.publish_processing_task = AsyncMock(return_value=None)
    return publisher


@pytest.fixture
def local_publisher(make_pipeline):
    """LocalTaskPublisher running the real pipeline in-process."""
    from coursedocs.services.dispatch import LocalTaskPublisher
    return LocalTaskPublisher(make_pipeline().run)


@pytest.fixture
def make_service(session_factory, blob_store, local_publisher):
    """Factory: IngestionService with the local publisher unless one is given."""
    def _build(publisher=None):
        from coursedocs.services.ingestion import IngestionService
        return IngestionService(
            session_factory=session_factory,
            blob_store=blob_store,
            publisher=publisher or local_publisher,
        )
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Sample documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_pdf():
    """Build a real PDF with one page per string (empty string = blank page)."""
    import fitz

    def _build(pages: list[str], **save_options) -> bytes:
        doc = fitz.open()
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_textbox(fitz.Rect(72, 72, 540, 770), text, fontsize=10, fontname="helv")
        data = doc.tobytes(**save_options)
        doc.close()
        return data

    return _build


@pytest.fixture
def make_docx():
    """Build a real .docx with the given paragraphs and optional table rows."""
    import docx

    def _build(paragraphs: list[str], table: list[list[str]] | None = None) -> bytes:
        document = docx.Document()
        for text in paragraphs:
            document.add_paragraph(text)
        if table:
            grid = document.add_table(rows=len(table), cols=len(table[0]))
            for r, row in enumerate(table):
                for c, value in enumerate(row):
                    grid.cell(r, c).text = value
        buf = io.BytesIO()
        document.save(buf)
        return buf.getvalue()

    return _build


@pytest.fixture
def three_page_pdf(make_pdf, sample_text) -> bytes:
    return make_pdf([
        f"Lecture 1. {sample_text}",
        f"Lecture 2. {sample_text}",
        f"Lecture 3. {sample_text}",
    ])


@pytest.fixture
def corrupted_pdf_bytes() -> bytes:
    return b"\x00\x13PDF garbage that is not a document body\xff\xfe" * 8


@pytest.fixture
def png_bytes() -> bytes:
    from PIL import Image, ImageDraw

    image = Image.new("RGB", (200, 60), "white")
    ImageDraw.Draw(image).text((10, 20), "Hello", fill="black")
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()
