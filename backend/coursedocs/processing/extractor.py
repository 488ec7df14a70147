"""
Text Extraction
═══════════════

One extractor per supported format, selected by canonical MIME type through
an explicit lookup table:

  application/pdf      →  PdfExtractor          PyMuPDF text layer,
                                                OCR fallback for scanned PDFs
  application/vnd…docx →  DocxExtractor         python-docx paragraphs + tables
  application/msword   →  LegacyWordExtractor   unstructured partition_doc
  image/jpeg, png      →  ImageExtractor        OCR backend (coursedocs.processing.ocr)

A MIME type without an entry raises ExtractionError; there is no
"best guess" parser. Every extractor either returns text or raises
ExtractionError with a human-readable cause.

Output text is normalized by normalize_text() before it reaches the chunker.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from coursedocs.core.config import Settings, get_settings
from coursedocs.core.errors import ExtractionError
from coursedocs.processing.ocr import OcrBackend, get_ocr_backend
from coursedocs.schemas.documents import (
    MIME_DOC,
    MIME_DOCX,
    MIME_JPEG,
    MIME_PDF,
    MIME_PNG,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# If average extracted chars per page is below this threshold,
# the PDF is classified as scanned / image-based.
MIN_CHARS_PER_PAGE_THRESHOLD = 50

EXTRACTION_TIMEOUT_SECONDS = 120


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_ZERO_WIDTH_RE  = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
_CONTROL_RE     = re.compile(r"[\x00-\x08\x0b\x0e-\x1f\x7f]")
_HSPACE_RE      = re.compile("[ \t\u00a0\u2007\u202f]+")
_MULTI_BLANK_RE = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    """
    Canonical whitespace form shared by every extractor.

    Paragraph breaks survive as a single blank line; everything else
    collapses to single spaces.
    """
    if not text:
        return ""
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\f", "\n\n")           # PDF page feeds
    text = _ZERO_WIDTH_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    text = _HSPACE_RE.sub(" ", text)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    text = _MULTI_BLANK_RE.sub("\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text       : normalized document text
    strategy   : "pymupdf" | "python-docx" | "unstructured" | OCR backend name
    used_ocr   : True if image-based OCR produced the text
    page_count : pages for PDFs, 1 for images and Word documents
    """
    text:       str
    strategy:   str
    used_ocr:   bool = False
    page_count: int = 1
    word_count: int = 0
    elapsed_ms: float = 0.0
    metadata:   dict[str, Any] = field(default_factory=dict)

    @property
    def total_chars(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Abstract extractor
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for per-format extractors.

    Implementations accept raw bytes (never a file path) and hold no
    per-document state, so one instance serves concurrent runs.
    """

    format_label = "Document"

    def __init__(self, timeout_seconds: int = EXTRACTION_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout_seconds

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging and chunk metadata."""

    @abstractmethod
    async def extract(self, data: bytes) -> ExtractionResult:
        """Return the document text or raise ExtractionError."""

    async def _run_blocking(self, fn: Callable, *args: Any) -> Any:
        """Run a blocking library call in the default executor under the timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, fn, *args),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("%s extraction timed out after %ds", self.strategy_name, self._timeout)
            raise ExtractionError(
                f"{self.format_label} extraction timed out after {self._timeout}s"
            ) from None
        except ExtractionError:
            raise
        except Exception as exc:
            logger.warning("%s extraction failed: %s", self.strategy_name, exc)
            raise ExtractionError(f"{self.format_label} could not be read: {exc}") from exc


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PdfExtractor(BaseTextExtractor):
    """
    PyMuPDF text layer, with an OCR pass for scanned documents.

    When the native layer averages fewer than MIN_CHARS_PER_PAGE_THRESHOLD
    characters per page and an OCR backend is configured, the OCR text is
    used if it recovers more characters than the native layer did.
    """

    format_label = "PDF"

    def __init__(
        self,
        ocr: OcrBackend | None = None,
        ocr_fallback: bool = True,
        timeout_seconds: int = EXTRACTION_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(timeout_seconds)
        self._ocr = ocr
        self._ocr_fallback = ocr_fallback

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    async def extract(self, data: bytes) -> ExtractionResult:
        pages = await self._run_blocking(self._read_pages, data)
        if not pages:
            raise ExtractionError("PDF has no pages")

        native_chars = sum(len(p) for p in pages)
        avg_chars = native_chars / len(pages)
        metadata: dict[str, Any] = {
            "page_count":         len(pages),
            "avg_chars_per_page": round(avg_chars, 1),
        }

        logger.info(
            "PyMuPDF | pages=%d total_chars=%d avg_chars_per_page=%.0f",
            len(pages), native_chars, avg_chars,
        )

        if avg_chars < MIN_CHARS_PER_PAGE_THRESHOLD and self._ocr and self._ocr_fallback:
            logger.info(
                "PDF appears scanned (avg %.0f chars/page < %d). Falling back to OCR backend: %s",
                avg_chars, MIN_CHARS_PER_PAGE_THRESHOLD, self._ocr.strategy_name,
            )
            ocr_result = await self._ocr.recognize(data, MIME_PDF)
            if ocr_result.total_chars > native_chars:
                metadata["ocr_confidence"] = ocr_result.avg_confidence
                return ExtractionResult(
                    text=ocr_result.full_text,
                    strategy=ocr_result.strategy_name,
                    used_ocr=True,
                    page_count=len(pages),
                    metadata=metadata,
                )
            logger.warning("OCR recovered no more text than the native layer; keeping native text")

        return ExtractionResult(
            text="\n\n".join(p for p in pages if p.strip()),
            strategy=self.strategy_name,
            page_count=len(pages),
            metadata=metadata,
        )

    @staticmethod
    def _read_pages(data: bytes) -> list[str]:
        """Blocking extraction — runs in thread executor."""
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.needs_pass:
                raise ExtractionError("PDF is password-protected")
            # "text" mode preserves reading order
            return [(page.get_text("text") or "").strip() for page in doc]


# ---------------------------------------------------------------------------
# Word documents
# ---------------------------------------------------------------------------

class DocxExtractor(BaseTextExtractor):
    """Body paragraphs in order, then table rows as pipe-delimited lines."""

    format_label = "Word document"

    @property
    def strategy_name(self) -> str:
        return "python-docx"

    async def extract(self, data: bytes) -> ExtractionResult:
        text, paragraphs, tables = await self._run_blocking(self._read, data)
        return ExtractionResult(
            text=text,
            strategy=self.strategy_name,
            metadata={"paragraph_count": paragraphs, "table_count": tables},
        )

    @staticmethod
    def _read(data: bytes) -> tuple[str, int, int]:
        import docx

        document = docx.Document(io.BytesIO(data))
        blocks = [p.text for p in document.paragraphs if p.text.strip()]

        for table in document.tables:
            rows = []
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    rows.append(" | ".join(cells))
            if rows:
                blocks.append("\n".join(rows))

        return "\n\n".join(blocks), len(document.paragraphs), len(document.tables)


class LegacyWordExtractor(BaseTextExtractor):
    """
    Binary .doc files via unstructured's partition_doc.
    Requires LibreOffice (soffice) in the worker image for the conversion.
    """

    format_label = "Legacy Word document"

    @property
    def strategy_name(self) -> str:
        return "unstructured"

    async def extract(self, data: bytes) -> ExtractionResult:
        text, element_count = await self._run_blocking(self._read, data)
        return ExtractionResult(
            text=text,
            strategy=self.strategy_name,
            metadata={"element_count": element_count},
        )

    @staticmethod
    def _read(data: bytes) -> tuple[str, int]:
        from unstructured.partition.doc import partition_doc

        elements = partition_doc(file=io.BytesIO(data))
        texts = [str(el).strip() for el in elements if str(el).strip()]
        return "\n\n".join(texts), len(elements)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

class ImageExtractor(BaseTextExtractor):
    """OCR path for JPEG / PNG."""

    format_label = "Image"

    def __init__(self, ocr: OcrBackend, mime_type: str) -> None:
        super().__init__()
        self._ocr = ocr
        self._mime_type = mime_type

    @property
    def strategy_name(self) -> str:
        return self._ocr.strategy_name

    async def extract(self, data: bytes) -> ExtractionResult:
        result = await self._ocr.recognize(data, self._mime_type)
        return ExtractionResult(
            text=result.full_text,
            strategy=result.strategy_name,
            used_ocr=True,
            metadata={"ocr_confidence": result.avg_confidence, **result.metadata},
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TextExtractorOrchestrator:
    """
    Select the extractor for a canonical MIME type and normalize its output.

    Usage:
        orchestrator = TextExtractorOrchestrator.from_settings()
        result = await orchestrator.extract(raw_bytes, "application/pdf")
    """

    def __init__(self, extractors: dict[str, BaseTextExtractor]) -> None:
        self._extractors = dict(extractors)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TextExtractorOrchestrator":
        settings = settings or get_settings()
        timeout = settings.extraction_timeout_seconds
        ocr = get_ocr_backend(settings)
        return cls({
            MIME_PDF:  PdfExtractor(ocr, ocr_fallback=settings.pdf_ocr_fallback, timeout_seconds=timeout),
            MIME_DOCX: DocxExtractor(timeout_seconds=timeout),
            MIME_DOC:  LegacyWordExtractor(timeout_seconds=timeout),
            MIME_JPEG: ImageExtractor(ocr, MIME_JPEG),
            MIME_PNG:  ImageExtractor(ocr, MIME_PNG),
        })

    @property
    def supported_types(self) -> frozenset[str]:
        return frozenset(self._extractors)

    async def extract(self, data: bytes, mime_type: str) -> ExtractionResult:
        extractor = self._extractors.get(mime_type)
        if extractor is None:
            raise ExtractionError(f"No extractor registered for content type '{mime_type}'")

        t0 = time.monotonic()
        result = await extractor.extract(data)

        result.text = normalize_text(result.text)
        result.word_count = len(result.text.split())
        result.elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "Extraction | type=%s strategy=%s used_ocr=%s pages=%d chars=%d words=%d elapsed_ms=%.0f",
            mime_type, result.strategy, result.used_ocr, result.page_count,
            result.total_chars, result.word_count, result.elapsed_ms,
        )
        return result
