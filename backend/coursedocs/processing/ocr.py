"""
OCR Strategy Pattern  —  Text from Images and Scanned PDFs
══════════════════════════════════════════════════════════

Design: Strategy + Factory
──────────────────────────
Every backend takes raw bytes (an image or a PDF) and returns OcrResult:

  TesseractOcr  (default)
    - pytesseract over Pillow images, scanned PDF pages rendered by PyMuPDF
    - Runs entirely in-process; needs the tesseract binary in the image

  UnstructuredOcr
    - unstructured's partition_image / partition_pdf with strategy="ocr_only"
    - Heavier (layout models), better on mixed content

  TextractOcr
    - AWS Textract DetectDocumentText (images and single-page PDFs)
    - Managed, pay-per-page, adds an AWS dependency

Selection: get_ocr_backend(settings) reads settings.ocr_backend.

Unlike plain text-layer extraction, OCR failures are not recoverable by a
later strategy, so every backend raises ExtractionError instead of
returning an empty result.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator

from coursedocs.core.config import Settings, get_settings
from coursedocs.core.errors import ExtractionError
from coursedocs.schemas.documents import MIME_PDF

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# OCR timeout (seconds)
OCR_TIMEOUT_SECONDS = 120

# Render resolution for scanned PDF pages handed to tesseract
PDF_RENDER_DPI = 300


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text recognized on a single page (or the single frame of an image).

    page_number : 1-based page index
    confidence  : 0.0–1.0; -1.0 = backend does not report one
    """
    page_number: int
    text:        str
    confidence:  float = -1.0


@dataclass
class OcrResult:
    pages:         list[PageText]
    strategy_name: str
    elapsed_ms:    float = 0.0
    metadata:      dict = field(default_factory=dict)

    @property
    def full_text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)

    @property
    def avg_confidence(self) -> float:
        values = [p.confidence for p in self.pages if p.confidence >= 0]
        return round(sum(values) / len(values), 3) if values else -1.0


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

def preprocess_image(image):
    """Greyscale plus autocontrast and sharpening, for phone photos of slides."""
    from PIL import ImageFilter, ImageOps

    image = ImageOps.exif_transpose(image)
    image = image.convert("L")
    image = ImageOps.autocontrast(image)
    return image.filter(ImageFilter.SHARPEN)


def _open_image(data: bytes):
    from PIL import Image, UnidentifiedImageError

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ExtractionError(f"Image could not be decoded: {exc}") from exc
    return image


def _render_pdf_pages(data: bytes, dpi: int = PDF_RENDER_DPI) -> Iterator:
    """Yield one Pillow image per PDF page."""
    import fitz
    from PIL import Image

    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as exc:   # FileDataError subclasses RuntimeError
        raise ExtractionError(f"PDF could not be opened for OCR: {exc}") from exc

    with doc:
        for page in doc:
            pix = page.get_pixmap(dpi=dpi)
            yield Image.open(io.BytesIO(pix.tobytes("png")))


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class OcrBackend(ABC):
    """
    Base for OCR strategies.

    All implementations:
      - Accept raw bytes plus the canonical mime type (never a file path)
      - Run their blocking work in a thread executor under a timeout
      - Raise ExtractionError on any failure
    """

    def __init__(self, timeout_seconds: int = OCR_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout_seconds

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging and chunk metadata."""

    @abstractmethod
    def _recognize_sync(self, data: bytes, mime_type: str) -> OcrResult:
        """Blocking recognition — runs in thread executor."""

    async def recognize(self, data: bytes, mime_type: str) -> OcrResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, self._recognize_sync, data, mime_type),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("%s OCR timed out after %ds", self.strategy_name, self._timeout)
            raise ExtractionError(f"OCR timed out after {self._timeout}s") from None
        except ExtractionError:
            raise
        except Exception as exc:
            logger.error("%s OCR failed: %s", self.strategy_name, exc, exc_info=True)
            raise ExtractionError(f"OCR failed: {exc}") from exc

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "OCR | backend=%s pages=%d total_chars=%d confidence=%.2f elapsed_ms=%.0f",
            self.strategy_name, len(result.pages), result.total_chars,
            result.avg_confidence, result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Strategy 1: Tesseract
# ---------------------------------------------------------------------------

class TesseractOcr(OcrBackend):
    """
    pytesseract over pre-processed Pillow images.

    Scanned PDFs are rasterized page by page with PyMuPDF first. Per-page
    confidence is the mean of the word confidences tesseract reports.
    """

    def __init__(self, language: str = "eng", timeout_seconds: int = OCR_TIMEOUT_SECONDS) -> None:
        super().__init__(timeout_seconds)
        self._language = language

    @property
    def strategy_name(self) -> str:
        return "tesseract"

    def _recognize_sync(self, data: bytes, mime_type: str) -> OcrResult:
        import pytesseract

        if mime_type == MIME_PDF:
            images = _render_pdf_pages(data)
        else:
            images = iter([_open_image(data)])

        pages: list[PageText] = []
        for page_num, image in enumerate(images, start=1):
            prepared = preprocess_image(image)
            try:
                report = pytesseract.image_to_data(
                    prepared,
                    lang=self._language,
                    output_type=pytesseract.Output.DICT,
                )
            except pytesseract.TesseractNotFoundError as exc:
                raise ExtractionError("Tesseract OCR engine is not installed") from exc
            except pytesseract.TesseractError as exc:
                raise ExtractionError(f"Tesseract failed on page {page_num}: {exc.message}") from exc

            pages.append(PageText(
                page_number=page_num,
                text=_join_tesseract_lines(report),
                confidence=_mean_confidence(report),
            ))

        return OcrResult(
            pages=pages,
            strategy_name=self.strategy_name,
            metadata={"language": self._language},
        )


def _join_tesseract_lines(report: dict) -> str:
    """Rebuild text from image_to_data output, one line per (block, par, line)."""
    lines: dict[tuple[int, int, int], list[str]] = {}
    blocks_seen: list[tuple[int, int]] = []
    for i, word in enumerate(report.get("text", [])):
        if not word or not word.strip():
            continue
        key = (report["block_num"][i], report["par_num"][i], report["line_num"][i])
        lines.setdefault(key, []).append(word.strip())
        if key[:2] not in blocks_seen:
            blocks_seen.append(key[:2])

    paragraphs = []
    for block_par in blocks_seen:
        par_lines = [" ".join(words) for key, words in lines.items() if key[:2] == block_par]
        paragraphs.append("\n".join(par_lines))
    return "\n\n".join(paragraphs)


def _mean_confidence(report: dict) -> float:
    values = []
    for conf in report.get("conf", []):
        try:
            value = float(conf)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            values.append(value / 100.0)
    return round(sum(values) / len(values), 3) if values else -1.0


# ---------------------------------------------------------------------------
# Strategy 2: Unstructured
# ---------------------------------------------------------------------------

class UnstructuredOcr(OcrBackend):
    """
    OCR through unstructured's partitioners.

    Runs locally (pip install "unstructured[pdf,image]"); requires poppler
    and tesseract system packages in the worker image.
    """

    @property
    def strategy_name(self) -> str:
        return "unstructured"

    def _recognize_sync(self, data: bytes, mime_type: str) -> OcrResult:
        if mime_type == MIME_PDF:
            from unstructured.partition.pdf import partition_pdf

            elements = partition_pdf(
                file=io.BytesIO(data),
                strategy="ocr_only",
                include_page_breaks=False,
            )
        else:
            from unstructured.partition.image import partition_image

            elements = partition_image(file=io.BytesIO(data), strategy="ocr_only")

        # Group elements by page number
        pages_dict: dict[int, list[str]] = {}
        for elem in elements:
            page_num = (elem.metadata.page_number if elem.metadata else None) or 1
            text = str(elem).strip()
            if text:
                pages_dict.setdefault(page_num, []).append(text)

        pages = [
            PageText(page_number=pn, text="\n\n".join(texts))
            for pn, texts in sorted(pages_dict.items())
        ]
        return OcrResult(pages=pages, strategy_name=self.strategy_name)


# ---------------------------------------------------------------------------
# Strategy 3: AWS Textract
# ---------------------------------------------------------------------------

class TextractOcr(OcrBackend):
    """
    AWS Textract DetectDocumentText (synchronous API).

    IAM permissions required on the worker task role:
      textract:DetectDocumentText
    """

    def __init__(self, region: str = "us-east-1", timeout_seconds: int = OCR_TIMEOUT_SECONDS) -> None:
        super().__init__(timeout_seconds)
        self._region = region

    @property
    def strategy_name(self) -> str:
        return "textract"

    def _recognize_sync(self, data: bytes, mime_type: str) -> OcrResult:
        import boto3
        from botocore.exceptions import BotoCoreError, ClientError

        client = boto3.client("textract", region_name=self._region)
        try:
            response = client.detect_document_text(Document={"Bytes": data})
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise ExtractionError(f"Textract rejected the document ({code})") from exc
        except BotoCoreError as exc:
            raise ExtractionError(f"Textract unavailable: {exc}") from exc

        return OcrResult(
            pages=self._parse_blocks(response.get("Blocks", [])),
            strategy_name=self.strategy_name,
        )

    @staticmethod
    def _parse_blocks(blocks: list[dict]) -> list[PageText]:
        lines: dict[int, list[str]] = {}
        confidences: dict[int, list[float]] = {}
        for block in blocks:
            if block.get("BlockType") != "LINE":
                continue
            page_num = block.get("Page", 1)
            lines.setdefault(page_num, []).append(block.get("Text", ""))
            confidences.setdefault(page_num, []).append(block.get("Confidence", 0.0) / 100.0)

        return [
            PageText(
                page_number=pn,
                text="\n".join(lines[pn]),
                confidence=round(sum(confidences[pn]) / len(confidences[pn]), 3),
            )
            for pn in sorted(lines)
        ]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_ocr_backend(settings: Settings | None = None) -> OcrBackend:
    settings = settings or get_settings()
    timeout = settings.extraction_timeout_seconds

    if settings.ocr_backend == "textract":
        return TextractOcr(region=settings.aws_region, timeout_seconds=timeout)
    if settings.ocr_backend == "unstructured":
        return UnstructuredOcr(timeout_seconds=timeout)
    return TesseractOcr(language=settings.ocr_language, timeout_seconds=timeout)
