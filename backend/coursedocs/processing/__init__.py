"""
Document Processing Package
════════════════════════════

The CPU-bound half of the ingestion pipeline:

  Raw bytes → Text Extraction → Normalization → Window Chunking

Modules
───────
  ocr.py        OCR backends (Tesseract, Unstructured, Textract); one is selected by settings.ocr_backend
  extractor.py  Per-format extractors selected by MIME type, text normalization
  chunking.py   Deterministic fixed-window chunker with boundary preference

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Blocking library calls run in a thread executor under a timeout.
  • Failures raise typed errors (ExtractionError, ChunkingError); nothing
    is swallowed here, the pipeline decides what becomes of a document.
"""

from coursedocs.processing.chunking import (
    ChunkerConfig,
    TextChunk,
    WindowChunker,
    chunk_statistics,
)
from coursedocs.processing.extractor import (
    ExtractionResult,
    TextExtractorOrchestrator,
    normalize_text,
)

__all__ = [
    "ChunkerConfig",
    "TextChunk",
    "WindowChunker",
    "chunk_statistics",
    "ExtractionResult",
    "TextExtractorOrchestrator",
    "normalize_text",
]
