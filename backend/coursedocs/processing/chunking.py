"""
Window Chunker  —  Deterministic Text Segmentation
══════════════════════════════════════════════════

Splits normalized document text into an ordered sequence of bounded,
overlapping fragments:

  1. Open a window of `chunk_size` characters at the current offset.
  2. If the window does not reach the end of the text, move its end back
     to the last paragraph break (blank line) inside the window; failing
     that, to the last sentence break (". ", "? ", "! " or a newline).
     A break is only taken if it lies in the back half of the window,
     otherwise the window is cut at its edge.
  3. Emit the window with surrounding whitespace stripped.
  4. Start the next window `chunk_overlap` characters before the cut.

The chunker is a pure function of (text, config): identical input always
yields identical output, which makes re-processing reproducible.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from coursedocs.core.errors import ChunkingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 1000
DEFAULT_CHUNK_OVERLAP = 200

_PARAGRAPH_BREAK = "\n\n"
_SENTENCE_BREAK_RE = re.compile(r"[.?!](?=\s)|\n")


@dataclass(frozen=True)
class ChunkerConfig:
    chunk_size:    int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"chunk_overlap must be in [0, {self.chunk_size}), got {self.chunk_overlap}"
            )

    @property
    def min_cut(self) -> int:
        """Smallest window length at which a boundary break is accepted."""
        return max(self.chunk_size // 2, self.chunk_overlap + 1)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class TextChunk:
    """
    A single fragment ready to be persisted as a Chunk row.

    start_char / end_char are offsets of the window in the normalized text
    (before whitespace stripping of the content).
    """
    index:      int
    content:    str
    start_char: int
    end_char:   int
    metadata:   dict[str, Any] = field(default_factory=dict)

    @property
    def char_count(self) -> int:
        return len(self.content)


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class WindowChunker:
    """
    Stateless fixed-window chunker.

    Usage:
        chunker = WindowChunker(ChunkerConfig(chunk_size=1000, chunk_overlap=200))
        chunks = chunker.split(text, base_metadata={"page_count": 3})
    """

    def __init__(self, config: ChunkerConfig | None = None) -> None:
        self._config = config or ChunkerConfig()

    @property
    def config(self) -> ChunkerConfig:
        return self._config

    def split(
        self,
        text: str,
        base_metadata: dict[str, Any] | None = None,
    ) -> list[TextChunk]:
        """
        Segment `text` into ordered chunks (index 0, 1, 2, …).

        Raises ChunkingError if the text is empty or whitespace-only, or if
        no non-empty fragment could be produced.
        """
        if not text or not text.strip():
            raise ChunkingError("Extracted text is empty")

        results: list[TextChunk] = []
        for start, end in self._windows(text):
            content = text[start:end].strip()
            if not content:
                continue
            idx = len(results)
            results.append(TextChunk(
                index=idx,
                content=content,
                start_char=start,
                end_char=end,
                metadata={
                    **(base_metadata or {}),
                    "chunk_index":    idx,
                    "start_char":     start,
                    "end_char":       end,
                    "char_count":     len(content),
                    "token_estimate": estimate_tokens(content),
                },
            ))

        if not results:
            raise ChunkingError("Chunking produced no fragments")

        logger.debug(
            "WindowChunker | chars=%d chunks=%d size=%d overlap=%d",
            len(text), len(results), self._config.chunk_size, self._config.chunk_overlap,
        )
        return results

    # ------------------------------------------------------------------
    # Window computation
    # ------------------------------------------------------------------

    def _windows(self, text: str) -> list[tuple[int, int]]:
        size    = self._config.chunk_size
        overlap = self._config.chunk_overlap
        n       = len(text)

        windows: list[tuple[int, int]] = []
        start = 0
        while start < n:
            end = min(start + size, n)
            if end < n:
                end = self._find_break(text, start, end)
            windows.append((start, end))
            if end >= n:
                break
            # min_cut > overlap, so the next window always moves forward
            start = end - overlap
        return windows

    def _find_break(self, text: str, start: int, end: int) -> int:
        """Return the cut position for the window text[start:end]."""
        floor = start + self._config.min_cut

        paragraph = text.rfind(_PARAGRAPH_BREAK, start, end)
        if paragraph != -1 and paragraph >= floor:
            return paragraph + len(_PARAGRAPH_BREAK)

        sentence = -1
        for match in _SENTENCE_BREAK_RE.finditer(text, start, end):
            sentence = match.end()
        if sentence != -1 and sentence >= floor:
            return sentence

        return end


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Rough estimate: 1 token ≈ 4 characters."""
    return max(1, (len(text) + 3) // 4)


def chunk_statistics(chunks: list[TextChunk]) -> dict[str, int]:
    """Summary numbers logged after each run."""
    if not chunks:
        return {
            "total_chunks":     0,
            "average_length":   0,
            "min_length":       0,
            "max_length":       0,
            "estimated_tokens": 0,
        }
    lengths = [c.char_count for c in chunks]
    return {
        "total_chunks":     len(chunks),
        "average_length":   round(sum(lengths) / len(lengths)),
        "min_length":       min(lengths),
        "max_length":       max(lengths),
        "estimated_tokens": sum(estimate_tokens(c.content) for c in chunks),
    }
