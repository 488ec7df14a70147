"""
Upload validation.

Runs synchronously inside submit(), before a blob or a record exists:
  1. Canonicalize the declared MIME type (case, parameters, known aliases)
  2. Reject types outside the allow-list
  3. Reject empty input and input above the 10 MiB ceiling

The declared type is trusted once it passes the allow-list; a file whose
bytes do not match its declared type fails later, in extraction, and the
document ends FAILED with a diagnostic.
"""

from __future__ import annotations

import logging
import re

from coursedocs.core.errors import ValidationError
from coursedocs.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    EXTENSION_FOR_TYPE,
    MAX_FILE_SIZE_BYTES,
    MIME_ALIASES,
)

logger = logging.getLogger(__name__)

UNSUPPORTED_FILE_TYPE = "UNSUPPORTED_FILE_TYPE"
FILE_TOO_LARGE        = "FILE_TOO_LARGE"
MISSING_FILE          = "MISSING_FILE"

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9._\-]")
_MAX_FILENAME_LENGTH = 200


def canonical_mime_type(mime_type: str | None) -> str:
    """'Image/JPG; q=0.9' → 'image/jpeg'."""
    if not mime_type:
        return ""
    base = mime_type.split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(base, base)


def validate_upload(
    mime_type: str | None,
    size_bytes: int,
    filename: str | None = None,
) -> str:
    """
    Return the canonical MIME type, or raise ValidationError.

    The size ceiling is inclusive: exactly MAX_FILE_SIZE_BYTES is accepted.
    """
    canonical = canonical_mime_type(mime_type)
    if canonical not in ALLOWED_CONTENT_TYPES:
        logger.info("Upload rejected | reason=type file=%s type=%s", filename, mime_type)
        allowed = ", ".join(sorted(EXTENSION_FOR_TYPE[t] for t in ALLOWED_CONTENT_TYPES))
        raise ValidationError(
            f"File type '{mime_type or 'unknown'}' is not supported. Allowed: {allowed}",
            code=UNSUPPORTED_FILE_TYPE,
        )

    if size_bytes <= 0:
        logger.info("Upload rejected | reason=empty file=%s", filename)
        raise ValidationError("No file content was provided.", code=MISSING_FILE)

    if size_bytes > MAX_FILE_SIZE_BYTES:
        logger.info("Upload rejected | reason=size file=%s size=%d", filename, size_bytes)
        raise ValidationError(
            f"File size {size_bytes / 1_048_576:.1f} MB exceeds the "
            f"{MAX_FILE_SIZE_BYTES // 1_048_576} MB limit.",
            code=FILE_TOO_LARGE,
        )

    return canonical


def sanitize_filename(filename: str | None) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with OS-safe characters.
    """
    # Strip any directory component
    basename = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    safe = _UNSAFE_CHARS_RE.sub("_", basename).lstrip(".")
    return safe[:_MAX_FILENAME_LENGTH] or "upload"
