"""Text extraction from uploaded files (PDF, DOCX, plain text)."""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path

from ragline.core.errors import ExtractionError

logger = logging.getLogger(__name__)


def extract_text(content: bytes, filename: str = "", media_type: str = "") -> str:
    """Extract plain text from file bytes.

    Dispatches on the declared media type first and the filename extension
    second. Anything unrecognised is decoded as UTF-8, so unknown types
    degrade to text instead of being rejected.

    Args:
        content: Raw file bytes.
        filename: Original filename (secondary type signal).
        media_type: Declared MIME type, e.g. ``application/pdf``.

    Returns:
        Extracted text as a string.

    Raises:
        ExtractionError: If the underlying PDF/DOCX library fails.
    """
    ext = Path(filename).suffix.lower()
    media_type = (media_type or "").lower()

    try:
        if "pdf" in media_type or ext == ".pdf":
            return _extract_pdf(content)

        if "word" in media_type or ext == ".docx":
            return _extract_docx(content)
    except Exception as exc:
        logger.warning("Text extraction failed for %s (%s): %s", filename, media_type, exc)
        raise ExtractionError(
            f"Failed to extract text from {media_type or ext or 'file'}: {exc}"
        ) from exc

    return _decode_text(content)


def _decode_text(content: bytes) -> str:
    return content.decode("utf-8", errors="replace")


def _extract_pdf(content: bytes) -> str:
    from pypdf import PdfReader

    reader = PdfReader(BytesIO(content))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n".join(pages)


def _extract_docx(content: bytes) -> str:
    from docx import Document

    doc = Document(BytesIO(content))
    return "\n".join(p.text for p in doc.paragraphs)
