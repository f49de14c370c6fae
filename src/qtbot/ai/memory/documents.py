"""Plain-text extraction for the document types the retrieval engine ingests."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import docx
from pypdf import PdfReader

from ..errors import RetrievalError

LOGGER = logging.getLogger(__name__)

TEXT_EXTENSIONS = frozenset({".txt", ".md", ".markdown"})
PDF_EXTENSIONS = frozenset({".pdf"})
WORD_EXTENSIONS = frozenset({".docx"})
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | PDF_EXTENSIONS | WORD_EXTENSIONS

EXTRACTOR_TIMEOUT = 30.0


def is_supported(path: Path | str) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


async def read_document(path: Path | str, *, timeout: float = EXTRACTOR_TIMEOUT) -> str:
    """Return the text content of *path*.

    Extraction runs in a worker thread so large PDFs do not stall the loop.

    Raises:
        RetrievalError: the file is missing, unsupported, unreadable, or empty.
    """

    file_path = Path(path)
    if not file_path.is_file():
        raise RetrievalError(f"File does not exist: {file_path}")
    if not is_supported(file_path):
        suffix = file_path.suffix.lower()
        raise RetrievalError(f"Unsupported file type: {suffix.lstrip('.') or file_path.name}")

    try:
        content = await asyncio.wait_for(asyncio.to_thread(_extract, file_path), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RetrievalError(f"Text extraction timed out after {timeout:.0f}s: {file_path}") from exc

    if not content.strip():
        raise RetrievalError("Failed to read file content")
    LOGGER.debug("Read %d characters from %s", len(content), file_path)
    return content


def _extract(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in PDF_EXTENSIONS:
        LOGGER.info("Extracting text from PDF: %s", path)
        return extract_pdf_text(path)
    if suffix in WORD_EXTENSIONS:
        LOGGER.info("Extracting text from DOCX: %s", path)
        return extract_docx_text(path)
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise RetrievalError(f"Failed to open file: {path}: {exc}") from exc


def extract_pdf_text(path: Path) -> str:
    """Concatenate the text of every page; pages without text are skipped."""

    try:
        reader = PdfReader(str(path))
    except Exception as exc:
        raise RetrievalError(f"Unable to open PDF: {exc}") from exc

    pages: list[str] = []
    for index, page in enumerate(reader.pages):
        try:
            text = (page.extract_text() or "").strip()
        except Exception as exc:
            LOGGER.debug("Failed to extract PDF page %s: %s", index, exc)
            continue
        if text:
            pages.append(text)
    return "\n\n".join(pages)


def extract_docx_text(path: Path) -> str:
    try:
        document = docx.Document(str(path))
    except Exception as exc:
        raise RetrievalError(f"Unable to open DOCX: {exc}") from exc
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


__all__ = [
    "SUPPORTED_EXTENSIONS",
    "extract_docx_text",
    "extract_pdf_text",
    "is_supported",
    "read_document",
]
