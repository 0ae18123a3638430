"""
Text Extraction Orchestrator
════════════════════════════

Selects the extraction path for a buffer and returns an ExtractionResult.

Format resolution:
  1. Declared content type decides (PDF, DOCX, image/*, text-like).
  2. Missing or application/octet-stream → magic bytes decide
     (%PDF → PDF, PK\\x03\\x04 → DOCX, image signatures → image).
  3. Anything else is decoded as text.

PDF cascade:
  PyMuPDF ──► could not open? ──► pypdf ──► could not open? ──► ExtractionFailed
     │
     └─► trimmed text < min_pdf_text_chars ──► scanned ──► VisionOCR.ocr_pdf()
                                                              │
                                                empty ──► EmptyExtraction

Output is truncated to max_text_length before anything downstream sees it.
This module is the only place that knows the format dispatch; callers only see
ExtractionResult or an ExtractionFailed subclass.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass

from app.core.config import RAGConfig
from app.core.errors import EmptyExtraction, ExtractionFailed
from app.processing.ocr import (
    PyMuPDFExtractor,
    PyPDFExtractor,
    VisionOCR,
    detect_image_mime,
    is_image_buffer,
)

logger = logging.getLogger(__name__)

PDF_MIME  = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC_MIME  = "application/msword"

_TEXT_LIKE_MIMES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/javascript",
    "application/x-sh",
}

PDF_FAILED_MESSAGE  = "Could not extract text from PDF - file may be empty or corrupted"
DOCX_FAILED_MESSAGE = "Could not extract text from DOCX - file may be empty or corrupted"
TEXT_EMPTY_MESSAGE  = "No text content found - file may be empty or corrupted"


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text        : extracted text, already truncated to max_text_length
    kind        : "text" | "pdf" | "docx" | "image"
    method      : "decode" | "pymupdf" | "pypdf" | "vision-ocr" | "python-docx" | "vision"
    truncated   : True if the raw text exceeded max_text_length
    elapsed_ms  : extraction wall time
    """
    text:       str
    kind:       str
    method:     str
    truncated:  bool = False
    elapsed_ms: float = 0.0


def truncate_text(text: str, max_length: int) -> tuple[str, bool]:
    if len(text) <= max_length:
        return text, False
    return text[:max_length], True


def resolve_kind(buffer: bytes, content_type: str | None) -> str:
    """Map a declared MIME type (or the buffer's magic bytes) to a format."""
    mime = (content_type or "").split(";")[0].strip().lower()

    if mime == PDF_MIME:
        return "pdf"
    if mime == DOCX_MIME:
        return "docx"
    if mime == DOC_MIME:
        return "doc"
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("text/") or mime in _TEXT_LIKE_MIMES:
        return "text"

    # Undeclared / generic binary: sniff
    if buffer.startswith(b"%PDF"):
        return "pdf"
    if buffer.startswith(b"PK\x03\x04"):
        return "docx"
    if is_image_buffer(buffer):
        return "image"
    return "text"


def decode_text(buffer: bytes) -> str:
    try:
        return buffer.decode("utf-8-sig")
    except UnicodeDecodeError:
        return buffer.decode("latin-1", errors="replace")


def _docx_text_sync(buffer: bytes) -> str:
    """Paragraphs, then table cells, one block per line (blocking)."""
    from docx import Document as DocxDocument

    doc = DocxDocument(io.BytesIO(buffer))
    parts = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Stateless extractor. One instance can serve concurrent documents.

    Usage:
        extractor = TextExtractor(config)
        result = await extractor.extract(buffer, "application/pdf")
    """

    def __init__(self, config: RAGConfig, vision: VisionOCR | None = None) -> None:
        self._config  = config
        self._vision  = vision or VisionOCR(config)
        self._pymupdf = PyMuPDFExtractor()
        self._pypdf   = PyPDFExtractor()

    async def extract(self, buffer: bytes, content_type: str | None) -> ExtractionResult:
        t0 = time.monotonic()
        kind = resolve_kind(buffer, content_type)

        if kind == "pdf":
            text, method = await self._extract_pdf(buffer)
        elif kind == "docx":
            text, method = await self._extract_docx(buffer)
        elif kind == "doc":
            raise ExtractionFailed(
                "Legacy .doc files are not supported - please convert to .docx or PDF"
            )
        elif kind == "image":
            text = await self._vision.describe_image(buffer, content_type)
            method = "vision"
        else:
            text = decode_text(buffer)
            method = "decode"
            if not text.strip():
                raise EmptyExtraction(TEXT_EMPTY_MESSAGE)

        text, truncated = truncate_text(text, self._config.processing.max_text_length)
        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction | kind=%s method=%s chars=%d truncated=%s elapsed_ms=%.0f",
            kind, method, len(text), truncated, elapsed_ms,
        )
        return ExtractionResult(
            text=text, kind=kind, method=method, truncated=truncated, elapsed_ms=elapsed_ms,
        )

    async def _extract_pdf(self, buffer: bytes) -> tuple[str, str]:
        # ── Step 1: native text layer ─────────────────────────────────────
        result = await self._pymupdf.extract(buffer)
        if not result.ok:
            result = await self._pypdf.extract(buffer)
        if not result.ok:
            raise ExtractionFailed(PDF_FAILED_MESSAGE)

        text = result.full_text.strip()
        if len(text) >= self._config.processing.min_pdf_text_chars:
            return text, result.strategy_name

        # ── Step 2: scanned PDF → vision OCR ──────────────────────────────
        logger.info(
            "Extraction | PDF looks scanned chars=%d pages=%d, using vision OCR",
            len(text), result.page_count,
        )
        ocr_text = (await self._vision.ocr_pdf(buffer)).strip()
        if ocr_text:
            return ocr_text, "vision-ocr"
        if text:
            # OCR gave nothing but the text layer had something
            return text, result.strategy_name
        raise EmptyExtraction(PDF_FAILED_MESSAGE)

    async def _extract_docx(self, buffer: bytes) -> tuple[str, str]:
        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(None, _docx_text_sync, buffer)
        except Exception as exc:
            logger.warning("Extraction | python-docx could not read file: %s", exc)
            raise ExtractionFailed(DOCX_FAILED_MESSAGE) from exc
        if not text.strip():
            raise EmptyExtraction(DOCX_FAILED_MESSAGE)
        return text, "python-docx"


__all__ = [
    "ExtractionResult",
    "TextExtractor",
    "decode_text",
    "detect_image_mime",
    "resolve_kind",
    "truncate_text",
]
