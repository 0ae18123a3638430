"""
PDF Text Strategies + Vision Fallback
═════════════════════════════════════

Strategies, tried in order of speed and cost:

  Strategy 1: PyMuPDF (fitz)
    - Native PDF text layer, in-process, no API calls
    - Returns empty text for image-only pages

  Strategy 2: pypdf
    - Pure-Python parser, used when PyMuPDF cannot open the file
      (some malformed cross-reference tables only one of them tolerates)

  Vision fallback: OpenAI vision model
    - Scanned PDFs: pages rendered to PNG with PyMuPDF and transcribed
    - Images: natural-language description of the picture, including any
      visible text (not a literal OCR transcript)

PDF strategies never raise: a parser that cannot read the buffer returns
`ok=False` so the caller can decide between "corrupted" and "scanned".
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from openai import AsyncOpenAI

from app.core.config import RAGConfig, settings

logger = logging.getLogger(__name__)

# Magic-number prefixes → image MIME type
_IMAGE_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff",      "image/jpeg"),
    (b"\x89PNG",           "image/png"),
    (b"GIF",               "image/gif"),
    (b"BM",                "image/bmp"),
    (b"RIFF",              "image/webp"),
)

IMAGE_PLACEHOLDER = (
    "[Image file - the visual content could not be analyzed. "
    "Re-upload the image to try again.]"
)


def detect_image_mime(buffer: bytes) -> str:
    """MIME type from the first bytes of an image; PNG when unrecognised."""
    for signature, mime in _IMAGE_SIGNATURES:
        if buffer.startswith(signature):
            return mime
    return "image/png"


def is_image_buffer(buffer: bytes) -> bool:
    return any(buffer.startswith(sig) for sig, _ in _IMAGE_SIGNATURES)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    page_number: int     # 1-based
    text:        str


@dataclass
class PdfStrategyResult:
    """
    Output of a single PDF strategy.

    ok            : False when the parser could not open/read the buffer
    pages         : one PageText per page that was read
    strategy_name : "pymupdf" | "pypdf"
    elapsed_ms    : wall-clock time for the strategy
    """
    ok:            bool
    pages:         list[PageText] = field(default_factory=list)
    strategy_name: str = "unknown"
    elapsed_ms:    float = 0.0

    @property
    def full_text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    @property
    def page_count(self) -> int:
        return len(self.pages)


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BasePdfExtractor(ABC):
    """
    All implementations accept raw bytes, run blocking work in a thread
    executor, and return PdfStrategyResult instead of raising.
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    def _extract_sync(self, pdf_bytes: bytes) -> list[PageText]:
        """Blocking parse; may raise on unreadable input."""

    async def extract(self, pdf_bytes: bytes) -> PdfStrategyResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        try:
            pages = await loop.run_in_executor(None, self._extract_sync, pdf_bytes)
            result = PdfStrategyResult(ok=True, pages=pages, strategy_name=self.strategy_name)
        except Exception as exc:
            logger.warning("%s | could not read PDF: %s", self.strategy_name, exc)
            result = PdfStrategyResult(ok=False, strategy_name=self.strategy_name)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "%s | ok=%s pages=%d chars=%d elapsed_ms=%.0f",
            self.strategy_name, result.ok, result.page_count,
            len(result.full_text), result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Strategy 1: PyMuPDF
# ---------------------------------------------------------------------------

class PyMuPDFExtractor(BasePdfExtractor):

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    def _extract_sync(self, pdf_bytes: bytes) -> list[PageText]:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[PageText] = []
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                pages.append(PageText(page_number=page_num, text=page.get_text("text") or ""))
        return pages


# ---------------------------------------------------------------------------
# Strategy 2: pypdf
# ---------------------------------------------------------------------------

class PyPDFExtractor(BasePdfExtractor):

    @property
    def strategy_name(self) -> str:
        return "pypdf"

    def _extract_sync(self, pdf_bytes: bytes) -> list[PageText]:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(pdf_bytes))
        return [
            PageText(page_number=i, text=page.extract_text() or "")
            for i, page in enumerate(reader.pages, start=1)
        ]


# ---------------------------------------------------------------------------
# Vision fallback
# ---------------------------------------------------------------------------

def render_pdf_pages(pdf_bytes: bytes, max_pages: int, zoom: float = 2.0) -> list[bytes]:
    """Rasterise up to `max_pages` pages to PNG bytes (blocking)."""
    import fitz

    images: list[bytes] = []
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        matrix = fitz.Matrix(zoom, zoom)
        for index, page in enumerate(doc):
            if index >= max_pages:
                break
            images.append(page.get_pixmap(matrix=matrix).tobytes("png"))
    return images


class VisionOCR:
    """
    Sends images to an OpenAI vision-capable chat model.

    describe_image() never raises: on any failure it returns IMAGE_PLACEHOLDER
    so an image upload still produces a searchable document.
    ocr_pdf() returns "" on failure and lets the extractor decide.
    """

    def __init__(
        self,
        config: RAGConfig,
        client: AsyncOpenAI | None = None,
        model:  str | None = None,
    ) -> None:
        self._config = config
        self._client = client or AsyncOpenAI(api_key=settings.openai_api_key or None, max_retries=0)
        self._model  = model or settings.vision_model

    async def _ask(self, image: bytes, mime: str, prompt: str, max_tokens: int) -> str:
        data_url = f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"
        response = await self._client.chat.completions.create(
            model=self._model,
            max_tokens=max_tokens,
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }],
        )
        return (response.choices[0].message.content or "").strip()

    async def describe_image(self, image: bytes, mime: str | None = None) -> str:
        mime = mime if mime and mime.startswith("image/") else detect_image_mime(image)
        try:
            description = await self._ask(
                image, mime, self._config.prompts.vision_analysis, max_tokens=1000,
            )
        except Exception as exc:
            logger.warning("VisionOCR | image analysis failed: %s", exc)
            return IMAGE_PLACEHOLDER

        if not description:
            logger.warning("VisionOCR | empty image description")
            return IMAGE_PLACEHOLDER
        logger.info("VisionOCR | described image mime=%s chars=%d", mime, len(description))
        return description

    async def ocr_pdf(self, pdf_bytes: bytes) -> str:
        loop = asyncio.get_running_loop()
        try:
            images = await loop.run_in_executor(
                None, render_pdf_pages, pdf_bytes, self._config.processing.max_ocr_pages,
            )
        except Exception as exc:
            logger.warning("VisionOCR | could not render PDF pages: %s", exc)
            return ""

        texts: list[str] = []
        for page_num, image in enumerate(images, start=1):
            try:
                text = await self._ask(
                    image, "image/png", self._config.prompts.ocr_page, max_tokens=2000,
                )
            except Exception as exc:
                logger.warning("VisionOCR | page=%d transcription failed: %s", page_num, exc)
                continue
            if text:
                texts.append(text)

        logger.info("VisionOCR | pdf pages=%d transcribed=%d", len(images), len(texts))
        return "\n\n".join(texts)
