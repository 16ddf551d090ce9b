"""
OCR Strategy — text from raster images and scanned PDFs
═══════════════════════════════════════════════════════

Design: Strategy
────────────────
TextExtractor only sees the OCRStrategy interface. The production
backend is AWS Textract (DetectDocumentText):

  - Raster image bytes are sent as-is.
  - PDFs are rendered page by page with PyMuPDF into PNG bytes first,
    since the synchronous Textract API accepts single-page documents only.

Unlike structured parsing, OCR errors are NOT swallowed here: they
propagate to the RetryExecutor, which decides whether to retry.

IAM permissions required on the task role:
  textract:DetectDocumentText
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from app.core.exceptions import TransientServiceError

logger = logging.getLogger(__name__)

# Prevents worker stalls on pathological documents
OCR_TIMEOUT_SECONDS = 120

# Render resolution for scanned PDF pages
RENDER_DPI = 200


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    page_number: int
    text:        str
    confidence:  float = -1.0   # -1.0 = not reported by the backend


@dataclass
class OCRResult:
    pages:         list[PageText]
    strategy_name: str
    elapsed_ms:    float = 0.0

    @property
    def full_text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text.strip())


class OCRStrategy(ABC):

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    async def recognize(self, data: bytes, mime_type: str) -> OCRResult:
        """Run OCR over image or PDF bytes. Raises on failure."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def render_pdf_pages(pdf_bytes: bytes, dpi: int = RENDER_DPI) -> list[bytes]:
    """Blocking: rasterize every PDF page to PNG bytes."""
    import fitz  # PyMuPDF

    images: list[bytes] = []
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        for page in doc:
            images.append(page.get_pixmap(dpi=dpi).tobytes("png"))
    return images


# ---------------------------------------------------------------------------
# AWS Textract
# ---------------------------------------------------------------------------

class TextractOCR(OCRStrategy):
    """
    Sync DetectDocumentText per page. Lines are joined per page; the page
    confidence is the mean WORD confidence normalized to 0–1.
    """

    def __init__(self, region: str = "us-east-1", client=None) -> None:
        self._region = region
        self._client = client

    @property
    def strategy_name(self) -> str:
        return "textract"

    def _textract(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("textract", region_name=self._region)
        return self._client

    async def recognize(self, data: bytes, mime_type: str) -> OCRResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            pages = await asyncio.wait_for(
                loop.run_in_executor(None, self._recognize_sync, data, mime_type),
                timeout=OCR_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise TransientServiceError(
                f"Textract timed out after {OCR_TIMEOUT_SECONDS}s", service="textract"
            ) from exc

        result = OCRResult(pages=pages, strategy_name=self.strategy_name)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Textract | pages=%d total_chars=%d elapsed_ms=%.0f",
            len(pages), len(result.full_text), result.elapsed_ms,
        )
        return result

    def _recognize_sync(self, data: bytes, mime_type: str) -> list[PageText]:
        images = render_pdf_pages(data) if mime_type == "application/pdf" else [data]
        client = self._textract()

        pages: list[PageText] = []
        for page_number, image in enumerate(images, start=1):
            response = client.detect_document_text(Document={"Bytes": image})
            pages.append(self._parse_blocks(page_number, response.get("Blocks", [])))
        return pages

    @staticmethod
    def _parse_blocks(page_number: int, blocks: list[dict]) -> PageText:
        lines: list[str] = []
        confidences: list[float] = []

        for block in blocks:
            if block.get("BlockType") == "LINE":
                lines.append(block.get("Text", ""))
            elif block.get("BlockType") == "WORD":
                confidences.append(block.get("Confidence", 0.0) / 100.0)

        avg_conf = sum(confidences) / len(confidences) if confidences else -1.0
        return PageText(page_number=page_number, text="\n".join(lines), confidence=round(avg_conf, 3))


def get_ocr_strategy(backend: str, region: str) -> OCRStrategy:
    if backend == "textract":
        return TextractOCR(region=region)
    raise ValueError(f"Unsupported OCR backend: {backend!r}")
