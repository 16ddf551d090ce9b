"""
Text Extraction
═══════════════

Selects the extraction path from the declared (or sniffed) MIME type:

  application/pdf   PyMuPDF text layer; OCR fallback when the cleaned text
                    is shorter than MIN_STRUCTURED_CHARS or parsing throws
  image/*           straight to OCR
  DOCX              python-docx paragraphs
  anything else     decoded as UTF-8, latin-1 as a fallback

Confidence reflects the path, not the content:
  structured parse → STRUCTURED_CONFIDENCE (0.95)
  OCR              → OCR_CONFIDENCE (0.8)

OCR errors propagate to the caller; structured-parse errors only trigger
the OCR fallback.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from dataclasses import dataclass

from app.processing.ocr import OCRStrategy

logger = logging.getLogger(__name__)

MIN_STRUCTURED_CHARS = 100

STRUCTURED_CONFIDENCE = 0.95
OCR_CONFIDENCE = 0.8

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@dataclass
class ExtractedText:
    text:       str
    confidence: float
    word_count: int
    method:     str     # pymupdf | docx | plain | <ocr strategy name> | none
    used_ocr:   bool = False
    elapsed_ms: float = 0.0


def clean_text(text: str) -> str:
    text = re.sub(r"[ \t\f\v]+", " ", text or "")
    text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)
    return text.strip()


def _word_count(text: str) -> int:
    return len(text.split())


# ---------------------------------------------------------------------------
# Blocking parsers — run in the default thread pool
# ---------------------------------------------------------------------------

def _extract_pdf(data: bytes) -> str:
    import fitz  # PyMuPDF

    with fitz.open(stream=data, filetype="pdf") as doc:
        return "\n\n".join((page.get_text("text") or "").strip() for page in doc)


def _extract_docx(data: bytes) -> str:
    from docx import Document as DocxDocument

    doc = DocxDocument(io.BytesIO(data))
    return "\n".join(p.text for p in doc.paragraphs if p.text.strip())


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:

    def __init__(self, ocr: OCRStrategy) -> None:
        self._ocr = ocr

    async def extract(self, data: bytes, mime_type: str, filename: str = "") -> ExtractedText:
        t0 = time.monotonic()
        name = filename.lower()

        if mime_type.startswith("image/"):
            result = await self._run_ocr(data, mime_type)
        elif mime_type == "application/pdf" or name.endswith(".pdf"):
            result = await self._extract_pdf_with_fallback(data)
        elif mime_type == DOCX_MIME or name.endswith(".docx"):
            text = clean_text(await self._in_thread(_extract_docx, data))
            result = ExtractedText(text, STRUCTURED_CONFIDENCE, _word_count(text), "docx")
        else:
            text = clean_text(_decode(data))
            result = ExtractedText(text, STRUCTURED_CONFIDENCE, _word_count(text), "plain")

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction | method=%s chars=%d words=%d confidence=%.2f elapsed_ms=%.0f",
            result.method, len(result.text), result.word_count, result.confidence, result.elapsed_ms,
        )
        return result

    async def _extract_pdf_with_fallback(self, data: bytes) -> ExtractedText:
        structured = ""
        try:
            structured = clean_text(await self._in_thread(_extract_pdf, data))
        except Exception as exc:
            logger.warning("PDF parse failed, falling back to OCR | error=%s", exc)
        else:
            if len(structured) >= MIN_STRUCTURED_CHARS:
                return ExtractedText(structured, STRUCTURED_CONFIDENCE, _word_count(structured), "pymupdf")
            logger.info(
                "PDF text layer too short, falling back to OCR | chars=%d threshold=%d",
                len(structured), MIN_STRUCTURED_CHARS,
            )

        ocr = await self._run_ocr(data, "application/pdf")
        if not ocr.text and structured:
            # Keep the short text layer rather than nothing
            return ExtractedText(structured, STRUCTURED_CONFIDENCE, _word_count(structured), "pymupdf")
        return ocr

    async def _run_ocr(self, data: bytes, mime_type: str) -> ExtractedText:
        result = await self._ocr.recognize(data, mime_type)
        text = clean_text(result.full_text)
        return ExtractedText(
            text, OCR_CONFIDENCE, _word_count(text), result.strategy_name, used_ocr=True
        )

    @staticmethod
    async def _in_thread(func, data: bytes) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, data)
