"""
Format Normalizer — every stored artifact is a PDF.

    application/pdf      no-op, bytes returned unchanged
    image/*              one A4 page, image scaled to 90% of the page,
                         aspect ratio kept, centred
    text/*, JSON, DOCX   text reflowed to the usable width and paginated
                         (10 mm side margins, first line at 20 mm, 7 mm
                         line height, 20 mm bottom margin)
    anything else        "Document Conversion" wrapper page naming the
                         original file, type, size and conversion date,
                         stating that the content is not embedded

Conversion never aborts the pipeline: any exception returns the original
bytes with canonical=False.
"""

from __future__ import annotations

import asyncio
import io
import logging
import textwrap
from dataclasses import dataclass
from datetime import date
from pathlib import PurePosixPath

from app.processing.extractor import DOCX_MIME

logger = logging.getLogger(__name__)

CANONICAL_MIME = "application/pdf"

# A4 in points
PAGE_WIDTH  = 595.0
PAGE_HEIGHT = 842.0

MM = 72.0 / 25.4

IMAGE_PAGE_FRACTION = 0.9

TEXT_MARGIN_X   = 10 * MM
TEXT_START_Y    = 20 * MM
TEXT_BOTTOM     = PAGE_HEIGHT - 20 * MM
LINE_HEIGHT     = 7 * MM
FONT_SIZE       = 11
FONT_NAME       = "helv"

# Empirical Helvetica average glyph width
_CHARS_PER_LINE = int((PAGE_WIDTH - 2 * TEXT_MARGIN_X) / (FONT_SIZE * 0.5))

_TEXT_MIMES = {"application/json", "application/xml", "application/x-yaml", DOCX_MIME}


@dataclass
class NormalizedDocument:
    data:      bytes
    mime_type: str
    canonical: bool
    filename:  str
    method:    str     # passthrough | image | text | wrapper | verbatim


def canonical_filename(filename: str) -> str:
    path = PurePosixPath(filename or "document")
    return f"{path.stem or 'document'}.pdf"


# ---------------------------------------------------------------------------
# Renderers (blocking)
# ---------------------------------------------------------------------------

def fit_rect(img_width: float, img_height: float) -> tuple[float, float, float, float]:
    """Centred (x0, y0, x1, y1) for an image scaled to 90% of the page."""
    scale = min(PAGE_WIDTH / img_width, PAGE_HEIGHT / img_height) * IMAGE_PAGE_FRACTION
    width, height = img_width * scale, img_height * scale
    x0 = (PAGE_WIDTH - width) / 2
    y0 = (PAGE_HEIGHT - height) / 2
    return x0, y0, x0 + width, y0 + height


def _render_image(data: bytes) -> bytes:
    import fitz

    pix = fitz.Pixmap(data)
    rect = fitz.Rect(*fit_rect(pix.width, pix.height))

    doc = fitz.open()
    try:
        page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        page.insert_image(rect, stream=data, keep_proportion=True)
        return doc.tobytes()
    finally:
        doc.close()


def wrap_lines(text: str, width: int = _CHARS_PER_LINE) -> list[str]:
    lines: list[str] = []
    for raw_line in text.splitlines():
        if not raw_line.strip():
            lines.append("")
        else:
            lines.extend(textwrap.wrap(raw_line, width=width))
    return lines


def paginate(lines: list[str]) -> list[list[str]]:
    """Split lines into pages by the vertical cursor, like the renderer does."""
    pages: list[list[str]] = [[]]
    y = TEXT_START_Y
    for line in lines:
        if y > TEXT_BOTTOM:
            pages.append([])
            y = TEXT_START_Y
        pages[-1].append(line)
        y += LINE_HEIGHT
    return pages


def _render_text(text: str) -> bytes:
    import fitz

    doc = fitz.open()
    try:
        for page_lines in paginate(wrap_lines(text)):
            page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
            y = TEXT_START_Y
            for line in page_lines:
                if line:
                    page.insert_text(
                        fitz.Point(TEXT_MARGIN_X, y),
                        line,
                        fontsize=FONT_SIZE,
                        fontname=FONT_NAME,
                        color=(0, 0, 0),
                    )
                y += LINE_HEIGHT
        return doc.tobytes()
    finally:
        doc.close()


def wrapper_lines(filename: str, mime_type: str, size_bytes: int, today: date) -> list[str]:
    return [
        f"Original File: {filename}",
        f"File Type: {mime_type or 'unknown'}",
        f"File Size: {size_bytes / 1024 / 1024:.2f} MB",
        f"Conversion Date: {today.isoformat()}",
        "",
        "Note: This file was converted to PDF format for storage.",
        "The original file content may not be fully preserved.",
    ]


def _render_wrapper(filename: str, mime_type: str, size_bytes: int) -> bytes:
    import fitz

    doc = fitz.open()
    try:
        page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        page.insert_text(fitz.Point(20 * MM, 30 * MM), "Document Conversion", fontsize=16, fontname="hebo")
        y = 50 * MM
        for line in wrapper_lines(filename, mime_type, size_bytes, date.today()):
            if line:
                page.insert_text(fitz.Point(20 * MM, y), line, fontsize=12, fontname=FONT_NAME)
            y += 10 * MM
        return doc.tobytes()
    finally:
        doc.close()


def _docx_text(data: bytes) -> str:
    from docx import Document as DocxDocument

    return "\n".join(p.text for p in DocxDocument(io.BytesIO(data)).paragraphs)


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class FormatNormalizer:

    async def normalize(self, data: bytes, mime_type: str, filename: str) -> NormalizedDocument:
        if mime_type == CANONICAL_MIME:
            return NormalizedDocument(data, CANONICAL_MIME, True, filename, "passthrough")

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._convert, data, mime_type, filename)
        except Exception as exc:
            logger.warning(
                "Normalization failed, storing original bytes | file=%s type=%s error=%s",
                filename, mime_type, exc,
            )
            return NormalizedDocument(data, mime_type, False, filename, "verbatim")

    def _convert(self, data: bytes, mime_type: str, filename: str) -> NormalizedDocument:
        target = canonical_filename(filename)

        if mime_type.startswith("image/"):
            pdf, method = _render_image(data), "image"
        elif mime_type == DOCX_MIME:
            pdf, method = _render_text(_docx_text(data)), "text"
        elif mime_type.startswith("text/") or mime_type in _TEXT_MIMES:
            pdf, method = _render_text(_decode(data)), "text"
        else:
            pdf, method = _render_wrapper(filename, mime_type, len(data)), "wrapper"

        logger.info(
            "Normalized | file=%s type=%s method=%s bytes_in=%d bytes_out=%d",
            filename, mime_type, method, len(data), len(pdf),
        )
        return NormalizedDocument(pdf, CANONICAL_MIME, True, target, method)
