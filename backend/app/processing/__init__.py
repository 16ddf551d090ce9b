"""
Document Processing Package
════════════════════════════

Local, CPU-bound document handling used by the ingestion pipeline:

  Text Extraction (structured parse → OCR fallback) and Format Normalization

Modules
───────
  ocr.py         OCR strategy interface and the AWS Textract backend
  extractor.py   TextExtractor: PyMuPDF / python-docx / plain text, OCR fallback
  normalizer.py  FormatNormalizer: any input → canonical PDF

Blocking library calls (fitz, python-docx, boto3) always run in the default
thread pool so the event loop is never stalled.
"""

from app.processing.extractor import ExtractedText, TextExtractor
from app.processing.normalizer import FormatNormalizer, NormalizedDocument
from app.processing.ocr import OCRStrategy, TextractOCR, get_ocr_strategy

__all__ = [
    "ExtractedText",
    "TextExtractor",
    "FormatNormalizer",
    "NormalizedDocument",
    "OCRStrategy",
    "TextractOCR",
    "get_ocr_strategy",
]
