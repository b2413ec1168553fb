"""Extraction outcome shared by all extractors."""
from dataclasses import dataclass
from typing import Optional

# processing_method tags
METHOD_IMAGE_OCR = "google-vision-ocr"
METHOD_TRANSCRIPTION = "assemblyai"
METHOD_PDF_TEXT = "embedded-text"
METHOD_PDF_PAGES = "google-vision-pdf-pages"
METHOD_PDF_VISION = "google-vision-pdf"
METHOD_NONE = "none"
METHOD_DOCX = "docx2txt"
METHOD_DOC_LEGACY = "word-legacy"


@dataclass
class ExtractionResult:
    text: str
    method: str
    page_count: Optional[int] = None
    pages_ocred: Optional[int] = None
