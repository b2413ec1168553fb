"""PDF text extraction: text layer first, then page OCR, then whole-document OCR."""
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO
from typing import List, Optional, Tuple

import fitz  # PyMuPDF
from pdfminer.high_level import extract_text

from media_extractor import settings
from media_extractor.errors import StorageError
from media_extractor.extraction.result import (
    ExtractionResult, METHOD_PDF_TEXT, METHOD_PDF_PAGES, METHOD_PDF_VISION, METHOD_NONE,
)
from media_extractor.logging_conf import logger
from media_extractor.storage import ObjectStorage
from media_extractor.vision_client import VisionClient

PAGE_PATH = "file-processing/pdf-pages/{webhook_id}/page-{page}.png"


def extract_embedded_text(content: bytes) -> str:
    """Native text layer via pdfminer; empty string if the PDF cannot be parsed."""
    try:
        return (extract_text(BytesIO(content)) or "").strip()
    except Exception as e:
        logger.warning(f"pdfminer failed: {e}")
        return ""


def render_pages(document: fitz.Document, start: int, stop: int, scale: float) -> List[Tuple[int, Optional[bytes]]]:
    """PNG bytes for pages [start, stop), 1-based page numbers; None for pages that fail to render."""
    matrix = fitz.Matrix(scale, scale)
    rendered = []
    for index in range(start, stop):
        try:
            pixmap = document.load_page(index).get_pixmap(matrix=matrix)
            rendered.append((index + 1, pixmap.tobytes("png")))
        except Exception as e:
            logger.warning(f"Could not render page {index + 1}: {e}")
            rendered.append((index + 1, None))
    return rendered


def combine_pages(page_texts: List[str]) -> str:
    return "\n\n".join(
        f"--- Page {number} ---\n{text}"
        for number, text in enumerate(page_texts, start=1)
        if text
    )


class PdfExtractor:
    """Picks the strongest of the three PDF strategies."""

    def __init__(self, vision: VisionClient, storage: ObjectStorage, scale: Optional[float] = None,
                 concurrency: Optional[int] = None, max_pages: Optional[int] = None,
                 min_chars: Optional[int] = None):
        self.vision = vision
        self.storage = storage
        self.scale = scale or settings.PDF_OCR_SCALE
        self.concurrency = concurrency or settings.PDF_OCR_CONCURRENCY
        self.max_pages = max_pages or settings.PDF_OCR_MAX_PAGES
        self.min_chars = settings.PDF_TEXT_MIN_CHARS if min_chars is None else min_chars

    def extract(self, content: bytes, media_url: str, webhook_id: str) -> ExtractionResult:
        embedded = extract_embedded_text(content)

        # Digital PDFs have a real text layer; scans and prints have little or none
        if len(embedded) > self.min_chars:
            return ExtractionResult(text=embedded, method=METHOD_PDF_TEXT)

        logger.info(f"PDF for webhook {webhook_id} has {len(embedded)} chars of text, trying page OCR")
        try:
            pages = self.ocr_pages(content, webhook_id)
            if len(pages.text) > len(embedded):
                return pages
        except Exception as e:
            logger.warning(f"PDF page OCR failed for webhook {webhook_id}: {e}")

        try:
            text = self.vision.ocr_url(media_url).strip()
            if len(text) > len(embedded):
                return ExtractionResult(text=text, method=METHOD_PDF_VISION)
        except Exception as e:
            logger.warning(f"Whole-document OCR failed for webhook {webhook_id}: {e}")

        return ExtractionResult(text=embedded, method=METHOD_PDF_TEXT if embedded else METHOD_NONE)

    def ocr_pages(self, content: bytes, webhook_id: str) -> ExtractionResult:
        """Render and OCR up to max_pages pages, `concurrency` pages at a time."""
        with fitz.open(stream=content, filetype="pdf") as document:
            page_count = min(document.page_count, self.max_pages)
            page_texts = [""] * page_count

            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="pdf-ocr") as executor:
                for batch_start in range(0, page_count, self.concurrency):
                    batch_stop = min(batch_start + self.concurrency, page_count)
                    # PyMuPDF documents are not thread-safe; render here, OCR in the pool
                    rendered = render_pages(document, batch_start, batch_stop, self.scale)
                    texts = executor.map(lambda page: self._ocr_page(webhook_id, *page), rendered)
                    for (number, _), text in zip(rendered, texts):
                        page_texts[number - 1] = text

        pages_ocred = sum(1 for text in page_texts if text)
        combined = combine_pages(page_texts)
        logger.info(f"PDF page OCR: {pages_ocred}/{page_count} pages, {len(combined)} chars")
        return ExtractionResult(text=combined, method=METHOD_PDF_PAGES,
                                page_count=page_count, pages_ocred=pages_ocred)

    def _ocr_page(self, webhook_id: str, number: int, png: Optional[bytes]) -> str:
        """OCR one page image. Failures leave the page empty."""
        if png is None:
            return ""
        try:
            url = self._archive_page(webhook_id, number, png)
            text = self.vision.ocr_url(url) if url else self.vision.ocr_bytes(png)
            return text.strip()
        except Exception as e:
            logger.warning(f"OCR failed for page {number} of webhook {webhook_id}: {e}")
            return ""

    def _archive_page(self, webhook_id: str, number: int, png: bytes) -> Optional[str]:
        if not self.storage.enabled:
            return None
        try:
            return self.storage.store(png, PAGE_PATH.format(webhook_id=webhook_id, page=number), "image/png")
        except StorageError as e:
            logger.warning(f"Could not archive page {number}: {e}")
            return None
