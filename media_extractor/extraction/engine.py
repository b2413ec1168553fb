"""Dispatch extraction by media type."""
from typing import Callable, Optional

from media_extractor.errors import UnsupportedMediaType
from media_extractor.extraction.docx import extract_word_text
from media_extractor.extraction.pdf import PdfExtractor
from media_extractor.extraction.result import ExtractionResult, METHOD_IMAGE_OCR, METHOD_TRANSCRIPTION
from media_extractor.logging_conf import logger
from media_extractor.queue.models import QueueItem, IMAGE, AUDIO, PDF, DOCX, VIDEO
from media_extractor.storage import ObjectStorage
from media_extractor.transcription_client import TranscriptionClient
from media_extractor.vision_client import VisionClient


class ExtractionEngine:
    """Turns downloaded bytes into text. Errors propagate to the caller's retry handling."""

    def __init__(self, vision: Optional[VisionClient] = None,
                 transcriber: Optional[TranscriptionClient] = None,
                 storage: Optional[ObjectStorage] = None,
                 pdf: Optional[PdfExtractor] = None):
        self.vision = vision or VisionClient()
        self.transcriber = transcriber or TranscriptionClient()
        self.storage = storage or ObjectStorage()
        self.pdf = pdf or PdfExtractor(self.vision, self.storage)

    def extract(self, item: QueueItem, content: bytes, media_url: str,
                cancelled: Optional[Callable[[], bool]] = None) -> ExtractionResult:
        """
        Extract text for an item whose media type has already been verified.

        Args:
            item: Queue item (media_type, webhook_id and media_mime_type are used)
            content: Downloaded bytes
            media_url: Final URL the bytes came from; OCR services read from it
            cancelled: Polled by long-running jobs to abandon work early
        """
        media_type = item.media_type
        logger.info(f"Extracting {media_type} for item {item.id} ({len(content)} bytes)")

        if media_type in (IMAGE, VIDEO):
            return ExtractionResult(text=self.vision.ocr_url(media_url), method=METHOD_IMAGE_OCR)
        if media_type == AUDIO:
            return ExtractionResult(text=self.transcriber.transcribe(content, cancelled=cancelled),
                                    method=METHOD_TRANSCRIPTION)
        if media_type == PDF:
            return self.pdf.extract(content, media_url, item.webhook_id)
        if media_type == DOCX:
            return extract_word_text(content, item.media_mime_type)
        raise UnsupportedMediaType(f"No extractor for media type {media_type!r}")
