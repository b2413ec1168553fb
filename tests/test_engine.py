from unittest.mock import MagicMock, patch

import pytest

from media_extractor.errors import OCRError, UnsupportedMediaType
from media_extractor.extraction.engine import ExtractionEngine
from media_extractor.extraction.result import ExtractionResult
from media_extractor.queue.models import QueueItem


@pytest.fixture
def engine():
    return ExtractionEngine(vision=MagicMock(), transcriber=MagicMock(), storage=MagicMock(), pdf=MagicMock())


def _item(media_type, mime=""):
    return QueueItem(webhook_id="wh-1", id="q1", media_type=media_type, media_mime_type=mime)


@pytest.mark.parametrize("media_type", ["image", "video"])
def test_image_and_video_go_to_ocr_by_url(engine, media_type):
    engine.vision.ocr_url.return_value = "NOTA FISCAL 123"

    result = engine.extract(_item(media_type), b"bytes", "https://x/final.jpg")

    assert result.text == "NOTA FISCAL 123"
    assert result.method == "google-vision-ocr"
    engine.vision.ocr_url.assert_called_once_with("https://x/final.jpg")


def test_audio_is_transcribed_with_cancel_hook(engine):
    engine.transcriber.transcribe.return_value = "bom dia"
    cancelled = lambda: False

    result = engine.extract(_item("audio"), b"OggS....", "https://x/v.ogg", cancelled=cancelled)

    assert result.text == "bom dia"
    assert result.method == "assemblyai"
    engine.transcriber.transcribe.assert_called_once_with(b"OggS....", cancelled=cancelled)


def test_pdf_is_delegated(engine):
    expected = ExtractionResult(text="text", method="embedded-text")
    engine.pdf.extract.return_value = expected

    assert engine.extract(_item("pdf"), b"%PDF", "https://x/a.pdf") is expected
    engine.pdf.extract.assert_called_once_with(b"%PDF", "https://x/a.pdf", "wh-1")


def test_word_documents_use_declared_mime(engine):
    expected = ExtractionResult(text="doc text", method="word-legacy")
    with patch("media_extractor.extraction.engine.extract_word_text", return_value=expected) as extract:
        assert engine.extract(_item("docx", "application/msword"), b"data", "https://x/a.doc") is expected
    extract.assert_called_once_with(b"data", "application/msword")


def test_unknown_media_type(engine):
    with pytest.raises(UnsupportedMediaType):
        engine.extract(_item("spreadsheet"), b"data", "https://x/a.xls")


def test_errors_propagate(engine):
    engine.vision.ocr_url.side_effect = OCRError("quota exceeded")
    with pytest.raises(OCRError):
        engine.extract(_item("image"), b"data", "https://x/a.jpg")
