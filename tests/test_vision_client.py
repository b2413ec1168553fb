import base64
from unittest.mock import MagicMock, patch

import pytest
import requests

from media_extractor.errors import OCRError
from media_extractor.vision_client import VisionClient


def _response(status=200, payload=None):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.json.return_value = payload or {}
    response.text = "error body"
    return response


@pytest.fixture
def tokens():
    provider = MagicMock()
    provider.token.return_value = "ya29.token"
    return provider


def test_ocr_url_returns_first_annotation(tokens):
    session = MagicMock()
    session.post.return_value = _response(payload={
        "responses": [{"textAnnotations": [{"description": "RECIBO\nR$ 150,00"}, {"description": "RECIBO"}]}]
    })

    text = VisionClient(token_provider=tokens, session=session).ocr_url("https://x/r.jpg")

    assert text == "RECIBO\nR$ 150,00"
    body = session.post.call_args.kwargs["json"]
    assert body["requests"][0]["image"] == {"source": {"imageUri": "https://x/r.jpg"}}
    assert body["requests"][0]["features"] == [{"type": "TEXT_DETECTION"}]
    assert session.post.call_args.kwargs["headers"] == {"Authorization": "Bearer ya29.token"}


def test_ocr_bytes_sends_inline_content(tokens):
    session = MagicMock()
    session.post.return_value = _response(payload={"responses": [{}]})

    assert VisionClient(token_provider=tokens, session=session).ocr_bytes(b"png") == ""
    image = session.post.call_args.kwargs["json"]["requests"][0]["image"]
    assert image == {"content": base64.b64encode(b"png").decode("ascii")}


def test_per_image_error_raises(tokens):
    session = MagicMock()
    session.post.return_value = _response(payload={"responses": [{"error": {"message": "Bad image data."}}]})

    with pytest.raises(OCRError, match="Bad image data"):
        VisionClient(token_provider=tokens, session=session).ocr_url("https://x/broken.jpg")


@patch("media_extractor.vision_client.time.sleep")
def test_retries_on_server_errors(sleep, tokens):
    session = MagicMock()
    session.post.side_effect = [
        _response(503),
        requests.ConnectionError("reset"),
        _response(payload={"responses": [{"textAnnotations": [{"description": "ok"}]}]}),
    ]

    assert VisionClient(token_provider=tokens, session=session).ocr_url("https://x/a.jpg") == "ok"
    assert session.post.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2]


@patch("media_extractor.vision_client.time.sleep")
def test_gives_up_after_max_retries(sleep, tokens):
    session = MagicMock()
    session.post.return_value = _response(429)

    with pytest.raises(OCRError):
        VisionClient(token_provider=tokens, session=session).ocr_url("https://x/a.jpg")
    assert session.post.call_count == 4


def test_client_error_is_not_retried(tokens):
    session = MagicMock()
    session.post.return_value = _response(403)

    with pytest.raises(OCRError, match="403"):
        VisionClient(token_provider=tokens, session=session).ocr_url("https://x/a.jpg")
    assert session.post.call_count == 1
