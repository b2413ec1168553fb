"""Google Cloud Vision OCR client."""
import base64
import time
from typing import Optional, Dict, Any

import requests
from google.auth.exceptions import GoogleAuthError

from media_extractor import settings
from media_extractor.credentials import AccessTokenProvider
from media_extractor.errors import OCRError
from media_extractor.logging_conf import logger

MAX_RETRIES = 3


class VisionClient:
    """Runs TEXT_DETECTION on an image URL or inline image bytes."""

    def __init__(self, token_provider: Optional[AccessTokenProvider] = None,
                 session: Optional[requests.Session] = None, timeout: Optional[int] = None):
        self.base_url = "https://vision.googleapis.com/v1"
        self.tokens = token_provider or AccessTokenProvider()
        self.session = session or requests.Session()
        self.timeout = timeout or settings.OCR_TIMEOUT

    def ocr_url(self, url: str) -> str:
        """Detected text for the image at `url`; empty string when none."""
        logger.info(f"Vision OCR for {url}")
        return self._annotate({"source": {"imageUri": url}})

    def ocr_bytes(self, content: bytes) -> str:
        """Detected text for inline image bytes; empty string when none."""
        return self._annotate({"content": base64.b64encode(content).decode("ascii")})

    def _annotate(self, image: Dict[str, Any]) -> str:
        body = {
            "requests": [{
                "image": image,
                "features": [{"type": "TEXT_DETECTION"}],
            }]
        }
        data = self._request("/images:annotate", body)
        responses = data.get("responses") or [{}]
        first = responses[0]
        if first.get("error"):
            raise OCRError(f"Vision API error: {first['error'].get('message', first['error'])}")

        annotations = first.get("textAnnotations") or []
        if not annotations:
            logger.info("Vision OCR found no text")
            return ""
        text = annotations[0].get("description") or ""
        logger.info(f"Vision OCR extracted {len(text)} chars")
        return text

    def _request(self, endpoint: str, body: Dict[str, Any], retry_count: int = 0) -> Dict[str, Any]:
        """POST with retry on rate limits, server errors and connection failures."""
        url = f"{self.base_url}{endpoint}"
        try:
            headers = {"Authorization": f"Bearer {self.tokens.token()}"}
        except GoogleAuthError as e:
            raise OCRError(f"Could not obtain Vision access token: {e}") from e

        try:
            response = self.session.post(url, json=body, headers=headers, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            if retry_count < MAX_RETRIES:
                time.sleep(2 ** retry_count)
                return self._request(endpoint, body, retry_count + 1)
            raise OCRError(f"Vision API unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            if retry_count < MAX_RETRIES:
                wait_time = 2 ** retry_count
                logger.warning(f"Vision API returned {response.status_code}. Retrying in {wait_time}s...")
                time.sleep(wait_time)
                return self._request(endpoint, body, retry_count + 1)

        if not response.ok:
            raise OCRError(f"Vision API request failed: {response.status_code} {response.text[:200]}")
        return response.json()
