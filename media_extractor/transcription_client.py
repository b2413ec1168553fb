"""AssemblyAI speech-to-text client."""
import time
from typing import Callable, Optional, Dict, Any

import requests

from media_extractor import settings
from media_extractor.errors import TranscriptionError, TranscriptionTimeout, TranscriptionCancelled
from media_extractor.logging_conf import logger


class TranscriptionClient:
    """Upload audio, start a transcript job and poll it to completion."""

    def __init__(self, api_key: Optional[str] = None, session: Optional[requests.Session] = None,
                 poll_interval: Optional[float] = None, max_polls: Optional[int] = None,
                 language: Optional[str] = None, sleep: Callable[[float], None] = time.sleep):
        self.base_url = "https://api.assemblyai.com/v2"
        self.api_key = api_key or settings.ASSEMBLYAI_API_KEY
        self.session = session or requests.Session()
        self.poll_interval = settings.TRANSCRIPTION_POLL_INTERVAL if poll_interval is None else poll_interval
        self.max_polls = max_polls or settings.TRANSCRIPTION_MAX_POLLS
        self.language = language or settings.TRANSCRIPTION_LANGUAGE
        self._sleep = sleep

    def transcribe(self, audio: bytes, cancelled: Optional[Callable[[], bool]] = None) -> str:
        """
        Transcribe audio bytes.

        Args:
            audio: Raw audio file content
            cancelled: Checked before every poll; a True result abandons the job

        Returns:
            Transcript text (may be empty)

        Raises:
            TranscriptionError if the service reports an error,
            TranscriptionTimeout after max_polls, TranscriptionCancelled on cancel
        """
        if not self.api_key:
            raise TranscriptionError("ASSEMBLYAI_API_KEY is not configured")

        upload_url = self._post("/upload", data=audio,
                                headers={"Content-Type": "application/octet-stream"})["upload_url"]
        transcript_id = self._post("/transcript",
                                   json={"audio_url": upload_url, "language_code": self.language})["id"]
        logger.info(f"Transcript {transcript_id} submitted ({len(audio)} bytes)")
        return self._wait(transcript_id, cancelled)

    def _wait(self, transcript_id: str, cancelled: Optional[Callable[[], bool]]) -> str:
        deadline = time.monotonic() + self.poll_interval * self.max_polls + settings.FETCH_TIMEOUT
        for _ in range(self.max_polls):
            self._sleep(self.poll_interval)
            if cancelled is not None and cancelled():
                raise TranscriptionCancelled(f"Transcript {transcript_id} abandoned")

            job = self._get(f"/transcript/{transcript_id}")
            status = job.get("status")
            if status == "completed":
                text = job.get("text") or ""
                logger.info(f"Transcript {transcript_id} completed: {len(text)} chars")
                return text
            if status == "error":
                raise TranscriptionError(f"AssemblyAI error: {job.get('error')}")
            if time.monotonic() > deadline:
                break
        raise TranscriptionTimeout(f"Transcript {transcript_id} not ready after {self.max_polls} polls")

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"authorization": self.api_key}
        if extra:
            headers.update(extra)
        return headers

    def _post(self, endpoint: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> Dict[str, Any]:
        return self._call("POST", endpoint, headers=self._headers(headers), **kwargs)

    def _get(self, endpoint: str) -> Dict[str, Any]:
        return self._call("GET", endpoint, headers=self._headers())

    def _call(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.request(method=method, url=url, timeout=settings.FETCH_TIMEOUT, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise TranscriptionError(f"AssemblyAI request {method} {endpoint} failed: {e}") from e
