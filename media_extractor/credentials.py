"""Google service account credentials shared by OCR and storage."""
import threading
from typing import Optional, Sequence

import google.auth
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from media_extractor import settings

VISION_SCOPES = ("https://www.googleapis.com/auth/cloud-vision",)


def _private_key() -> str:
    """Private key from env; tolerates surrounding quotes and escaped newlines."""
    key = (settings.GOOGLE_PRIVATE_KEY or "").strip()
    if len(key) >= 2 and key[0] == key[-1] and key[0] in "\"'":
        key = key[1:-1]
    return key.replace("\\n", "\n")


def service_account_credentials(scopes: Optional[Sequence[str]] = None):
    """Credentials from GOOGLE_CLIENT_EMAIL/GOOGLE_PRIVATE_KEY, or None if not configured."""
    if not (settings.GOOGLE_CLIENT_EMAIL and settings.GOOGLE_PRIVATE_KEY):
        return None
    info = {
        "type": "service_account",
        "client_email": settings.GOOGLE_CLIENT_EMAIL,
        "private_key": _private_key(),
        "token_uri": "https://oauth2.googleapis.com/token",
    }
    return service_account.Credentials.from_service_account_info(info, scopes=scopes)


class AccessTokenProvider:
    """Caches credentials and hands out a fresh bearer token on demand."""

    def __init__(self, scopes: Sequence[str] = VISION_SCOPES, credentials=None):
        self.scopes = list(scopes)
        self._credentials = credentials
        self._lock = threading.Lock()

    def _load(self):
        credentials = service_account_credentials(self.scopes)
        if credentials is None:
            credentials, _ = google.auth.default(scopes=self.scopes)
        return credentials

    def token(self) -> str:
        with self._lock:
            if self._credentials is None:
                self._credentials = self._load()
            if not self._credentials.valid:
                self._credentials.refresh(Request())
            return self._credentials.token
