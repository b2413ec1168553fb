"""Download attachment content."""
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import requests

from media_extractor import settings
from media_extractor.errors import FetchError
from media_extractor.logging_conf import logger

# Some link services answer with an HTML page carrying a meta refresh
# instead of a real redirect; only the head of the page is scanned.
HTML_SCAN_BYTES = 2000
_META_REFRESH = (
    re.compile(r"url='([^']+)'", re.IGNORECASE),
    re.compile(r'url="([^"]+)"', re.IGNORECASE),
)


@dataclass
class FetchResult:
    content: bytes
    content_type: str
    redirected: bool
    url: str


class ContentFetcher:
    """Fetches attachment bytes, following HTML meta-refresh pages once."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[int] = None):
        self.session = session or requests.Session()
        self.timeout = timeout or settings.FETCH_TIMEOUT

    def fetch(self, url: str) -> FetchResult:
        """
        Download `url`.

        Raises:
            FetchError on network errors, timeouts and non-2xx responses
        """
        content, content_type = self._download(url)
        redirected = False

        target = self._meta_refresh_target(content)
        if target:
            logger.info(f"HTML redirect page at {url}, following to {target}")
            content, content_type = self._download(target)
            url = target
            redirected = True

        return FetchResult(content=content, content_type=content_type, redirected=redirected, url=url)

    def _download(self, url: str) -> Tuple[bytes, str]:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(f"Download failed for {url}: {e}") from e
        content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
        return response.content, content_type

    def _meta_refresh_target(self, content: bytes) -> Optional[str]:
        if not content or content[:1] != b"<":
            return None
        head = content[:HTML_SCAN_BYTES].decode("utf-8", errors="replace")
        for pattern in _META_REFRESH:
            match = pattern.search(head)
            if match:
                return match.group(1)
        return None
