"""Queue data models."""
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

# Item status
QUEUED = "queued"
PROCESSING = "processing"
DONE = "done"
ERROR = "error"
STATUSES = (QUEUED, PROCESSING, DONE, ERROR)

# Webhook sources
MESSAGING = "messaging"
EMAIL = "email"
SOURCES = (MESSAGING, EMAIL)

# Media categories
IMAGE = "image"
AUDIO = "audio"
PDF = "pdf"
DOCX = "docx"
VIDEO = "video"
MEDIA_TYPES = (IMAGE, AUDIO, PDF, DOCX, VIDEO)

DEFAULT_MAX_ATTEMPTS = 3

# Delay before retry, indexed by attempts - 1; anything later uses the last entry
BACKOFF_SECONDS = (30, 120, 600)


def backoff(attempts: int) -> timedelta:
    """Delay before the next attempt after `attempts` failures."""
    index = min(max(attempts, 1), len(BACKOFF_SECONDS)) - 1
    return timedelta(seconds=BACKOFF_SECONDS[index])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueItem:
    """One attachment waiting for (or done with) text extraction."""

    webhook_id: str
    webhook_source: str = MESSAGING
    id: Optional[str] = None
    attachment_index: Optional[int] = None

    source_phone: str = ""
    media_url: Optional[str] = None
    media_file_name: str = ""
    media_mime_type: str = ""
    media_type: str = IMAGE
    media_type_detected: bool = False
    thumbnail_base64: Optional[str] = None

    status: str = QUEUED
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    extracted_text: Optional[str] = None
    processing_method: Optional[str] = None
    error: Optional[str] = None
    gcs_url: Optional[str] = None
    gcs_path: Optional[str] = None
    processed_at: Optional[datetime] = None

    received_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueItem":
        """Build an item from a store row, ignoring unknown columns."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in known})

    def to_row(self) -> Dict[str, Any]:
        """Column values for insertion (store assigns `id`)."""
        row = {f.name: getattr(self, f.name) for f in fields(self)}
        row.pop("id")
        return row

    def is_eligible(self, now: datetime) -> bool:
        """Queued and past any retry delay."""
        return self.status == QUEUED and (self.next_retry_at is None or self.next_retry_at <= now)

    @property
    def sort_key(self) -> datetime:
        return self.received_at or self.created_at

    @property
    def started_at(self) -> Optional[datetime]:
        return self.last_attempt_at or self.created_at
