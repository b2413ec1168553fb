"""Persist extraction outcomes on queue items."""
from typing import Optional, Dict, Any

from media_extractor.errors import StorageError
from media_extractor.extraction.result import ExtractionResult
from media_extractor.logging_conf import logger
from media_extractor.queue.models import QueueItem, DONE, ERROR, QUEUED, backoff, utcnow
from media_extractor.storage import ObjectStorage

ARCHIVE_PATH = "file-processing/{media_type}/{webhook_id}/{file_name}"
MAX_ERROR_LENGTH = 500


class ResultWriter:
    """Writes success and failure state back to the store."""

    def __init__(self, store, storage: ObjectStorage):
        self.store = store
        self.storage = storage

    def archive(self, item: QueueItem, content: bytes) -> Dict[str, Optional[str]]:
        """Upload the original binary. Never raises; a failure leaves the pointers empty."""
        if not self.storage.enabled:
            return {"gcs_url": None, "gcs_path": None}
        path = ARCHIVE_PATH.format(
            media_type=item.media_type,
            webhook_id=item.webhook_id,
            file_name=item.media_file_name or item.id,
        )
        try:
            url = self.storage.store(content, path, item.media_mime_type or None)
            return {"gcs_url": url, "gcs_path": path}
        except StorageError as e:
            logger.warning(f"Archive upload failed for item {item.id}: {e}")
            return {"gcs_url": None, "gcs_path": None}

    def write_success(self, item: QueueItem, result: ExtractionResult, content: bytes) -> Dict[str, Any]:
        values = {
            "status": DONE,
            "extracted_text": result.text or "",
            "processing_method": result.method,
            "error": None,
            "next_retry_at": None,
            "processed_at": utcnow(),
        }
        values.update(self.archive(item, content))
        self.store.update_item(item.id, **values)
        logger.info(f"Done: {item.id} - {len(values['extracted_text'])} chars via {result.method}")
        return values

    def write_failure(self, item: QueueItem, error: Exception) -> Dict[str, Any]:
        """Record a failed attempt and schedule a retry or give up."""
        now = utcnow()
        attempts = item.attempts + 1
        values = {
            "attempts": attempts,
            "error": (str(error) or error.__class__.__name__)[:MAX_ERROR_LENGTH],
            "last_attempt_at": now,
        }
        if attempts >= item.max_attempts:
            values["status"] = ERROR
            values["next_retry_at"] = None
            logger.error(f"Failed permanently: {item.id} after {attempts} attempts - {values['error']}")
        else:
            values["status"] = QUEUED
            values["next_retry_at"] = now + backoff(attempts)
            logger.warning(f"Failed: {item.id} (attempt {attempts}/{item.max_attempts}) - {values['error']}")
            if not getattr(error, "retryable", True):
                logger.warning(f"{error.__class__.__name__} for {item.id} is unlikely to clear on retry")
        self.store.update_item(item.id, **values)
        return values
