import itertools
import threading
from dataclasses import fields, replace
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import pytest

from media_extractor.queue.models import QueueItem, QUEUED, PROCESSING, DONE, MESSAGING, EMAIL, utcnow

_COLUMNS = frozenset(f.name for f in fields(QueueItem)) - {"id"}


class FakeStore:
    """In-memory stand-in for media_extractor.db.Database."""

    def __init__(self):
        self.items: Dict[str, QueueItem] = {}
        self.webhooks: Dict[str, Dict[str, Dict[str, Any]]] = {MESSAGING: {}, EMAIL: {}}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # helpers for tests

    def add(self, item: QueueItem) -> QueueItem:
        with self._lock:
            item.id = item.id or f"item-{next(self._ids)}"
            self.items[item.id] = replace(item)
            return replace(item)

    def add_webhook(self, source: str, webhook_id: str, payload: Dict[str, Any], received_at=None):
        self.webhooks[source][webhook_id] = {
            "id": webhook_id,
            "payload": payload,
            "received_at": received_at or utcnow(),
        }

    # Database interface

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            item = self.items.get(item_id)
            return replace(item) if item else None

    def find_item(self, webhook_source: str, webhook_id: str,
                  attachment_index: Optional[int] = None) -> Optional[QueueItem]:
        with self._lock:
            for item in self.items.values():
                if (item.webhook_source, item.webhook_id, item.attachment_index) == \
                        (webhook_source, webhook_id, attachment_index):
                    return replace(item)
            return None

    def add_item_if_absent(self, item: QueueItem) -> Optional[str]:
        with self._lock:
            if self.find_item(item.webhook_source, item.webhook_id, item.attachment_index):
                return None
            return self.add(item).id

    def update_item(self, item_id: str, **values: Any) -> bool:
        unknown = set(values) - _COLUMNS
        if unknown:
            raise ValueError(f"Unknown queue columns: {sorted(unknown)}")
        with self._lock:
            item = self.items.get(item_id)
            if item is None:
                return False
            self.items[item_id] = replace(item, **values)
            return True

    def delete_item(self, item_id: str) -> bool:
        with self._lock:
            return self.items.pop(item_id, None) is not None

    def query_eligible(self, limit: int = 50) -> List[QueueItem]:
        now = utcnow()
        with self._lock:
            matching = [replace(i) for i in self.items.values() if i.is_eligible(now)]
        matching.sort(key=lambda i: i.sort_key, reverse=True)
        return matching[:limit]

    def list_items(self, status: Optional[str] = None, media_type: Optional[str] = None,
                   limit: int = 200) -> List[QueueItem]:
        with self._lock:
            matching = [replace(i) for i in self.items.values()
                        if (status is None or i.status == status)
                        and (media_type is None or i.media_type == media_type)]
        matching.sort(key=lambda i: i.created_at, reverse=True)
        return matching[:limit]

    def claim_item(self, item_id: str) -> bool:
        with self._lock:
            item = self.items.get(item_id)
            now = utcnow()
            if item is None or not item.is_eligible(now):
                return False
            self.items[item_id] = replace(item, status=PROCESSING, last_attempt_at=now, next_retry_at=None)
            return True

    def mark_processing(self, item_id: str) -> bool:
        with self._lock:
            item = self.items.get(item_id)
            if item is None:
                return False
            self.items[item_id] = replace(item, status=PROCESSING, last_attempt_at=utcnow(), next_retry_at=None)
            return True

    def reset_stale(self, seconds: int) -> List[str]:
        cutoff = utcnow() - timedelta(seconds=seconds)
        reset = []
        with self._lock:
            for item_id, item in self.items.items():
                if item.status == PROCESSING and item.started_at < cutoff:
                    self.items[item_id] = replace(item, status=QUEUED)
                    reset.append(item_id)
        return reset

    def delete_without_url(self, statuses: Iterable[str]) -> List[str]:
        statuses = set(statuses)
        with self._lock:
            doomed = [i.id for i in self.items.values() if i.status in statuses and not i.media_url]
            for item_id in doomed:
                del self.items[item_id]
        return doomed

    def queue_keys(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {"webhook_id": i.webhook_id, "webhook_source": i.webhook_source,
                 "attachment_index": i.attachment_index}
                for i in self.items.values()
            ]

    def done_items_with_text(self, limit: int = 500) -> List[QueueItem]:
        with self._lock:
            return [replace(i) for i in self.items.values() if i.status == DONE and i.extracted_text][:limit]

    def get_webhook(self, source: str, webhook_id: str) -> Optional[Dict[str, Any]]:
        if source not in self.webhooks:
            raise ValueError(f"Unknown webhook source: {source}")
        return self.webhooks[source].get(webhook_id)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def make_item(store):
    def _make(**overrides) -> QueueItem:
        values = {
            "webhook_id": "wh-1",
            "media_url": "https://cdn.example.com/file.jpg",
            "media_file_name": "file.jpg",
            "media_mime_type": "image/jpeg",
        }
        values.update(overrides)
        return store.add(QueueItem(**values))
    return _make


def messaging_payload(url="https://cdn.example.com/photo.jpg", message_type="Image",
                      content_type="image/jpeg", name="photo.jpg", phone="5511987654321"):
    return {
        "Payload": {
            "Content": {
                "Contact": {"PhoneNumber": phone},
                "Message": {
                    "MessageType": message_type,
                    "File": {"Url": url, "ContentType": content_type, "OriginalName": name},
                },
            },
        },
    }
