"""Queue operations exposed to operators and the HTTP surface."""
import re
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from media_extractor import settings
from media_extractor.errors import ItemNotFound
from media_extractor.logging_conf import logger
from media_extractor.queue.models import QueueItem, QUEUED, EMAIL, MESSAGING, SOURCES
from media_extractor.resolver import describe_email_attachments, describe_messaging_attachment
from media_extractor.scheduler import Scheduler

# enqueue result statuses
ENQUEUED = "queued"
ALREADY_QUEUED = "already-queued"
NO_MEDIA = "no-media"
NOT_FOUND = "not-found"


def serialize(value: Any) -> Any:
    """JSON-safe copy with datetimes as ISO strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def item_to_dict(item: QueueItem) -> Dict[str, Any]:
    return serialize(asdict(item))


def phone_variants(phone: str) -> Set[str]:
    """Digit-only forms of a Brazilian number with and without country code and ninth digit."""
    clean = re.sub(r"\D", "", phone)
    variants = {clean}
    variants.add(clean[2:] if clean.startswith("55") else "55" + clean)
    for v in list(variants):
        if len(v) == 11 and v[2] == "9":
            variants.add(v[:2] + v[3:])
        if len(v) == 10:
            variants.add(v[:2] + "9" + v[2:])
        if len(v) == 13 and v[4] == "9":
            variants.add(v[:4] + v[5:])
        if len(v) == 12:
            variants.add(v[:4] + "9" + v[4:])
    variants.discard("")
    return variants


def phone_matches(source_phone: str, variants: Set[str]) -> bool:
    digits = re.sub(r"\D", "", source_phone or "")
    if not digits:
        return False
    return any(digits == v or digits.endswith(v) or v.endswith(digits) for v in variants)


class QueueService:
    """Enqueue, inspect and manage queue items; processing is delegated to the scheduler."""

    def __init__(self, store, scheduler: Scheduler):
        self.store = store
        self.scheduler = scheduler

    def enqueue(self, webhook_ids: Iterable[str], source: str = MESSAGING,
                attachment_index: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Create queue items for webhooks. Safe to repeat: an attachment is queued at most once.

        Returns:
            One result per webhook (email: per attachment) with a status of
            queued, already-queued, no-media or not-found
        """
        source = EMAIL if source == EMAIL else MESSAGING
        webhook_ids = list(webhook_ids)
        results = []
        for webhook_id in webhook_ids:
            webhook = self.store.get_webhook(source, webhook_id)
            if webhook is None:
                results.append({"webhook_id": webhook_id, "status": NOT_FOUND})
                continue

            payload = webhook["payload"] or {}
            received_at = webhook.get("received_at")
            if source == EMAIL:
                items = describe_email_attachments(webhook_id, payload, received_at, attachment_index)
            else:
                item = describe_messaging_attachment(webhook_id, payload, received_at)
                items = [item] if item else []

            if not items:
                results.append({"webhook_id": webhook_id, "status": NO_MEDIA})
                continue

            for item in items:
                item.max_attempts = settings.MAX_ATTEMPTS
                results.append(self._add(item))

        queued = sum(1 for r in results if r["status"] == ENQUEUED)
        logger.info(f"Enqueued {queued} attachment(s) from {len(webhook_ids)} {source} webhook(s)")
        return results

    def _add(self, item: QueueItem) -> Dict[str, Any]:
        result = {"webhook_id": item.webhook_id}
        if item.attachment_index is not None:
            result["attachment_index"] = item.attachment_index

        queue_id = self.store.add_item_if_absent(item)
        if queue_id is None:
            existing = self.store.find_item(item.webhook_source, item.webhook_id, item.attachment_index)
            result.update(status=ALREADY_QUEUED, existing_id=existing.id if existing else None)
        else:
            result.update(status=ENQUEUED, queue_id=queue_id)
        return result

    def process_next(self) -> Dict[str, Any]:
        return self.scheduler.process_next()

    def process_item(self, item_id: str) -> Dict[str, Any]:
        return self.scheduler.process_item(item_id)

    def retry(self, item_id: str) -> Dict[str, Any]:
        """Reset an item so it is picked up again, including terminal failures."""
        updated = self.store.update_item(
            item_id, status=QUEUED, attempts=0, error=None, next_retry_at=None, last_attempt_at=None,
        )
        if not updated:
            raise ItemNotFound(f"Queue item {item_id} not found")
        logger.info(f"Item {item_id} reset for retry")
        return {"success": True, "item_id": item_id, "status": QUEUED}

    def remove(self, item_id: str) -> Dict[str, Any]:
        if not self.store.delete_item(item_id):
            raise ItemNotFound(f"Queue item {item_id} not found")
        logger.info(f"Item {item_id} removed from queue")
        return {"success": True, "item_id": item_id}

    def list_queue(self, status: Optional[str] = None, media_type: Optional[str] = None,
                   limit: int = 200) -> Dict[str, Any]:
        items = self.store.list_items(status=status, media_type=media_type, limit=limit)
        return {"items": [item_to_dict(item) for item in items], "count": len(items)}

    def webhook_raw(self, queue_id: str) -> Dict[str, Any]:
        """The source webhook behind a queue item, for diagnosing resolution failures."""
        item = self.store.get_item(queue_id)
        if item is None:
            raise ItemNotFound(f"Queue item {queue_id} not found")
        source = item.webhook_source if item.webhook_source in SOURCES else MESSAGING
        webhook = self.store.get_webhook(source, item.webhook_id)
        if webhook is None:
            raise ItemNotFound(f"Webhook {item.webhook_id} not found for source {source}")

        return {
            "queue_item": {
                "id": item.id,
                "webhook_id": item.webhook_id,
                "webhook_source": source,
                "attachment_index": item.attachment_index,
                "media_url": item.media_url,
                "media_file_name": item.media_file_name,
                "media_mime_type": item.media_mime_type,
                "media_type": item.media_type,
            },
            "webhook": serialize(webhook["payload"]),
            "received_at": serialize(webhook.get("received_at")),
            "source": source,
        }

    def queue_keys(self) -> Dict[str, Any]:
        keys = self.store.queue_keys()
        return {"keys": keys, "count": len(keys)}

    def extracted_texts(self, phone: str) -> List[Dict[str, Any]]:
        """Texts extracted from attachments sent by a given phone number."""
        variants = phone_variants(phone)
        results = []
        for item in self.store.done_items_with_text():
            if not item.extracted_text or not item.extracted_text.strip():
                continue
            if not phone_matches(item.source_phone, variants):
                continue
            results.append({
                "id": item.id,
                "file_name": item.media_file_name,
                "media_type": item.media_type,
                "extracted_text": item.extracted_text,
                "processed_at": serialize(item.processed_at),
            })
        return results
