"""Per-item extraction pipeline: resolve, fetch, classify, extract, persist."""
from dataclasses import replace
from typing import Optional, Dict, Any

from media_extractor.errors import MissingMediaReference
from media_extractor.extraction.engine import ExtractionEngine
from media_extractor.extraction.result import ExtractionResult
from media_extractor.fetcher import ContentFetcher, FetchResult
from media_extractor.format_classifier import resolve_media_type
from media_extractor.logging_conf import logger
from media_extractor.queue.models import QueueItem
from media_extractor.resolver import resolve_media_url
from media_extractor.result_writer import ResultWriter
from media_extractor.storage import ObjectStorage


class AttachmentPipeline:
    """Runs one claimed queue item through every stage.

    Each stage either returns its value or raises an error from
    `media_extractor.errors`; `process` does not catch anything so the caller
    can apply retry bookkeeping.
    """

    def __init__(self, store, fetcher: Optional[ContentFetcher] = None,
                 engine: Optional[ExtractionEngine] = None,
                 storage: Optional[ObjectStorage] = None,
                 writer: Optional[ResultWriter] = None):
        self.store = store
        self.storage = storage or ObjectStorage()
        self.fetcher = fetcher or ContentFetcher()
        self.engine = engine or ExtractionEngine(storage=self.storage)
        self.writer = writer or ResultWriter(store, self.storage)

    def process(self, item: QueueItem) -> Dict[str, Any]:
        """
        Extract text for a claimed item and mark it done.

        Returns:
            Summary with processing_method, chars, gcs_url and media_type

        Raises:
            Any pipeline error; the item is left in processing for the caller to settle
        """
        url = self.resolve(item)
        fetched = self.fetch(item, url)
        item = self.classify(item, fetched)
        result = self.extract(item, fetched)
        values = self.writer.write_success(item, result, fetched.content)
        return {
            "processing_method": result.method,
            "chars": len(result.text),
            "gcs_url": values.get("gcs_url"),
            "media_type": item.media_type,
        }

    def resolve(self, item: QueueItem) -> str:
        if item.media_url:
            return item.media_url

        webhook = self.store.get_webhook(item.webhook_source, item.webhook_id)
        if webhook is None:
            raise MissingMediaReference(f"Webhook {item.webhook_id} ({item.webhook_source}) not found")

        url = resolve_media_url(item, webhook["payload"] or {})
        self.store.update_item(item.id, media_url=url)
        item.media_url = url
        return url

    def fetch(self, item: QueueItem, url: str) -> FetchResult:
        fetched = self.fetcher.fetch(url)
        redirect_info = " [redirect]" if fetched.redirected else ""
        logger.info(f"Fetched {item.id}: {item.media_file_name} | {len(fetched.content)}b "
                    f"{fetched.content_type or '-'}{redirect_info}")
        return fetched

    def classify(self, item: QueueItem, fetched: FetchResult) -> QueueItem:
        """Correct the stored media type when the bytes say otherwise."""
        detected = resolve_media_type(fetched.content, fetched.content_type, item.media_file_name)
        if not detected or detected == item.media_type:
            return item

        logger.info(f"Media type for {item.id} corrected: {item.media_type} -> {detected}")
        self.store.update_item(item.id, media_type=detected, media_type_detected=True)
        return replace(item, media_type=detected, media_type_detected=True)

    def extract(self, item: QueueItem, fetched: FetchResult) -> ExtractionResult:
        return self.engine.extract(
            item,
            fetched.content,
            fetched.url,
            cancelled=lambda: self.store.get_item(item.id) is None,
        )
