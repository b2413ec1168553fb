"""Claims queued items and drives them through the pipeline with retry and backoff."""
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Tuple

from media_extractor import settings
from media_extractor.errors import ExtractorError, ItemNotFound, ItemBusy
from media_extractor.logging_conf import logger
from media_extractor.pipeline import AttachmentPipeline
from media_extractor.queue.models import QueueItem, QUEUED, ERROR, utcnow

CANDIDATE_LIMIT = 50


class ClaimRegistry:
    """In-process advisory lock: the set of item ids currently being worked on."""

    def __init__(self):
        self._held = set()
        self._lock = threading.Lock()

    def try_claim(self, item_id: str) -> bool:
        with self._lock:
            if item_id in self._held:
                return False
            self._held.add(item_id)
            return True

    def release(self, item_id: str) -> None:
        with self._lock:
            self._held.discard(item_id)

    def held(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._held


class Scheduler:
    """Polling worker over the file processing queue."""

    def __init__(self, store, pipeline: Optional[AttachmentPipeline] = None,
                 claims: Optional[ClaimRegistry] = None,
                 concurrency: Optional[int] = None, max_per_pass: Optional[int] = None,
                 poll_interval: Optional[float] = None, initial_delay: Optional[float] = None,
                 stale_seconds: Optional[int] = None):
        self.store = store
        self.pipeline = pipeline or AttachmentPipeline(store)
        self.claims = claims or ClaimRegistry()
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.max_per_pass = max_per_pass or settings.WORKER_MAX_PER_PASS
        self.poll_interval = settings.WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        self.initial_delay = settings.WORKER_INITIAL_DELAY if initial_delay is None else initial_delay
        self.stale_seconds = settings.STALE_PROCESSING_SECONDS if stale_seconds is None else stale_seconds
        self.running = False
        self.thread = None
        self._stop = threading.Event()
        self._pass_lock = threading.Lock()

    # Background loop

    def start(self):
        """Start the scheduling loop in a background thread."""
        if self.running:
            logger.warning("Scheduler is already running")
            return

        self.running = True
        self._stop.clear()
        self.thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self.thread.start()
        logger.info(f"Scheduler started (interval: {self.poll_interval}s, concurrency: {self.concurrency})")

    def stop(self):
        """Stop the scheduling loop."""
        if not self.running:
            return

        self.running = False
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Scheduler stopped")

    def _run(self):
        """Main scheduler loop."""
        if self._stop.wait(self.initial_delay):
            return

        while self.running:
            try:
                processed = self.run_pass()
                if processed:
                    logger.info(f"Scheduler pass processed {processed} items")
            except Exception as e:
                logger.error(f"Scheduler error: {e}", exc_info=True)

            if self._stop.wait(self.poll_interval):
                break

    # Hygiene

    def sweep_missing_urls(self, statuses: Iterable[str] = (QUEUED,)) -> List[str]:
        """Delete items in `statuses` that can never be processed (no media URL)."""
        removed = self.store.delete_without_url(list(statuses))
        if removed:
            logger.info(f"Removed {len(removed)} items without media URL")
        return removed

    def startup_cleanup(self) -> int:
        return len(self.sweep_missing_urls([QUEUED, ERROR]))

    def reset_stale(self) -> List[str]:
        return self.store.reset_stale(self.stale_seconds)

    def _candidates(self) -> Tuple[List[QueueItem], int]:
        """Eligible queued items, newest first, after deleting those without a URL."""
        removed = 0
        candidates = []
        for item in self.store.query_eligible(limit=CANDIDATE_LIMIT):
            if item.media_url:
                candidates.append(item)
            elif self.store.delete_item(item.id):
                removed += 1
                logger.info(f"Removed item {item.id} without media URL from the queue")
        return candidates, removed

    # Processing

    def process_next(self) -> Dict[str, Any]:
        """Claim and process one eligible item."""
        self.reset_stale()
        candidates, removed = self._candidates()

        for item in candidates:
            if not self.claims.try_claim(item.id):
                continue
            try:
                # Loses if another process got there first or the item failed
                # and went back into backoff since the candidates were read
                if not self.store.claim_item(item.id):
                    continue
                outcome = self._run_claimed(item.id)
                outcome["skipped_no_url"] = removed
                return outcome
            finally:
                self.claims.release(item.id)

        return {"processed": False, "message": "No eligible items in the queue", "skipped_no_url": removed}

    def process_item(self, item_id: str) -> Dict[str, Any]:
        """Process a specific item now, ignoring its retry delay.

        Raises:
            ItemNotFound, ItemBusy
        """
        busy = ItemBusy(f"Queue item {item_id} is already being processed")
        if self.claims.held(item_id):
            raise busy
        if self.store.get_item(item_id) is None:
            raise ItemNotFound(f"Queue item {item_id} not found")
        if not self.claims.try_claim(item_id):
            raise busy
        try:
            if not self.store.mark_processing(item_id):
                raise ItemNotFound(f"Queue item {item_id} not found")
            return self._run_claimed(item_id)
        finally:
            self.claims.release(item_id)

    def _run_claimed(self, item_id: str) -> Dict[str, Any]:
        """Run the pipeline for an item this process holds; failures go through retry bookkeeping."""
        item = self.store.get_item(item_id)
        if item is None:
            return {"processed": False, "item_id": item_id, "message": "Item removed before processing"}

        try:
            summary = self.pipeline.process(item)
        except Exception as e:
            logger.error(f"Processing {item_id} failed: {e}", exc_info=not isinstance(e, ExtractorError))
            values = self.pipeline.writer.write_failure(item, e)
            return {
                "processed": True,
                "success": False,
                "item_id": item_id,
                "error": values["error"],
                "status": values["status"],
                "attempts": values["attempts"],
            }
        return {"processed": True, "success": True, "item_id": item_id, **summary}

    def _safe_process_next(self) -> Dict[str, Any]:
        try:
            return self.process_next()
        except Exception as e:
            logger.error(f"Worker error: {e}", exc_info=True)
            return {"processed": False, "error": str(e)}

    def run_pass(self) -> int:
        """One scheduling pass: batches of `concurrency` items up to `max_per_pass`.

        Returns the number of items processed, 0 if a pass is already running.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("Scheduling pass already in progress, skipping")
            return 0
        try:
            if not self.store.query_eligible(limit=1):
                return 0

            total = 0
            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="worker") as executor:
                while total < self.max_per_pass:
                    batch_size = min(self.concurrency, self.max_per_pass - total)
                    outcomes = list(executor.map(lambda _: self._safe_process_next(), range(batch_size)))
                    batch_processed = sum(1 for outcome in outcomes if outcome.get("processed"))
                    total += batch_processed
                    if not batch_processed:
                        break
            return total
        finally:
            self._pass_lock.release()

    def run_cron(self, max_items: Optional[int] = None) -> Dict[str, Any]:
        """Serial processing for an external periodic trigger."""
        max_items = max_items or settings.CRON_MAX_ITEMS
        results = []
        for _ in range(max_items):
            try:
                outcome = self.process_next()
            except Exception as e:
                logger.error(f"Cron run stopped: {e}", exc_info=True)
                results.append({"success": False, "error": str(e)})
                break
            if not outcome.get("processed"):
                break
            results.append({
                "item_id": outcome.get("item_id"),
                "method": outcome.get("processing_method", ""),
                "success": outcome.get("success", False),
            })

        return {
            "processed": sum(1 for r in results if r["success"]),
            "total": len(results),
            "results": results,
            "timestamp": utcnow().isoformat(),
        }
