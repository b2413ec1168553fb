import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from media_extractor.errors import ItemBusy, ItemNotFound, OCRError
from media_extractor.extraction.result import ExtractionResult
from media_extractor.fetcher import FetchResult
from media_extractor.pipeline import AttachmentPipeline
from media_extractor.queue.models import utcnow
from media_extractor.scheduler import CANDIDATE_LIMIT, ClaimRegistry, Scheduler

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 32


@pytest.fixture
def fetcher():
    fetcher = MagicMock()
    fetcher.fetch.side_effect = lambda url: FetchResult(content=JPEG, content_type="image/jpeg",
                                                        redirected=False, url=url)
    return fetcher


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.extract.return_value = ExtractionResult(text="text", method="google-vision-ocr")
    return engine


@pytest.fixture
def scheduler(store, fetcher, engine):
    storage = MagicMock()
    storage.enabled = False
    pipeline = AttachmentPipeline(store, fetcher=fetcher, engine=engine, storage=storage)
    return Scheduler(store, pipeline=pipeline, concurrency=2, max_per_pass=3,
                     poll_interval=0.05, initial_delay=0, stale_seconds=300)


def _ago(**kwargs):
    return utcnow() - timedelta(**kwargs)


def test_claim_registry():
    claims = ClaimRegistry()
    assert claims.try_claim("a")
    assert not claims.try_claim("a")
    assert claims.held("a")
    claims.release("a")
    assert not claims.held("a")
    assert claims.try_claim("a")


def test_process_next_picks_newest_eligible_item(scheduler, store, make_item):
    old = make_item(webhook_id="old", received_at=_ago(hours=2))
    new = make_item(webhook_id="new", received_at=_ago(minutes=1))

    outcome = scheduler.process_next()

    assert outcome["processed"] and outcome["success"]
    assert outcome["item_id"] == new.id
    assert store.get_item(new.id).status == "done"
    assert store.get_item(old.id).status == "queued"


def test_retry_delay_is_respected(scheduler, fetcher, make_item):
    make_item(next_retry_at=utcnow() + timedelta(seconds=30))

    outcome = scheduler.process_next()

    assert outcome["processed"] is False
    fetcher.fetch.assert_not_called()


def test_items_without_url_are_deleted_not_dispatched(scheduler, store, fetcher, make_item):
    empty = make_item(webhook_id="empty", media_url=None, received_at=_ago(minutes=1))
    blank = make_item(webhook_id="blank", media_url="", received_at=_ago(minutes=2))
    good = make_item(webhook_id="good", received_at=_ago(minutes=3))

    outcome = scheduler.process_next()

    assert outcome["item_id"] == good.id
    assert outcome["skipped_no_url"] == 2
    assert store.get_item(empty.id) is None
    assert store.get_item(blank.id) is None
    fetcher.fetch.assert_called_once_with(good.media_url)


def test_stale_processing_items_are_reset(scheduler, store, make_item):
    stuck = make_item(webhook_id="stuck", status="processing", last_attempt_at=_ago(minutes=10))
    busy = make_item(webhook_id="busy", status="processing", last_attempt_at=_ago(minutes=1))

    assert scheduler.reset_stale() == [stuck.id]
    assert store.get_item(stuck.id).status == "queued"
    assert store.get_item(busy.id).status == "processing"


def test_stale_item_is_processed_on_next_pass(scheduler, store, make_item):
    stuck = make_item(status="processing", last_attempt_at=_ago(minutes=6))

    outcome = scheduler.process_next()

    assert outcome["item_id"] == stuck.id
    assert store.get_item(stuck.id).status == "done"


def test_failure_is_recorded_and_claim_released(scheduler, store, engine, make_item):
    engine.extract.side_effect = OCRError("Vision API request failed: 403")
    item = make_item()

    outcome = scheduler.process_next()

    assert outcome == {
        "processed": True, "success": False, "item_id": item.id,
        "error": "Vision API request failed: 403", "status": "queued", "attempts": 1,
        "skipped_no_url": 0,
    }
    saved = store.get_item(item.id)
    assert saved.status == "queued"
    assert saved.next_retry_at > utcnow()
    assert not scheduler.claims.held(item.id)


def test_candidate_back_in_backoff_is_not_claimed(scheduler, store, engine, make_item, monkeypatch):
    engine.extract.side_effect = OCRError("Vision API request failed: 503")
    item = make_item()
    snapshot = store.query_eligible()

    assert scheduler.process_next()["attempts"] == 1
    # A second worker still holding the earlier candidate list
    monkeypatch.setattr(store, "query_eligible", lambda limit=50: snapshot)
    outcome = scheduler.process_next()

    assert outcome["processed"] is False
    assert engine.extract.call_count == 1
    saved = store.get_item(item.id)
    assert (saved.status, saved.attempts) == ("queued", 1)
    assert saved.next_retry_at > utcnow()


def test_items_in_backoff_do_not_crowd_out_eligible_ones(scheduler, store, make_item):
    waiting_until = utcnow() + timedelta(minutes=5)
    for n in range(CANDIDATE_LIMIT + 10):
        make_item(webhook_id=f"waiting-{n}", received_at=_ago(seconds=n), next_retry_at=waiting_until)
    ready = make_item(webhook_id="ready", received_at=_ago(days=1))

    outcome = scheduler.process_next()

    assert outcome["item_id"] == ready.id
    assert store.get_item(ready.id).status == "done"
    assert len(store.list_items(status="queued")) == CANDIDATE_LIMIT + 10


def test_run_pass_skips_queue_with_only_waiting_items(scheduler, fetcher, make_item):
    make_item(next_retry_at=utcnow() + timedelta(minutes=5))

    assert scheduler.run_pass() == 0
    fetcher.fetch.assert_not_called()


def test_claimed_item_carries_no_retry_time(scheduler, store, engine, make_item):
    item = make_item(attempts=1, next_retry_at=_ago(seconds=1))
    during = []

    def extract(*args, **kwargs):
        during.append(store.get_item(item.id))
        return ExtractionResult(text="text", method="google-vision-ocr")

    engine.extract.side_effect = extract
    scheduler.process_next()

    assert during[0].status == "processing"
    assert during[0].next_retry_at is None


def test_item_held_by_this_process_is_skipped(scheduler, store, make_item):
    held = make_item(webhook_id="held", received_at=_ago(minutes=1))
    other = make_item(webhook_id="other", received_at=_ago(minutes=5))
    scheduler.claims.try_claim(held.id)

    outcome = scheduler.process_next()

    assert outcome["item_id"] == other.id
    assert store.get_item(held.id).status == "queued"


def test_concurrent_process_next_runs_item_once(scheduler, make_item, engine):
    make_item()

    def slow_extract(*args, **kwargs):
        time.sleep(0.1)
        return ExtractionResult(text="text", method="google-vision-ocr")

    engine.extract.side_effect = slow_extract
    outcomes = []
    threads = [threading.Thread(target=lambda: outcomes.append(scheduler.process_next())) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert engine.extract.call_count == 1
    assert sum(1 for o in outcomes if o["processed"]) == 1


def test_process_item_ignores_retry_delay(scheduler, store, engine, make_item):
    item = make_item(status="error", attempts=3, next_retry_at=utcnow() + timedelta(minutes=10))
    during = []

    def extract(*args, **kwargs):
        during.append(store.get_item(item.id))
        return ExtractionResult(text="text", method="google-vision-ocr")

    engine.extract.side_effect = extract
    outcome = scheduler.process_item(item.id)

    assert outcome["success"]
    assert during[0].status == "processing"
    assert during[0].next_retry_at is None
    assert store.get_item(item.id).status == "done"


def test_process_item_unknown(scheduler):
    with pytest.raises(ItemNotFound):
        scheduler.process_item("missing")


def test_process_item_busy(scheduler, make_item):
    item = make_item()
    scheduler.claims.try_claim(item.id)

    with pytest.raises(ItemBusy):
        scheduler.process_item(item.id)


def test_process_item_busy_before_store_lookup(scheduler, store, monkeypatch):
    scheduler.claims.try_claim("in-flight")
    lookup = MagicMock(return_value=None)
    monkeypatch.setattr(store, "get_item", lookup)

    with pytest.raises(ItemBusy):
        scheduler.process_item("in-flight")
    lookup.assert_not_called()


def test_run_pass_honours_max_per_pass(scheduler, store, make_item):
    for n in range(4):
        make_item(webhook_id=f"wh-{n}", received_at=_ago(minutes=n))

    assert scheduler.run_pass() == 3
    assert len(store.list_items(status="done")) == 3
    assert len(store.list_items(status="queued")) == 1


def test_run_pass_on_empty_queue(scheduler):
    assert scheduler.run_pass() == 0


def test_run_cron(scheduler, make_item):
    first = make_item(webhook_id="a", received_at=_ago(minutes=1))
    second = make_item(webhook_id="b", received_at=_ago(minutes=2))

    report = scheduler.run_cron(max_items=5)

    assert report["processed"] == 2
    assert report["total"] == 2
    assert [r["item_id"] for r in report["results"]] == [first.id, second.id]
    assert all(r["method"] == "google-vision-ocr" for r in report["results"])
    assert "timestamp" in report


def test_startup_cleanup(scheduler, store, make_item):
    make_item(webhook_id="q", media_url=None)
    make_item(webhook_id="e", media_url="", status="error")
    done = make_item(webhook_id="d", media_url=None, status="done")

    assert scheduler.startup_cleanup() == 2
    assert list(store.items) == [done.id]


def test_background_loop_processes_queue(scheduler, store, make_item):
    item = make_item()
    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while store.get_item(item.id).status != "done" and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        scheduler.stop()

    assert store.get_item(item.id).status == "done"
    assert not scheduler.running
