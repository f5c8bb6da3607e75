import threading
import time

import pytest

from gleaner.errors import SourceExhaustedError
from gleaner.models import RunStatus, ScrapeResult, Tier
from gleaner.queue import ScrapeQueue
from gleaner.tasks import TaskRunRegistry


def _ok(source_id):
    return ScrapeResult(inserted=1, skipped=0, tier=Tier.FEED)


def test_queue_never_exceeds_concurrency():
    release = threading.Event()

    def job(source_id, token, run_id):
        release.wait(5)
        return _ok(source_id)

    queue = ScrapeQueue(job, concurrency=2)
    futures = [queue.enqueue_scrape(f"source-{index}") for index in range(6)]

    deadline = time.monotonic() + 5
    while queue.in_flight < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert queue.in_flight == 2
    assert queue.queued == 4

    release.set()
    results = [future.result(timeout=5) for future in futures]
    queue.shutdown()

    assert len(results) == 6
    assert queue.max_in_flight == 2
    assert queue.completed == 6
    assert queue.in_flight == 0


def test_queue_runs_in_fifo_order():
    started = []

    def job(source_id, token, run_id):
        started.append(source_id)
        return _ok(source_id)

    queue = ScrapeQueue(job, concurrency=1)
    futures = [queue.enqueue_scrape(name) for name in ("a", "b", "c", "d")]
    for future in futures:
        future.result(timeout=5)
    queue.shutdown()
    assert started == ["a", "b", "c", "d"]


def test_same_source_enqueued_twice_runs_twice():
    started = []

    def job(source_id, token, run_id):
        started.append(source_id)
        return _ok(source_id)

    queue = ScrapeQueue(job, concurrency=2)
    first = queue.enqueue_scrape("a")
    second = queue.enqueue_scrape("a")
    first.result(timeout=5)
    second.result(timeout=5)
    queue.shutdown()
    assert started == ["a", "a"]


def test_failed_item_does_not_affect_others():
    def job(source_id, token, run_id):
        if source_id == "bad":
            raise SourceExhaustedError(source_id, [("feed", "HTTP 500")])
        return _ok(source_id)

    queue = ScrapeQueue(job, concurrency=2)
    good = queue.enqueue_scrape("good")
    bad = queue.enqueue_scrape("bad")
    other = queue.enqueue_scrape("other")

    with pytest.raises(SourceExhaustedError):
        bad.result(timeout=5)
    assert good.result(timeout=5).inserted == 1
    assert other.result(timeout=5).inserted == 1
    queue.shutdown()
    assert queue.failed == 1
    assert queue.completed == 3


def test_fetch_batch_reports_warning_when_any_item_fails():
    def job(source_id, token, run_id):
        if source_id == "bad":
            raise SourceExhaustedError(source_id, [("feed", "HTTP 500")])
        return _ok(source_id)

    registry = TaskRunRegistry()
    queue = ScrapeQueue(job, concurrency=2, registry=registry)
    outcomes = queue.fetch_batch(["a", "bad", "b"])
    queue.shutdown()

    assert isinstance(outcomes["bad"], SourceExhaustedError)
    assert outcomes["a"].inserted == 1
    run = registry.list(kind="fetch-batch")[0]
    assert run.status == RunStatus.WARNING
    assert run.meta["failed"] == 1
    assert run.meta["completed"] == 2


def test_fetch_batch_success_when_all_items_pass():
    registry = TaskRunRegistry()
    queue = ScrapeQueue(lambda source_id, token, run_id: _ok(source_id), registry=registry)
    queue.fetch_batch(["a", "b"])
    queue.shutdown()
    assert registry.list(kind="fetch-batch")[0].status == RunStatus.SUCCESS


def test_stopping_batch_cancels_item_tokens():
    seen = []
    release = threading.Event()

    def job(source_id, token, run_id):
        release.wait(5)
        seen.append(token.cancelled)
        return _ok(source_id)

    registry = TaskRunRegistry()
    queue = ScrapeQueue(job, concurrency=1, registry=registry)
    worker = threading.Thread(target=queue.fetch_batch, args=(["a", "b"],))
    worker.start()

    deadline = time.monotonic() + 5
    while not registry.list(kind="fetch-batch") and time.monotonic() < deadline:
        time.sleep(0.01)
    batch = registry.list(kind="fetch-batch")[0]
    assert registry.stop(batch.id) is True
    release.set()
    worker.join(5)
    queue.shutdown()
    assert seen == [True, True]
