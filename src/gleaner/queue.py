from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_all
from typing import Callable, Iterable, Optional

from .models import RunStatus, ScrapeResult
from .tasks import CancelToken, TaskRunRegistry
from .utils import log_event

ScrapeJob = Callable[[str, CancelToken, Optional[int]], ScrapeResult]

logger = logging.getLogger("gleaner.queue")


class ScrapeQueue:
    """Bounded-parallelism gate around scrape jobs.

    At most ``concurrency`` jobs run at once; the rest wait in FIFO order. Each
    enqueue gets its own future, and one job failing never touches the others.
    The same source enqueued twice runs twice.
    """

    def __init__(
        self,
        job: ScrapeJob,
        concurrency: int = 3,
        registry: TaskRunRegistry | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.job = job
        self.concurrency = concurrency
        self.registry = registry
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="scrape")
        self._lock = threading.Lock()
        self.queued = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.completed = 0
        self.failed = 0

    def enqueue_scrape(
        self, source_id: str, token: CancelToken | None = None, run_id: int | None = None
    ) -> Future:
        token = token or CancelToken()
        with self._lock:
            self.queued += 1
            pending = self.queued
        log_event(logger, logging.DEBUG, "scrape_enqueued", source_id=source_id, pending=pending)
        return self._executor.submit(self._run, source_id, token, run_id)

    def _run(self, source_id: str, token: CancelToken, run_id: int | None) -> ScrapeResult:
        with self._lock:
            self.queued -= 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            in_flight = self.in_flight
        log_event(logger, logging.DEBUG, "scrape_admitted", source_id=source_id, in_flight=in_flight)
        ok = False
        try:
            result = self.job(source_id, token, run_id)
            ok = True
            return result
        finally:
            with self._lock:
                self.in_flight -= 1
                self.completed += 1
                if not ok:
                    self.failed += 1

    def fetch_batch(
        self, source_ids: Iterable[str], label: str = "Fetch batch"
    ) -> dict[str, ScrapeResult | BaseException]:
        """Run many sources through the queue and wait for all of them."""
        source_ids = list(source_ids)
        batch_token = CancelToken()
        run_id = None
        if self.registry is not None:
            run_id = self.registry.start(
                "fetch-batch", label, {"sources": len(source_ids)}, batch_token
            )
        futures: dict[str, Future] = {}
        for source_id in source_ids:
            item_token = CancelToken()
            batch_token.on_cancel(item_token.cancel)
            futures[source_id] = self.enqueue_scrape(source_id, item_token)
        wait_all(list(futures.values()))

        outcomes: dict[str, ScrapeResult | BaseException] = {}
        failed = 0
        inserted = 0
        for source_id, future in futures.items():
            error = future.exception()
            if error is not None:
                failed += 1
                outcomes[source_id] = error
                continue
            result = future.result()
            inserted += result.inserted
            outcomes[source_id] = result

        status = RunStatus.WARNING if failed else RunStatus.SUCCESS
        log_event(
            logger,
            logging.WARNING if failed else logging.INFO,
            "batch_finished",
            sources=len(source_ids),
            failed=failed,
            inserted=inserted,
        )
        if self.registry is not None:
            self.registry.finish(
                run_id,
                status,
                {"completed": len(source_ids) - failed, "failed": failed, "inserted": inserted},
            )
        return outcomes

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
