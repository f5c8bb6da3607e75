from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable

from .models import RunStatus
from .tasks import TaskRunRegistry
from .utils import log_event

ArticleProcessor = Callable[[int], None]

logger = logging.getLogger("gleaner.handoff")


def _noop_processor(article_id: int) -> None:
    log_event(logger, logging.DEBUG, "article_handoff_noop", article_id=article_id)


class ArticleHandoff:
    """Fire-and-forget delivery of new article ids to the downstream analysis pipeline."""

    def __init__(
        self,
        processor: ArticleProcessor | None = None,
        *,
        enabled: bool = True,
        max_workers: int = 2,
        registry: TaskRunRegistry | None = None,
    ) -> None:
        self.processor = processor or _noop_processor
        self.enabled = enabled
        self.registry = registry
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="handoff")

    def submit(self, article_ids: Iterable[int]) -> list[Future]:
        if not self.enabled:
            return []
        futures = []
        for article_id in article_ids:
            future = self._executor.submit(self._run, article_id)
            futures.append(future)
        return futures

    def _run(self, article_id: int) -> None:
        run_id = None
        if self.registry is not None:
            run_id = self.registry.start(
                "pipeline-article", f"Process article {article_id}", {"article_id": article_id}
            )
        try:
            self.processor(article_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "article_handoff_failed",
                article_id=article_id,
                error=str(exc),
            )
            if run_id is not None:
                self.registry.finish(run_id, RunStatus.ERROR, {"error": str(exc)})
            return
        if run_id is not None:
            self.registry.finish(run_id, RunStatus.SUCCESS)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
