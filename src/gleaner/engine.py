from __future__ import annotations

import logging
import os
from concurrent.futures import Future
from typing import Any, Iterable

from .config import Config, get_state_db_path, load_runtime_config
from .db import DBConn, connect_db
from .discovery import generate_skill, regenerate_skill
from .errors import CancelledError, PreconditionError
from .extraction_agent import extract_articles
from .handoff import ArticleHandoff
from .llm import build_planner
from .models import ExtractionResult, RunStatus, ScrapeResult, SkillResult, TaskRun
from .queue import ScrapeQueue
from .scraper import PlannerFactory, scrape_source
from .skills import SkillStore
from .storage import get_source, list_sources
from .tasks import CancelToken, TaskRunRegistry
from .utils import log_event

logger = logging.getLogger("gleaner.engine")


class Engine:
    """Wires the queue, task registry, skill store and agents around one state database.

    Every operation opens its own connection, so calls are safe from queue worker
    threads and from request handlers alike.
    """

    def __init__(
        self,
        config: Config,
        db_path: str,
        *,
        planner_factory: PlannerFactory | None = None,
        handoff: ArticleHandoff | None = None,
        registry: TaskRunRegistry | None = None,
        store: SkillStore | None = None,
    ) -> None:
        self.config = config
        self.db_path = db_path
        self.registry = registry or TaskRunRegistry(config.tasks.max_runs)
        self.store = store or SkillStore(config.paths.skills_dir)
        self.handoff = handoff or ArticleHandoff(
            enabled=not config.flags.disable_llm, registry=self.registry
        )
        self.planner_factory = planner_factory or (lambda: build_planner(config.llm))
        self.queue = ScrapeQueue(self._scrape_job, config.queue.concurrency, self.registry)

    @classmethod
    def open(cls, db_path: str | None = None, **kwargs: Any) -> "Engine":
        db_path = db_path or get_state_db_path()
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        conn = connect_db(db_path)
        try:
            config = load_runtime_config(conn)
        finally:
            conn.close()
        return cls(config, db_path, **kwargs)

    def connect(self) -> DBConn:
        return connect_db(self.db_path)

    def scrape_source(
        self, source_id: str, token: CancelToken | None = None, run_id: int | None = None
    ) -> ScrapeResult:
        conn = self.connect()
        try:
            return scrape_source(
                conn,
                source_id,
                config=self.config,
                store=self.store,
                planner_factory=self.planner_factory,
                registry=self.registry,
                handoff=self.handoff,
                token=token,
                run_id=run_id,
            )
        finally:
            conn.close()

    def _scrape_job(self, source_id: str, token: CancelToken, run_id: int | None) -> ScrapeResult:
        return self.scrape_source(source_id, token=token, run_id=run_id)

    def enqueue_scrape(self, source_id: str) -> Future:
        return self.queue.enqueue_scrape(source_id)

    def submit_scrape(self, source_id: str) -> tuple[int, Future]:
        """Queue a scrape with its task run opened up front so callers can track or stop it."""
        conn = self.connect()
        try:
            source = get_source(conn, source_id)
        finally:
            conn.close()
        if source is None:
            raise PreconditionError(f"Source {source_id} not found")
        token = CancelToken()
        run_id = self.registry.start(
            "fetch-source",
            f"Fetch: {source.name}",
            {"source_id": source.id, "queued": True},
            token,
        )
        return run_id, self.queue.enqueue_scrape(source.id, token, run_id)

    def fetch_batch(self, source_ids: Iterable[str] | None = None) -> dict[str, ScrapeResult | BaseException]:
        if source_ids is None:
            conn = self.connect()
            try:
                source_ids = [source.id for source in list_sources(conn, active_only=True)]
            finally:
                conn.close()
        return self.queue.fetch_batch(source_ids)

    def generate_skill(
        self, source_id: str, homepage_url: str | None = None, name: str | None = None
    ) -> SkillResult:
        conn = self.connect()
        try:
            return generate_skill(
                conn,
                source_id,
                homepage_url,
                name,
                config=self.config,
                store=self.store,
                planner=self.planner_factory(),
                registry=self.registry,
            )
        finally:
            conn.close()

    def regenerate_skill(self, source_id: str) -> SkillResult:
        conn = self.connect()
        try:
            return regenerate_skill(
                conn,
                source_id,
                config=self.config,
                store=self.store,
                planner=self.planner_factory(),
                registry=self.registry,
            )
        finally:
            conn.close()

    def extract_articles(
        self, source_id: str, continue_on_error: bool | None = None
    ) -> ExtractionResult:
        token = CancelToken()
        run_id = self.registry.start("extract", f"Extract: {source_id}", {"source_id": source_id}, token)
        conn = self.connect()
        try:
            result = extract_articles(
                conn,
                source_id,
                config=self.config,
                store=self.store,
                planner=self.planner_factory(),
                handoff=self.handoff,
                token=token,
                continue_on_error=continue_on_error,
                on_step=lambda step, call, _result: self.registry.update(
                    run_id, {"step": step, "tool": call.name}
                ),
            )
        except CancelledError:
            self.registry.finish(run_id, RunStatus.STOPPED)
            raise
        except Exception as exc:
            self.registry.finish(run_id, RunStatus.ERROR, {"error": str(exc)})
            raise
        finally:
            conn.close()
        self.registry.finish(
            run_id,
            RunStatus.SUCCESS if result.completed else RunStatus.WARNING,
            {
                "inserted": result.inserted,
                "skipped": result.skipped,
                "failed": result.failed,
                "completed": result.completed,
            },
        )
        return result

    def stop_task(self, run_id: int) -> bool:
        return self.registry.stop(run_id)

    def list_tasks(self, kind: str | None = None, limit: int = 20) -> list[TaskRun]:
        return self.registry.list(kind=kind, limit=limit)

    def close(self) -> None:
        self.queue.shutdown(wait=True)
        self.handoff.shutdown(wait=False)
        log_event(logger, logging.DEBUG, "engine_closed", db_path=self.db_path)
