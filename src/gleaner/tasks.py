from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import CancelledError
from .models import RunStatus, TaskRun
from .utils import log_event, utc_now_iso

MAX_TASK_RUNS = 200
DEFAULT_LIST_LIMIT = 20

logger = logging.getLogger("gleaner.tasks")


class CancelToken:
    """Cooperative cancellation handle threaded through fetches, tools and agent steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: list = []
        self._lock = threading.Lock()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.WARNING, "cancel_callback_failed", error=str(exc))

    def on_cancel(self, callback) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self.reason or "cancelled")


@dataclass
class _RunEntry:
    run: TaskRun
    started_monotonic: float
    token: CancelToken | None = field(default=None)


class TaskRunRegistry:
    """Bounded in-memory log of operation attempts, newest entries retained."""

    def __init__(self, max_runs: int = MAX_TASK_RUNS) -> None:
        self.max_runs = max_runs
        self._runs: OrderedDict[int, _RunEntry] = OrderedDict()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def start(
        self,
        kind: str,
        label: str,
        meta: dict[str, Any] | None = None,
        token: CancelToken | None = None,
    ) -> int:
        with self._lock:
            run_id = next(self._ids)
            run = TaskRun(
                id=run_id,
                kind=kind,
                label=label,
                status=RunStatus.RUNNING,
                started_at=utc_now_iso(),
                finished_at=None,
                duration_ms=None,
                meta=dict(meta or {}),
            )
            self._runs[run_id] = _RunEntry(run=run, started_monotonic=time.monotonic(), token=token)
            while len(self._runs) > self.max_runs:
                self._runs.popitem(last=False)
        log_event(logger, logging.DEBUG, "task_started", run_id=run_id, kind=kind, label=label)
        return run_id

    def update(self, run_id: int, meta: dict[str, Any] | None = None, label: str | None = None) -> None:
        with self._lock:
            entry = self._runs.get(run_id)
            if entry is None or entry.run.status != RunStatus.RUNNING:
                return
            merged = {**entry.run.meta, **(meta or {})}
            entry.run = replace(entry.run, meta=merged, label=label or entry.run.label)

    def finish(
        self, run_id: int, status: RunStatus | str, meta: dict[str, Any] | None = None
    ) -> None:
        status = RunStatus(status)
        with self._lock:
            entry = self._runs.get(run_id)
            if entry is None or entry.run.status != RunStatus.RUNNING:
                return
            duration_ms = int((time.monotonic() - entry.started_monotonic) * 1000)
            entry.run = replace(
                entry.run,
                status=status,
                finished_at=utc_now_iso(),
                duration_ms=duration_ms,
                meta={**entry.run.meta, **(meta or {})},
            )
        log_event(
            logger,
            logging.DEBUG,
            "task_finished",
            run_id=run_id,
            status=status.value,
            duration_ms=duration_ms,
        )

    def stop(self, run_id: int) -> bool:
        with self._lock:
            entry = self._runs.get(run_id)
            if entry is None or entry.run.status != RunStatus.RUNNING:
                return False
            duration_ms = int((time.monotonic() - entry.started_monotonic) * 1000)
            entry.run = replace(
                entry.run,
                status=RunStatus.STOPPED,
                finished_at=utc_now_iso(),
                duration_ms=duration_ms,
            )
            token = entry.token
        if token is not None:
            token.cancel(f"task run {run_id} stopped")
        log_event(logger, logging.INFO, "task_stopped", run_id=run_id)
        return True

    def get(self, run_id: int) -> TaskRun | None:
        with self._lock:
            entry = self._runs.get(run_id)
            return entry.run if entry else None

    def list(self, kind: str | None = None, limit: int = DEFAULT_LIST_LIMIT) -> list[TaskRun]:
        with self._lock:
            runs = [entry.run for entry in self._runs.values()]
        if kind:
            runs = [run for run in runs if run.kind == kind]
        runs.sort(key=lambda run: (run.started_at, run.id), reverse=True)
        return runs[: max(0, limit)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
