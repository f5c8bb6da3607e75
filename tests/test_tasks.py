import pytest

from gleaner.errors import CancelledError
from gleaner.models import RunStatus
from gleaner.tasks import CancelToken, TaskRunRegistry


def test_registry_evicts_oldest_runs():
    registry = TaskRunRegistry(max_runs=3)
    ids = [registry.start("fetch-source", f"Fetch: {index}") for index in range(5)]
    assert len(registry) == 3
    assert registry.get(ids[0]) is None
    assert registry.get(ids[1]) is None
    assert [run.id for run in registry.list()] == [ids[4], ids[3], ids[2]]


def test_list_filters_by_kind_and_limits():
    registry = TaskRunRegistry()
    registry.start("fetch-source", "a")
    batch = registry.start("fetch-batch", "b")
    registry.start("fetch-source", "c")
    assert [run.id for run in registry.list(kind="fetch-batch")] == [batch]
    assert len(registry.list(limit=2)) == 2


def test_update_merges_meta_and_finish_freezes_run():
    registry = TaskRunRegistry()
    run_id = registry.start("skill", "Skill: x", {"source_id": "x"})
    registry.update(run_id, {"step": 3})
    registry.finish(run_id, RunStatus.SUCCESS, {"version": 2})
    registry.update(run_id, {"step": 4})

    run = registry.get(run_id)
    assert run.status == RunStatus.SUCCESS
    assert run.meta == {"source_id": "x", "step": 3, "version": 2}
    assert run.finished_at is not None
    assert run.duration_ms is not None and run.duration_ms >= 0


def test_stop_signals_token_and_only_once():
    registry = TaskRunRegistry()
    token = CancelToken()
    run_id = registry.start("fetch-source", "Fetch: x", token=token)

    assert registry.stop(run_id) is True
    assert token.cancelled
    assert registry.get(run_id).status == RunStatus.STOPPED
    assert registry.stop(run_id) is False
    with pytest.raises(CancelledError):
        token.raise_if_cancelled()


def test_stop_unknown_or_finished_run_returns_false():
    registry = TaskRunRegistry()
    run_id = registry.start("fetch-source", "Fetch: x")
    registry.finish(run_id, RunStatus.ERROR, {"error": "boom"})
    assert registry.stop(run_id) is False
    assert registry.stop(999) is False


def test_finish_after_stop_keeps_stopped_status():
    registry = TaskRunRegistry()
    run_id = registry.start("extract", "Extract: x", token=CancelToken())
    registry.stop(run_id)
    registry.finish(run_id, RunStatus.SUCCESS)
    assert registry.get(run_id).status == RunStatus.STOPPED


def test_cancel_callbacks_run_once():
    token = CancelToken()
    seen = []
    token.on_cancel(lambda: seen.append("first"))
    token.cancel("stop")
    token.cancel("again")
    token.on_cancel(lambda: seen.append("late"))
    assert seen == ["first", "late"]
    assert token.reason == "stop"
