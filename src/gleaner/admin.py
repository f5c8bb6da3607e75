from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .engine import Engine
from .errors import PreconditionError
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .models import SourceType
from .storage import count_articles, create_source, get_source, init_db, list_sources
from .utils import configure_logging, json_dumps, log_event

app = FastAPI(title="Gleaner Admin API")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

logger = logging.getLogger("gleaner.admin")

_ENGINES: dict[str, Engine] = {}
_ENGINE_LOCK = threading.Lock()


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("GL_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class SourceRequest(BaseModel):
    id: str | None = None
    name: str
    url: str
    type: SourceType = SourceType.FEED


class SkillRequest(BaseModel):
    homepage_url: str | None = None
    name: str | None = None
    regenerate: bool = False


class ExtractRequest(BaseModel):
    continue_on_error: bool | None = None


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("gleaner")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _get_engine() -> Engine:
    path = get_state_db_path()
    with _ENGINE_LOCK:
        engine = _ENGINES.get(path)
        if engine is None:
            try:
                engine = Engine.open(path)
            except ConfigError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            _ENGINES[path] = engine
        return engine


def _drop_engine() -> None:
    with _ENGINE_LOCK:
        engine = _ENGINES.pop(get_state_db_path(), None)
    if engine is not None:
        engine.close()


def _to_dict(value) -> dict[str, object]:
    return json.loads(json_dumps(asdict(value)))


@app.on_event("startup")
def _startup() -> None:
    configure_logging("gleaner")
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return
    finally:
        conn.close()
    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(config.paths.data_dir, config.paths.skills_dir))


@app.on_event("shutdown")
def _shutdown() -> None:
    with _ENGINE_LOCK:
        engines = list(_ENGINES.values())
        _ENGINES.clear()
    for engine in engines:
        engine.close()


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "Gleaner Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    _drop_engine()
    log_event(logger, logging.INFO, "runtime_config_updated")
    return {"status": "ok"}


@app.get("/sources")
def sources_list(active: bool = False) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        rows = []
        for source in list_sources(conn, active_only=active):
            item = _to_dict(source)
            item["article_count"] = count_articles(conn, source.id)
            rows.append(item)
    finally:
        conn.close()
    return rows


@app.post("/sources", dependencies=[Depends(_require_admin_token)])
def sources_create(payload: SourceRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        source = create_source(
            conn,
            name=payload.name,
            url=payload.url,
            source_type=payload.type,
            source_id=payload.id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    log_event(logger, logging.INFO, "source_created", source_id=source.id, type=source.type.value)
    return _to_dict(source)


@app.get("/sources/{source_id}")
def sources_read(source_id: str) -> dict[str, object]:
    conn = _get_conn()
    try:
        source = get_source(conn, source_id)
        if source is None:
            raise HTTPException(status_code=404, detail="source_not_found")
        item = _to_dict(source)
        item["article_count"] = count_articles(conn, source.id)
    finally:
        conn.close()
    return item


@app.post("/sources/{source_id}/scrape", dependencies=[Depends(_require_admin_token)])
def sources_scrape(source_id: str) -> dict[str, object]:
    engine = _get_engine()
    try:
        run_id, _future = engine.submit_scrape(source_id)
    except PreconditionError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    log_event(logger, logging.INFO, "scrape_enqueued", source_id=source_id, run_id=run_id)
    return {"run_id": run_id, "status": "queued"}


@app.post("/sources/{source_id}/skill", dependencies=[Depends(_require_admin_token)])
def sources_skill(source_id: str, payload: SkillRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        if get_source(conn, source_id) is None:
            raise HTTPException(status_code=404, detail="source_not_found")
    finally:
        conn.close()
    engine = _get_engine()
    if payload.regenerate:
        result = engine.regenerate_skill(source_id)
    else:
        result = engine.generate_skill(source_id, payload.homepage_url, payload.name)
    return _to_dict(result)


@app.post("/sources/{source_id}/extract", dependencies=[Depends(_require_admin_token)])
def sources_extract(source_id: str, payload: ExtractRequest) -> dict[str, object]:
    engine = _get_engine()
    try:
        result = engine.extract_articles(source_id, continue_on_error=payload.continue_on_error)
    except PreconditionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _to_dict(result)


@app.get("/tasks")
def tasks_list(kind: str | None = None, limit: int = 20) -> list[dict[str, object]]:
    engine = _get_engine()
    return [_to_dict(run) for run in engine.list_tasks(kind=kind, limit=limit)]


@app.post("/tasks/{run_id}/stop", dependencies=[Depends(_require_admin_token)])
def tasks_stop(run_id: int) -> dict[str, object]:
    engine = _get_engine()
    stopped = engine.stop_task(run_id)
    return {"run_id": run_id, "stopped": stopped}
