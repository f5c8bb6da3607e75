from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from typing import Any

from .security.secrets import load_llm_api_key
from .storage import get_setting, set_setting
from .utils import env_flag, env_int

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    skills_dir: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: float
    max_bytes: int


@dataclass(frozen=True)
class RenderConfig:
    navigation_timeout_ms: int
    wait_for_timeout_ms: int
    action_timeout_ms: int


@dataclass(frozen=True)
class QueueConfig:
    concurrency: int


@dataclass(frozen=True)
class HealthConfig:
    degraded_threshold: int
    dead_threshold: int
    stale_days: int


@dataclass(frozen=True)
class ScrapingConfig:
    tier_policy: str


@dataclass(frozen=True)
class AgentsConfig:
    discovery_max_steps: int
    extraction_max_steps: int
    continue_on_error: bool
    max_articles: int
    temperature: float


@dataclass(frozen=True)
class LlmConfig:
    provider: str
    base_url: str
    model: str
    timeout_s: int
    max_tokens: int
    api_key: str | None


@dataclass(frozen=True)
class TasksConfig:
    max_runs: int


@dataclass(frozen=True)
class RuntimeFlags:
    disable_llm: bool
    mock_tools: bool


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    render: RenderConfig
    queue: QueueConfig
    health: HealthConfig
    scraping: ScrapingConfig
    agents: AgentsConfig
    llm: LlmConfig
    tasks: TasksConfig
    flags: RuntimeFlags


TIER_POLICIES = ("strict", "escalate")
LLM_PROVIDERS = ("openai_compatible", "anthropic")

DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "Gleaner",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "skills_dir": "/data/sources-skills",
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": DEFAULT_USER_AGENT,
        "max_retries": 2,
        "backoff_seconds": 1.0,
        "max_bytes": 5_000_000,
    },
    "render": {
        "navigation_timeout_ms": 30000,
        "wait_for_timeout_ms": 10000,
        "action_timeout_ms": 10000,
    },
    "queue": {
        "concurrency": 3,
    },
    "health": {
        "degraded_threshold": 3,
        "dead_threshold": 7,
        "stale_days": 30,
    },
    "scraping": {
        "tier_policy": "strict",
    },
    "agents": {
        "discovery_max_steps": 100,
        "extraction_max_steps": 100,
        "continue_on_error": True,
        "max_articles": 10,
        "temperature": 0.1,
    },
    "llm": {
        "provider": "openai_compatible",
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "timeout_s": 60,
        "max_tokens": 4096,
    },
    "tasks": {
        "max_runs": 200,
    },
}

CONFIG_KEY = "config.runtime"


def get_data_dir() -> str:
    return os.environ.get("GL_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])


def get_state_db_path() -> str:
    return os.path.join(get_data_dir(), "state.sqlite3")


def default_runtime_config(data_dir: str | None = None) -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    data_dir = data_dir or get_data_dir()
    cfg["paths"]["data_dir"] = data_dir
    cfg["paths"]["skills_dir"] = os.path.join(data_dir, "sources-skills")
    return cfg


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, default_runtime_config())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    config = build_config(cfg)
    return apply_env_overrides(config, stored_api_key=_load_stored_api_key(conn))


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    if cfg["scraping"]["tier_policy"] not in TIER_POLICIES:
        errors.append(
            "config.runtime.scraping.tier_policy must be one of " + ", ".join(TIER_POLICIES)
        )
    if cfg["llm"]["provider"] not in LLM_PROVIDERS:
        errors.append("config.runtime.llm.provider must be one of " + ", ".join(LLM_PROVIDERS))
    if cfg["queue"]["concurrency"] < 1:
        errors.append("config.runtime.queue.concurrency must be >= 1")
    health = cfg["health"]
    if not 0 < health["degraded_threshold"] < health["dead_threshold"]:
        errors.append(
            "config.runtime.health thresholds must satisfy 0 < degraded_threshold < dead_threshold"
        )
    for key in ("discovery_max_steps", "extraction_max_steps", "max_articles"):
        if cfg["agents"][key] < 1:
            errors.append(f"config.runtime.agents.{key} must be >= 1")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    http_cfg = cfg.get("http") or {}
    render_cfg = cfg.get("render") or {}
    health_cfg = cfg.get("health") or {}
    agents_cfg = cfg.get("agents") or {}
    llm_cfg = cfg.get("llm") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )
    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        skills_dir=str(paths_cfg.get("skills_dir")),
    )
    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
        max_retries=int(http_cfg.get("max_retries")),
        backoff_seconds=float(http_cfg.get("backoff_seconds")),
        max_bytes=int(http_cfg.get("max_bytes")),
    )
    render = RenderConfig(
        navigation_timeout_ms=int(render_cfg.get("navigation_timeout_ms")),
        wait_for_timeout_ms=int(render_cfg.get("wait_for_timeout_ms")),
        action_timeout_ms=int(render_cfg.get("action_timeout_ms")),
    )
    health = HealthConfig(
        degraded_threshold=int(health_cfg.get("degraded_threshold")),
        dead_threshold=int(health_cfg.get("dead_threshold")),
        stale_days=int(health_cfg.get("stale_days")),
    )
    agents = AgentsConfig(
        discovery_max_steps=int(agents_cfg.get("discovery_max_steps")),
        extraction_max_steps=int(agents_cfg.get("extraction_max_steps")),
        continue_on_error=bool(agents_cfg.get("continue_on_error")),
        max_articles=int(agents_cfg.get("max_articles")),
        temperature=float(agents_cfg.get("temperature")),
    )
    llm = LlmConfig(
        provider=str(llm_cfg.get("provider")),
        base_url=str(llm_cfg.get("base_url")),
        model=str(llm_cfg.get("model")),
        timeout_s=int(llm_cfg.get("timeout_s")),
        max_tokens=int(llm_cfg.get("max_tokens")),
        api_key=None,
    )
    return Config(
        app=app,
        paths=paths,
        http=http,
        render=render,
        queue=QueueConfig(concurrency=int((cfg.get("queue") or {}).get("concurrency"))),
        health=health,
        scraping=ScrapingConfig(
            tier_policy=str((cfg.get("scraping") or {}).get("tier_policy"))
        ),
        agents=agents,
        llm=llm,
        tasks=TasksConfig(max_runs=int((cfg.get("tasks") or {}).get("max_runs"))),
        flags=RuntimeFlags(disable_llm=False, mock_tools=False),
    )


def apply_env_overrides(config: Config, stored_api_key: str | None = None) -> Config:
    http = config.http
    user_agent = os.environ.get("GL_USER_AGENT", "").strip()
    if user_agent:
        http = replace(http, user_agent=user_agent)

    agents = config.agents
    discovery_steps = env_int("GL_DISCOVERY_MAX_STEPS")
    if discovery_steps and discovery_steps > 0:
        agents = replace(agents, discovery_max_steps=discovery_steps)
    extraction_steps = env_int("GL_EXTRACTION_MAX_STEPS")
    if extraction_steps and extraction_steps > 0:
        agents = replace(agents, extraction_max_steps=extraction_steps)
    if os.environ.get("GL_CONTINUE_ON_ERROR", "").strip():
        agents = replace(agents, continue_on_error=env_flag("GL_CONTINUE_ON_ERROR"))

    queue = config.queue
    concurrency = env_int("GL_QUEUE_CONCURRENCY")
    if concurrency and concurrency > 0:
        queue = replace(queue, concurrency=concurrency)

    llm = config.llm
    base_url = os.environ.get("GL_LLM_BASE_URL", "").strip()
    if base_url:
        llm = replace(llm, base_url=base_url)
    model = os.environ.get("GL_LLM_MODEL", "").strip()
    if model:
        llm = replace(llm, model=model)
    api_key = os.environ.get("GL_LLM_API_KEY", "").strip() or stored_api_key
    llm = replace(llm, api_key=api_key or None)

    flags = RuntimeFlags(
        disable_llm=env_flag("GL_DISABLE_LLM"),
        mock_tools=env_flag("GL_MOCK_TOOLS"),
    )
    return replace(config, http=http, agents=agents, queue=queue, llm=llm, flags=flags)


def _load_stored_api_key(conn) -> str | None:
    if os.environ.get("GL_LLM_API_KEY", "").strip():
        return None
    try:
        return load_llm_api_key(conn)
    except ValueError as exc:
        raise ConfigError(f"stored llm api key unavailable: {exc}") from exc


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
