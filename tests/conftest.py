from __future__ import annotations

import pytest

from gleaner.config import build_config, default_runtime_config
from gleaner.fetching import clear_fixtures
from gleaner.skills import SkillStore
from gleaner.storage import init_db

_ENV_KNOBS = (
    "GL_DB_URL",
    "GL_ADMIN_TOKEN",
    "GL_DISABLE_LLM",
    "GL_DISCOVERY_MAX_STEPS",
    "GL_EXTRACTION_MAX_STEPS",
    "GL_CONTINUE_ON_ERROR",
    "GL_QUEUE_CONCURRENCY",
    "GL_USER_AGENT",
    "GL_LLM_BASE_URL",
    "GL_LLM_MODEL",
    "GL_LLM_API_KEY",
    "GL_MASTER_KEY",
    "GL_LOG_FILE",
    "GL_LOG_LEVELS",
)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    for name in _ENV_KNOBS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GL_MOCK_TOOLS", "1")
    monkeypatch.setenv("GL_DATA_DIR", str(tmp_path / "data"))
    clear_fixtures()
    yield
    clear_fixtures()


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def config(tmp_path):
    return build_config(default_runtime_config(str(tmp_path / "data")))


@pytest.fixture
def store(config):
    return SkillStore(config.paths.skills_dir)
