import time

import pytest
from fastapi.testclient import TestClient

import gleaner.admin as admin
from gleaner.admin import app
from gleaner.fetching import register_fixture

FEED_URL = "https://news.example.com/feed.xml"

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example News</title>
<item><title>One</title><link>https://news.example.com/1</link><description>First.</description></item>
<item><title>Two</title><link>https://news.example.com/2</link><description>Second.</description></item>
</channel></rss>"""


@pytest.fixture
def client():
    yield TestClient(app)
    admin._drop_engine()


def _create(client, **overrides):
    payload = {"id": "news", "name": "Example News", "url": FEED_URL, "type": "feed"}
    payload.update(overrides)
    return client.post("/sources", json=payload)


def _wait_for_run(client, run_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        runs = {run["id"]: run for run in client.get("/tasks").json()}
        run = runs.get(run_id)
        if run and run["status"] != "running":
            return run
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} did not finish")


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_runtime_config_requires_token(client, monkeypatch):
    monkeypatch.setenv("GL_ADMIN_TOKEN", "secret")
    assert client.get("/admin/config/runtime").status_code == 401

    headers = {"X-Admin-Token": "secret"}
    response = client.get("/admin/config/runtime", headers=headers)
    assert response.status_code == 200
    config = response.json()["config"]

    config["scraping"]["tier_policy"] = "escalate"
    assert client.put("/admin/config/runtime", json={"config": config}, headers=headers).status_code == 200
    stored = client.get("/admin/config/runtime", headers=headers).json()["config"]
    assert stored["scraping"]["tier_policy"] == "escalate"

    config["scraping"]["tier_policy"] = "sometimes"
    rejected = client.put("/admin/config/runtime", json={"config": config}, headers=headers)
    assert rejected.status_code == 400
    assert "tier_policy" in rejected.json()["detail"]


def test_sources_create_list_and_read(client):
    created = _create(client)
    assert created.status_code == 200
    assert created.json()["health_status"] == "healthy"

    assert _create(client).status_code == 400
    assert _create(client, id="other", url="").status_code == 400

    listed = client.get("/sources").json()
    assert [item["id"] for item in listed] == ["news"]
    assert listed[0]["article_count"] == 0

    assert client.get("/sources/news").json()["url"] == FEED_URL
    assert client.get("/sources/missing").status_code == 404


def test_scrape_is_queued_and_tracked(client):
    _create(client)
    register_fixture(FEED_URL, RSS, content_type="application/rss+xml")

    response = client.post("/sources/news/scrape")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"

    run = _wait_for_run(client, body["run_id"])
    assert run["status"] == "success"
    assert run["kind"] == "fetch-source"
    assert run["meta"]["inserted"] == 2
    assert client.get("/sources/news").json()["article_count"] == 2


def test_scrape_unknown_source_is_404(client):
    assert client.post("/sources/missing/scrape").status_code == 404


def test_skill_for_unknown_source_is_404(client):
    response = client.post("/sources/missing/skill", json={})
    assert response.status_code == 404
    assert response.json()["detail"] == "source_not_found"


def test_extract_without_skill_is_conflict(client):
    _create(client, id="site", url="https://site.example.com/", type="site")
    response = client.post("/sources/site/extract", json={})
    assert response.status_code == 409
    assert "Generate a skill first" in response.json()["detail"]


def test_stop_unknown_task_reports_false(client):
    response = client.post("/tasks/999/stop")
    assert response.json() == {"run_id": 999, "stopped": False}
