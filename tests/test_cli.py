from gleaner.cli import main
from gleaner.fetching import register_fixture
from gleaner.storage import count_articles, get_source, init_db

FEED_URL = "https://news.example.com/feed.xml"

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example News</title>
<item><title>One</title><link>https://news.example.com/1</link><description>First.</description></item>
</channel></rss>"""


def _add(db_path, source_id="news", url=FEED_URL, source_type="feed"):
    return main(
        [
            "--db",
            db_path,
            "sources",
            "add",
            "--id",
            source_id,
            "--name",
            "Example News",
            "--url",
            url,
            "--type",
            source_type,
        ]
    )


def test_sources_add_and_list(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    assert main(["--db", db_path, "sources", "list"]) == 1
    assert _add(db_path) == 0
    assert _add(db_path) == 1
    assert main(["--db", db_path, "sources", "list", "--active"]) == 0
    assert main(["--db", db_path, "sources", "show", "news"]) == 0
    assert main(["--db", db_path, "sources", "show", "missing"]) == 1


def test_scrape_command_inserts_articles(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    _add(db_path)
    register_fixture(FEED_URL, RSS, content_type="application/rss+xml")

    assert main(["--db", db_path, "scrape", "news"]) == 0

    conn = init_db(db_path)
    try:
        assert count_articles(conn, "news") == 1
        assert get_source(conn, "news").scraping_strategy.value == "feed"
    finally:
        conn.close()


def test_scrape_failure_records_health(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    _add(db_path)
    register_fixture(FEED_URL, "down", status=500)

    assert main(["--db", db_path, "scrape", "news"]) == 1

    conn = init_db(db_path)
    try:
        assert get_source(conn, "news").consecutive_failures == 1
    finally:
        conn.close()


def test_extract_requires_skill(tmp_path):
    db_path = str(tmp_path / "cli.sqlite3")
    _add(db_path, source_id="site", url="https://site.example.com/", source_type="site")
    assert main(["--db", db_path, "extract", "site"]) == 1
    assert main(["--db", db_path, "skill", "show", "site"]) == 1


def test_health_stale_and_migrate(tmp_path):
    db_path = str(tmp_path / "nested" / "cli.sqlite3")
    assert main(["--db", db_path, "db", "migrate"]) == 0
    assert main(["--db", db_path, "health", "stale", "--days", "7"]) == 0


def test_serve_runs_admin_app(monkeypatch):
    import uvicorn

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    assert main(["serve", "--port", "9001"]) == 0
    assert calls == [("gleaner.admin:app", {"host": "0.0.0.0", "port": 9001, "log_config": None})]
