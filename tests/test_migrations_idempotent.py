import sqlite3

from gleaner.db import _normalize_sql
from gleaner.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_schema_has_unique_article_urls(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)
    columns = {row[1] for row in conn.execute("PRAGMA table_info(sources)").fetchall()}
    assert {"consecutive_failures", "health_status", "scraping_strategy", "has_skill"} <= columns
    indexes = conn.execute("PRAGMA index_list(articles)").fetchall()
    assert any(row[2] for row in indexes)


def test_postgres_placeholders_skip_quoted_literals():
    sql = "SELECT id FROM sources WHERE name = '?' AND url = ?"
    assert _normalize_sql(sql, "sqlite") == sql
    assert _normalize_sql(sql, "postgres") == "SELECT id FROM sources WHERE name = '?' AND url = %s"
