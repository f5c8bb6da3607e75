from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("gleaner.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    if "pg_bootstrap_001" in applied:
        conn.commit()
        return
    _bootstrap_schema(conn)
    conn.execute(
        "INSERT INTO schema_migrations (version, applied_at) VALUES (%s, %s)",
        ("pg_bootstrap_001", utc_now_iso()),
    )
    conn.commit()
    logger.info("migration_applied version=pg_bootstrap_001")


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL DEFAULT 'feed',
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            health_status TEXT NOT NULL DEFAULT 'healthy',
            last_error_at TEXT NULL,
            last_fetched_at TEXT NULL,
            scraping_strategy TEXT NULL,
            has_skill BOOLEAN NOT NULL DEFAULT FALSE,
            skill_version INTEGER NOT NULL DEFAULT 0,
            skill_generated_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id BIGSERIAL PRIMARY KEY,
            source_id TEXT NOT NULL REFERENCES sources(id),
            url TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            excerpt TEXT NULL,
            author TEXT NULL,
            raw_html TEXT NULL,
            published_at TEXT NULL,
            fetched_at TEXT NOT NULL,
            is_read BOOLEAN NOT NULL DEFAULT FALSE
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_source_published "
        "ON articles(source_id, published_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
