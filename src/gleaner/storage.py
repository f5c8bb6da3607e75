from __future__ import annotations

import json
import uuid
from typing import Any

from .db import DBConn, connect_db
from .models import Article, HealthStatus, NewArticle, Source, SourceType, Tier
from .utils import json_dumps, normalize_url, utc_now_iso

_SOURCE_COLUMNS = (
    "id, name, url, type, is_active, consecutive_failures, health_status, "
    "last_error_at, last_fetched_at, scraping_strategy, has_skill, skill_version, "
    "skill_generated_at, created_at"
)

_ARTICLE_COLUMNS = (
    "id, source_id, url, title, content, excerpt, published_at, fetched_at, is_read"
)


def init_db(path: str) -> DBConn:
    return connect_db(path)


def create_source(
    conn: Any,
    *,
    name: str,
    url: str,
    source_type: SourceType | str,
    source_id: str | None = None,
    is_active: bool = True,
) -> Source:
    name = (name or "").strip()
    if not name:
        raise ValueError("name is required")
    url = (url or "").strip()
    if not url:
        raise ValueError("url is required")
    source_type = SourceType(source_type)
    source_id = (source_id or "").strip() or str(uuid.uuid4())
    existing = conn.execute(
        "SELECT id FROM sources WHERE id = ? OR url = ?", (source_id, url)
    ).fetchone()
    if existing is not None:
        raise ValueError(f"source already exists: {existing[0]}")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, url, type, is_active, consecutive_failures, health_status,
             has_skill, skill_version, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 0, ?, ?, 0, ?, ?)
        """,
        (
            source_id,
            name,
            url,
            source_type.value,
            bool(is_active),
            HealthStatus.HEALTHY.value,
            False,
            now,
            now,
        ),
    )
    conn.commit()
    source = get_source(conn, source_id)
    if source is None:
        raise RuntimeError(f"source {source_id} vanished after insert")
    return source


def get_source(conn: Any, source_id: str) -> Source | None:
    cursor = conn.execute(f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(conn: Any, active_only: bool = False) -> list[Source]:
    if active_only:
        cursor = conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE is_active = ? ORDER BY name",
            (True,),
        )
    else:
        cursor = conn.execute(f"SELECT {_SOURCE_COLUMNS} FROM sources ORDER BY name")
    return [_row_to_source(row) for row in cursor.fetchall()]


def update_source_health(
    conn: Any,
    source_id: str,
    *,
    consecutive_failures: int,
    health_status: HealthStatus,
    last_error_at: str | None,
    is_active: bool | None = None,
) -> None:
    now = utc_now_iso()
    if is_active is None:
        conn.execute(
            """
            UPDATE sources
            SET consecutive_failures = ?, health_status = ?, last_error_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (consecutive_failures, health_status.value, last_error_at, now, source_id),
        )
    else:
        conn.execute(
            """
            UPDATE sources
            SET consecutive_failures = ?, health_status = ?, last_error_at = ?,
                is_active = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                consecutive_failures,
                health_status.value,
                last_error_at,
                bool(is_active),
                now,
                source_id,
            ),
        )
    conn.commit()


def set_scraping_strategy(conn: Any, source_id: str, tier: Tier | None) -> None:
    conn.execute(
        "UPDATE sources SET scraping_strategy = ?, updated_at = ? WHERE id = ?",
        (tier.value if tier else None, utc_now_iso(), source_id),
    )
    conn.commit()


def mark_fetched(conn: Any, source_id: str, fetched_at: str | None = None) -> None:
    now = utc_now_iso()
    conn.execute(
        "UPDATE sources SET last_fetched_at = ?, updated_at = ? WHERE id = ?",
        (fetched_at or now, now, source_id),
    )
    conn.commit()


def set_skill_installed(
    conn: Any, source_id: str, *, generated_at: str, commit: bool = True
) -> int:
    """Flag the source as owning a skill and bump its version; returns the new version."""
    conn.execute(
        """
        UPDATE sources
        SET has_skill = ?, skill_version = skill_version + 1, skill_generated_at = ?,
            scraping_strategy = ?, updated_at = ?
        WHERE id = ?
        """,
        (True, generated_at, Tier.SKILL.value, utc_now_iso(), source_id),
    )
    row = conn.execute(
        "SELECT skill_version FROM sources WHERE id = ?", (source_id,)
    ).fetchone()
    if commit:
        conn.commit()
    return int(row[0]) if row else 0


def article_url_exists(conn: Any, url: str) -> bool:
    cursor = conn.execute("SELECT 1 FROM articles WHERE url = ?", (normalize_url(url),))
    return cursor.fetchone() is not None


def insert_article(
    conn: Any, source_id: str, article: NewArticle, fetched_at: str | None = None
) -> int | None:
    """Insert one article; returns the new row id, or None when the URL already exists."""
    cursor = conn.execute(
        """
        INSERT INTO articles
            (source_id, url, title, content, excerpt, author, raw_html, published_at,
             fetched_at, is_read)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(url) DO NOTHING
        RETURNING id
        """,
        (
            source_id,
            normalize_url(article.url),
            article.title,
            article.content,
            article.excerpt,
            article.author,
            article.raw_html,
            article.published_at,
            fetched_at or utc_now_iso(),
            False,
        ),
    )
    row = cursor.fetchone()
    conn.commit()
    return int(row[0]) if row else None


def get_newest_published_at(conn: Any, source_id: str) -> str | None:
    row = conn.execute(
        "SELECT MAX(published_at) FROM articles WHERE source_id = ?", (source_id,)
    ).fetchone()
    return row[0] if row else None


def count_articles(conn: Any, source_id: str | None = None) -> int:
    if source_id is None:
        row = conn.execute("SELECT COUNT(*) FROM articles").fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) FROM articles WHERE source_id = ?", (source_id,)
        ).fetchone()
    return int(row[0]) if row else 0


def list_articles(conn: Any, source_id: str, limit: int = 50) -> list[Article]:
    cursor = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS} FROM articles
        WHERE source_id = ?
        ORDER BY fetched_at DESC, id DESC
        LIMIT ?
        """,
        (source_id, limit),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def _row_to_source(row: tuple) -> Source:
    (
        source_id,
        name,
        url,
        source_type,
        is_active,
        consecutive_failures,
        health_status,
        last_error_at,
        last_fetched_at,
        scraping_strategy,
        has_skill,
        skill_version,
        skill_generated_at,
        created_at,
    ) = row
    return Source(
        id=source_id,
        name=name,
        url=url,
        type=SourceType(source_type),
        is_active=bool(is_active),
        consecutive_failures=int(consecutive_failures or 0),
        health_status=HealthStatus(health_status or HealthStatus.HEALTHY.value),
        last_error_at=last_error_at,
        last_fetched_at=last_fetched_at,
        scraping_strategy=Tier(scraping_strategy) if scraping_strategy else None,
        has_skill=bool(has_skill),
        skill_version=int(skill_version or 0),
        skill_generated_at=skill_generated_at,
        created_at=created_at,
    )


def _row_to_article(row: tuple) -> Article:
    (
        article_id,
        source_id,
        url,
        title,
        content,
        excerpt,
        published_at,
        fetched_at,
        is_read,
    ) = row
    return Article(
        id=int(article_id),
        source_id=source_id,
        url=url,
        title=title,
        content=content,
        excerpt=excerpt,
        published_at=published_at,
        fetched_at=fetched_at,
        is_read=bool(is_read),
    )
