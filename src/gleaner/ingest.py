from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import feedparser
from bs4 import BeautifulSoup

from .config import HttpConfig
from .errors import BlockedUrlError, FetchError, TierError
from .fetching import fetch_url
from .models import NewArticle, Source, Tier, TierOutcome
from .storage import insert_article
from .tasks import CancelToken
from .utils import log_event, normalize_whitespace, parse_date_value, utc_now_iso

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"
EXCERPT_CHARS = 300


@dataclass(frozen=True)
class FeedEntries:
    found_count: int
    articles: list[NewArticle]
    skipped_missing_url: int


def _entry_content(entry: Any) -> str:
    contents = entry.get("content") or []
    for item in contents:
        value = item.get("value") if isinstance(item, dict) else None
        if value:
            return value
    return (
        entry.get("summary")
        or entry.get("description")
        or entry.get("title")
        or ""
    )


def _entry_published_at(entry: Any) -> str | None:
    parsed = parse_date_value(
        entry.get("published_parsed")
        or entry.get("published")
        or entry.get("updated_parsed")
        or entry.get("updated")
    )
    return parsed.isoformat() if parsed else None


def entry_to_article(entry: Any) -> NewArticle | None:
    link = entry.get("link") or entry.get("id")
    if not link:
        return None
    raw_content = _entry_content(entry)
    content = normalize_whitespace(_strip_markup(raw_content))
    title = (entry.get("title") or "").strip() or link
    summary = entry.get("summary") or ""
    excerpt = normalize_whitespace(_strip_markup(summary))[:EXCERPT_CHARS] or None
    return NewArticle(
        url=link,
        title=title,
        content=content or title,
        excerpt=excerpt,
        published_at=_entry_published_at(entry),
        author=entry.get("author"),
        raw_html=raw_content or None,
    )


def parse_feed(content: bytes | str, source: Source, logger: logging.Logger) -> FeedEntries:
    parsed = feedparser.parse(content)
    entries = parsed.entries or []
    if parsed.bozo:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            source_id=source.id,
            error=str(parsed.bozo_exception),
        )
        if not entries:
            raise TierError(Tier.FEED.value, f"not a valid feed: {parsed.bozo_exception}")
    articles: list[NewArticle] = []
    missing_url = 0
    for entry in entries:
        article = entry_to_article(entry)
        if article is None:
            missing_url += 1
            continue
        articles.append(article)
    return FeedEntries(found_count=len(entries), articles=articles, skipped_missing_url=missing_url)


def scrape_feed(
    conn,
    source: Source,
    http: HttpConfig,
    logger: logging.Logger,
    token: CancelToken | None = None,
) -> TierOutcome:
    """Feed tier: one fetch yields many items, each inserted unless its URL is known."""
    try:
        response = fetch_url(source.url, http, accept=FEED_ACCEPT, token=token)
    except (FetchError, BlockedUrlError) as exc:
        log_event(
            logger,
            logging.WARNING,
            "source_fetch_failed",
            source_id=source.id,
            tier=Tier.FEED.value,
            error=str(exc),
        )
        raise TierError(Tier.FEED.value, str(exc)) from exc

    feed = parse_feed(response.content, source, logger)
    fetched_at = utc_now_iso()
    inserted_ids: list[int] = []
    skipped = feed.skipped_missing_url
    for article in feed.articles:
        if token is not None:
            token.raise_if_cancelled()
        article_id = insert_article(conn, source.id, article, fetched_at=fetched_at)
        if article_id is None:
            skipped += 1
        else:
            inserted_ids.append(article_id)

    log_event(
        logger,
        logging.INFO,
        "source_parsed",
        source_id=source.id,
        found_count=feed.found_count,
        inserted=len(inserted_ids),
        skipped=skipped,
    )
    return TierOutcome(inserted=len(inserted_ids), skipped=skipped, article_ids=inserted_ids)


def _strip_markup(value: str) -> str:
    if "<" not in value:
        return value
    return BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
