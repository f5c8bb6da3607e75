from __future__ import annotations

import logging
import re
from typing import Any

from bs4 import BeautifulSoup
from lxml import html as lxml_html
from lxml.etree import ParserError
from readability import Document as ReadabilityDocument

from ..config import HttpConfig
from ..errors import BlockedUrlError, FetchError, TierError
from ..fetching import fetch_url
from ..models import ArticleContent, Tier
from ..tasks import CancelToken
from ..utils import log_event

EXCERPT_CHARS = 300
MIN_CONTENT_CHARS = 40


def fetch_article_content(
    url: str,
    *,
    http: HttpConfig,
    logger: logging.Logger,
    token: CancelToken | None = None,
) -> ArticleContent:
    """Static tier: one plain HTTP fetch followed by readability extraction."""
    try:
        response = fetch_url(url, http, token=token)
    except (FetchError, BlockedUrlError) as exc:
        log_event(logger, logging.WARNING, "content_fetch_failed", url=url, error=str(exc))
        raise TierError(Tier.STATIC.value, str(exc)) from exc
    html = response.text()
    extracted = extract_readable(html)
    if len(extracted["content"]) < MIN_CONTENT_CHARS:
        raise TierError(Tier.STATIC.value, f"no readable content at {url}")
    return ArticleContent(
        url=url,
        title=extracted["title"] or url,
        content=extracted["content"],
        excerpt=extracted["excerpt"],
        html=html,
    )


def extract_readable(html: str) -> dict[str, Any]:
    """Main-content text, title and excerpt; readability first, DOM heuristics second."""
    title = ""
    text = ""
    try:
        document = ReadabilityDocument(html)
        summary_html = document.summary(html_partial=True)
        tree = lxml_html.fromstring(summary_html)
        text = _normalize_text(tree.text_content())
        title = (document.short_title() or "").strip()
    except (ParserError, ValueError, TypeError):
        text = ""
    if len(text) < MIN_CONTENT_CHARS:
        text = extract_readable_text(html)
    if not title:
        soup = BeautifulSoup(html, "html.parser")
        if soup.title and soup.title.string:
            title = soup.title.string.strip()
    excerpt = text[:EXCERPT_CHARS] if text else None
    return {"title": title, "content": text, "excerpt": excerpt}


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside"]):
        tag.decompose()
    article = soup.find("article")
    if article:
        return _normalize_text(article.get_text(" ", strip=True))
    best = None
    best_len = 0
    for div in soup.find_all("div"):
        text = div.get_text(" ", strip=True)
        if len(text) > best_len:
            best_len = len(text)
            best = text
    if best:
        return _normalize_text(best)
    return _normalize_text(soup.get_text(" ", strip=True))


def extract_with_selector(html: str, selector: str) -> str:
    """Text of every node matching ``selector``. Raises ValueError for an invalid selector."""
    soup = BeautifulSoup(html, "html.parser")
    try:
        matches = soup.select(selector)
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Content selector {selector!r} is not valid CSS: {exc}") from exc
    parts = [node.get_text(" ", strip=True) for node in matches]
    return _normalize_text(" ".join(part for part in parts if part))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
