from __future__ import annotations

from typing import Any

from bs4 import BeautifulSoup

from ..fetching import fetch_markdown, fetch_url
from ..pipelines.content_fetch import extract_readable
from .context import ToolContext

MAIN_SECTION_SELECTORS = (
    "main",
    "section",
    "article",
    "[role=main]",
    ".content",
    "#content",
)
ARTICLE_MIN_CHARS = 200


def fetch_page(
    ctx: ToolContext, url: str, spa: bool = False, prefer_markdown: bool = False
) -> dict[str, Any]:
    resolved = ctx.resolve(url)
    if spa:
        html = ctx.browser.navigate(resolved)
        ctx.cache_page(resolved, html, rendered=True)
        return {"success": True, "url": resolved, "length": len(html), "cached": True, "format": "html"}
    if prefer_markdown:
        markdown = fetch_markdown(resolved, ctx.http, token=ctx.token)
        if markdown is not None:
            text = markdown.text()
            ctx.cache_page(resolved, text, markdown=text)
            return {
                "success": True,
                "url": resolved,
                "length": len(text),
                "cached": True,
                "format": "markdown",
                "tokens": markdown.headers.get("x-markdown-tokens"),
            }
    response = fetch_url(resolved, ctx.http, token=ctx.token)
    html = response.text()
    ctx.cache_page(resolved, html)
    return {"success": True, "url": resolved, "length": len(html), "cached": True, "format": "html"}


def get_structure(ctx: ToolContext, url: str) -> dict[str, Any]:
    page = ctx.get_page(url, "get_structure")
    soup = BeautifulSoup(page.html, "html.parser")
    meta = soup.find("meta", attrs={"name": "description"})
    sections = []
    for selector in MAIN_SECTION_SELECTORS:
        matches = soup.select(selector)
        if not matches:
            continue
        sections.append(
            {
                "selector": selector,
                "count": len(matches),
                "text_length": sum(len(node.get_text(" ", strip=True)) for node in matches),
            }
        )
    return {
        "url": page.url,
        "title": soup.title.get_text(strip=True) if soup.title else "",
        "meta_description": meta.get("content", "") if meta else "",
        "main_sections": sections,
        "headings": {level: len(soup.find_all(level)) for level in ("h1", "h2", "h3")},
        "link_count": len(soup.find_all("a", href=True)),
        "article_element_count": len(soup.find_all("article")),
    }


def test_article_link(ctx: ToolContext, url: str) -> dict[str, Any]:
    """Fetch a candidate article and report whether it reads like one."""
    resolved = ctx.resolve(url)
    page = ctx.page_cache.get(resolved)
    if page is None:
        response = fetch_url(resolved, ctx.http, token=ctx.token)
        page = ctx.cache_page(resolved, response.text())
    extracted = extract_readable(page.html)
    content = extracted["content"]
    return {
        "url": resolved,
        "title": extracted["title"],
        "content_length": len(content),
        "excerpt": (extracted["excerpt"] or "")[:200],
        "looks_like_article": len(content) >= ARTICLE_MIN_CHARS,
    }
