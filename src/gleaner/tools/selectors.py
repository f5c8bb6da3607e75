from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from lxml import etree
from lxml import html as lxml_html

from ..errors import ToolError
from ..utils import absolute_url, same_origin
from .context import ToolContext

DEFAULT_LIMIT = 20
MAX_REGEX_MATCHES = 50
TEXT_CHARS = 200
HTML_CHARS = 500

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}


def is_article_like(url: str | None, base_url: str) -> bool:
    if not url or not same_origin(url, base_url):
        return False
    return urlsplit(url).path.strip("/") != ""


def element_href(element, base_url: str) -> str | None:
    if element.name == "a":
        return absolute_url(base_url, element.get("href"))
    anchor = element.find("a", href=True)
    return absolute_url(base_url, anchor.get("href")) if anchor else None


def run_selector(
    ctx: ToolContext, url: str, selector: str, limit: int = DEFAULT_LIMIT
) -> dict[str, Any]:
    page = ctx.get_page(url, "run_selector")
    soup = BeautifulSoup(page.html, "html.parser")
    try:
        matches = soup.select(selector)
    except Exception as exc:  # noqa: BLE001
        raise ToolError("run_selector", f"invalid selector {selector!r}: {exc}") from exc
    results = []
    article_like = 0
    for element in matches:
        href = element_href(element, page.url)
        if is_article_like(href, page.url):
            article_like += 1
        if len(results) >= limit:
            continue
        results.append(
            {
                "text": element.get_text(" ", strip=True)[:TEXT_CHARS],
                "href": href,
                "tag": element.name,
                "classes": list(element.get("class") or []),
                "html": str(element)[:HTML_CHARS],
            }
        )
    return {
        "selector": selector,
        "total_matches": len(matches),
        "article_like_links": article_like,
        "results": results,
    }


def run_xpath(
    ctx: ToolContext, url: str, xpath: str, limit: int = DEFAULT_LIMIT
) -> dict[str, Any]:
    page = ctx.get_page(url, "run_xpath")
    try:
        tree = lxml_html.fromstring(page.html)
    except etree.ParserError as exc:
        raise ToolError("run_xpath", f"cannot parse {page.url}: {exc}") from exc
    try:
        found = tree.xpath(xpath)
    except etree.XPathError as exc:
        raise ToolError("run_xpath", f"invalid xpath {xpath!r}: {exc}") from exc
    if not isinstance(found, list):
        found = [found]
    results = []
    for node in found[:limit]:
        if isinstance(node, etree._Element):
            href = absolute_url(page.url, node.get("href")) if node.get("href") else None
            results.append(
                {
                    "text": " ".join(node.text_content().split())[:TEXT_CHARS],
                    "href": href,
                    "html": etree.tostring(node, encoding="unicode")[:HTML_CHARS],
                    "node_type": "element",
                }
            )
        else:
            results.append({"text": str(node)[:TEXT_CHARS], "href": None, "html": None, "node_type": "text"})
    return {"xpath": xpath, "total_matches": len(found), "results": results}


def run_regex(
    ctx: ToolContext, url: str, pattern: str, flags: str = "gi", target: str = "html"
) -> dict[str, Any]:
    page = ctx.get_page(url, "run_regex")
    compiled_flags = 0
    for flag in flags or "":
        compiled_flags |= _REGEX_FLAGS.get(flag, 0)
    try:
        compiled = re.compile(pattern, compiled_flags)
    except re.error as exc:
        raise ToolError("run_regex", f"invalid pattern {pattern!r}: {exc}") from exc
    if target == "text":
        haystack = BeautifulSoup(page.html, "html.parser").get_text(" ", strip=True)
    else:
        haystack = page.html
    matches = []
    total = 0
    for match in compiled.finditer(haystack):
        total += 1
        if len(matches) < MAX_REGEX_MATCHES:
            matches.append({"full": match.group(0), "groups": list(match.groups()), "index": match.start()})
        if "g" not in flags:
            break
    return {"pattern": pattern, "target": target, "total_matches": total, "matches": matches}
