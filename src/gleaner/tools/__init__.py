from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import jsonschema
from playwright.sync_api import Error as PlaywrightError

from ..errors import BlockedUrlError, CancelledError, FetchError, ToolError
from ..utils import log_event
from . import browser, content, page, selectors
from .context import CachedPage, ToolContext

logger = logging.getLogger("gleaner.tools")


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: Callable[..., dict[str, Any]]

    def definition(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


def _schema(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required or [],
        "additionalProperties": False,
    }


_URL = {"type": "string", "minLength": 1, "description": "Absolute URL or path relative to the source"}
_SELECTOR = {"type": "string", "minLength": 1}
_LIMIT = {"type": "integer", "minimum": 1, "maximum": 100}

FETCH_PAGE = Tool(
    "fetch_page",
    "Fetch a page and cache it for the other tools. Set spa=true for script-rendered pages "
    "and prefer_markdown=true to ask the server for a text/markdown rendition.",
    _schema(
        {"url": _URL, "spa": {"type": "boolean"}, "prefer_markdown": {"type": "boolean"}},
        ["url"],
    ),
    page.fetch_page,
)
GET_STRUCTURE = Tool(
    "get_structure",
    "Summarize a cached page: title, meta description, candidate content regions, link counts.",
    _schema({"url": _URL}, ["url"]),
    page.get_structure,
)
TEST_ARTICLE_LINK = Tool(
    "test_article_link",
    "Fetch a candidate article URL and report its title, content length and whether it "
    "looks like an article.",
    _schema({"url": _URL}, ["url"]),
    page.test_article_link,
)
RUN_SELECTOR = Tool(
    "run_selector",
    "Run a CSS selector against a cached page. Reports total matches, same-site article-like "
    "links and up to `limit` matched elements.",
    _schema({"url": _URL, "selector": _SELECTOR, "limit": _LIMIT}, ["url", "selector"]),
    selectors.run_selector,
)
RUN_XPATH = Tool(
    "run_xpath",
    "Run an XPath expression against a cached page.",
    _schema({"url": _URL, "xpath": _SELECTOR, "limit": _LIMIT}, ["url", "xpath"]),
    selectors.run_xpath,
)
RUN_REGEX = Tool(
    "run_regex",
    "Run a regular expression over a cached page's raw HTML or extracted text. Flags: g, i, m, s.",
    _schema(
        {
            "url": _URL,
            "pattern": {"type": "string", "minLength": 1},
            "flags": {"type": "string", "pattern": "^[gimsx]*$"},
            "target": {"type": "string", "enum": ["html", "text"]},
        },
        ["url", "pattern"],
    ),
    selectors.run_regex,
)
EXTRACT_READABLE = Tool(
    "extract_readable",
    "Extract the main readable content (title, text, excerpt) from a cached page.",
    _schema({"url": _URL}, ["url"]),
    content.extract_readable,
)
PARSE_DATE = Tool(
    "parse_date",
    "Parse a free-text date into an ISO 8601 UTC timestamp.",
    _schema({"text": {"type": "string", "minLength": 1}}, ["text"]),
    content.parse_date,
)
NAVIGATE = Tool(
    "navigate",
    "Open a URL in the shared headless browser, wait for the network to settle and cache the DOM.",
    _schema({"url": _URL}, ["url"]),
    browser.navigate,
)
CLICK = Tool(
    "click",
    "Click the first element matching a selector in the browser.",
    _schema({"selector": _SELECTOR}, ["selector"]),
    browser.click,
)
TYPE_TEXT = Tool(
    "type_text",
    "Fill an input matching a selector with text.",
    _schema({"selector": _SELECTOR, "text": {"type": "string"}}, ["selector", "text"]),
    browser.type_text,
)
SCROLL = Tool(
    "scroll",
    "Scroll the browser page down by a number of pixels (default 500).",
    _schema({"pixels": {"type": "integer"}}),
    browser.scroll,
)
WAIT_FOR = Tool(
    "wait_for",
    "Wait until an element matching a selector appears (default timeout 10s).",
    _schema(
        {"selector": _SELECTOR, "timeout_ms": {"type": "integer", "minimum": 1, "maximum": 60000}},
        ["selector"],
    ),
    browser.wait_for,
)
SCREENSHOT = Tool(
    "screenshot",
    "Capture a PNG screenshot of the browser page as base64.",
    _schema({}),
    browser.screenshot,
)
EVALUATE = Tool(
    "evaluate",
    "Evaluate a JavaScript expression in the browser page and return its JSON result.",
    _schema({"script": {"type": "string", "minLength": 1}}, ["script"]),
    browser.evaluate,
)
GET_HTML = Tool(
    "get_html",
    "Cache the browser's current live DOM under its current URL.",
    _schema({}),
    browser.get_html,
)

BROWSER_TOOLS = (NAVIGATE, CLICK, TYPE_TEXT, SCROLL, WAIT_FOR, SCREENSHOT, EVALUATE, GET_HTML)

DISCOVERY_TOOLS = (
    FETCH_PAGE,
    GET_STRUCTURE,
    RUN_SELECTOR,
    RUN_XPATH,
    RUN_REGEX,
    TEST_ARTICLE_LINK,
    EXTRACT_READABLE,
    PARSE_DATE,
) + BROWSER_TOOLS

EXTRACTION_TOOLS = (
    FETCH_PAGE,
    RUN_SELECTOR,
    RUN_XPATH,
    RUN_REGEX,
    TEST_ARTICLE_LINK,
    EXTRACT_READABLE,
    PARSE_DATE,
) + BROWSER_TOOLS

RECOVERABLE_ERRORS = (
    ToolError,
    FetchError,
    BlockedUrlError,
    PlaywrightError,
    RuntimeError,
    ValueError,
)


def execute_tool(
    ctx: ToolContext, tools: dict[str, Tool], name: str, arguments: dict[str, Any]
) -> dict[str, Any]:
    """Run one tool call; failures become ``{"error": ...}`` when the run tolerates them."""
    ctx.token.raise_if_cancelled()
    try:
        tool = tools.get(name)
        if tool is None:
            raise ToolError(name, f"Unknown tool: {name}")
        try:
            jsonschema.validate(arguments, tool.parameters)
        except jsonschema.ValidationError as exc:
            raise ToolError(name, f"invalid arguments: {exc.message}") from exc
        result = tool.handler(ctx, **arguments)
    except CancelledError:
        raise
    except RECOVERABLE_ERRORS as exc:
        message = str(exc) if isinstance(exc, ToolError) else f"{name}: {exc}"
        log_event(logger, logging.WARNING, "tool_failed", tool=name, error=message)
        if not ctx.continue_on_error:
            if isinstance(exc, ToolError):
                raise
            raise ToolError(name, str(exc)) from exc
        return {"error": message}
    ctx.token.raise_if_cancelled()
    return result


def tool_map(*groups) -> dict[str, Tool]:
    mapping: dict[str, Tool] = {}
    for group in groups:
        for tool in group:
            mapping[tool.name] = tool
    return mapping


__all__ = [
    "BROWSER_TOOLS",
    "CachedPage",
    "DISCOVERY_TOOLS",
    "EXTRACTION_TOOLS",
    "Tool",
    "ToolContext",
    "execute_tool",
    "tool_map",
]
