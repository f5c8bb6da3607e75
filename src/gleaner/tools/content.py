from __future__ import annotations

from typing import Any

from ..errors import ToolError
from ..pipelines.content_fetch import extract_readable as _extract_readable
from ..utils import normalize_whitespace, parse_date_text
from .context import ToolContext

CONTENT_CHARS = 2000


def extract_readable(ctx: ToolContext, url: str) -> dict[str, Any]:
    page = ctx.get_page(url, "extract_readable")
    if page.markdown:
        lines = [line for line in page.markdown.splitlines() if line.strip()]
        title = lines[0].lstrip("# ").strip() if lines else ""
        body = "\n".join(lines[1:]) if len(lines) > 1 else page.markdown
        return {
            "title": title,
            "content": body[:CONTENT_CHARS],
            "excerpt": normalize_whitespace(body)[:300],
            "format": "markdown",
        }
    extracted = _extract_readable(page.html)
    if not extracted["content"]:
        raise ToolError("extract_readable", f"No readable content found at {page.url}")
    return {
        "title": extracted["title"],
        "content": extracted["content"][:CONTENT_CHARS],
        "excerpt": extracted["excerpt"],
        "format": "html",
    }


def parse_date(ctx: ToolContext, text: str) -> dict[str, Any]:
    parsed = parse_date_text(text)
    if parsed is None:
        raise ToolError("parse_date", f"Could not parse date: {text!r}")
    return {"date": parsed}
