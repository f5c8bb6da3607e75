from __future__ import annotations

from typing import Any

from .context import ToolContext

DEFAULT_SCROLL_PX = 500


def navigate(ctx: ToolContext, url: str) -> dict[str, Any]:
    resolved = ctx.resolve(url)
    html = ctx.browser.navigate(resolved)
    ctx.cache_page(resolved, html, rendered=True)
    return {"success": True, "url": resolved, "length": len(html), "cached": True}


def click(ctx: ToolContext, selector: str) -> dict[str, Any]:
    ctx.browser.click(selector)
    return {"success": True, "selector": selector}


def type_text(ctx: ToolContext, selector: str, text: str) -> dict[str, Any]:
    ctx.browser.type_text(selector, text)
    return {"success": True, "selector": selector}


def scroll(ctx: ToolContext, pixels: int = DEFAULT_SCROLL_PX) -> dict[str, Any]:
    ctx.browser.scroll(pixels)
    return {"success": True, "pixels": pixels}


def wait_for(ctx: ToolContext, selector: str, timeout_ms: int | None = None) -> dict[str, Any]:
    ctx.browser.wait_for(selector, timeout_ms)
    return {"success": True, "selector": selector}


def screenshot(ctx: ToolContext) -> dict[str, Any]:
    return {"success": True, "image_base64": ctx.browser.screenshot(), "mime_type": "image/png"}


def evaluate(ctx: ToolContext, script: str) -> dict[str, Any]:
    return {"success": True, "result": ctx.browser.evaluate(script)}


def get_html(ctx: ToolContext) -> dict[str, Any]:
    browser = ctx.browser
    html = browser.content()
    url = browser.url or ctx.base_url
    ctx.cache_page(url, html, rendered=True)
    return {"success": True, "url": url, "length": len(html), "cached": True}
