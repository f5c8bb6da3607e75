from __future__ import annotations

import base64
import logging
from typing import Any

from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from ..config import HttpConfig, RenderConfig
from ..errors import BlockedUrlError, FetchError, TierError
from ..fetching import fetch_url, validate_url
from ..models import ArticleContent, Tier
from ..tasks import CancelToken
from ..utils import env_flag, log_event
from .content_fetch import MIN_CONTENT_CHARS, extract_readable

CLICK_SETTLE_MS = 500
LAUNCH_ARGS = ["--no-sandbox", "--disable-dev-shm-usage"]

logger = logging.getLogger("gleaner.render")


class BrowserSession:
    """Headless Chromium page owned by a single run; started on first use."""

    def __init__(
        self,
        http: HttpConfig,
        render: RenderConfig,
        token: CancelToken | None = None,
    ) -> None:
        self.http = http
        self.render = render
        self.token = token
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    @property
    def started(self) -> bool:
        return self._page is not None

    @property
    def url(self) -> str | None:
        return self._page.url if self._page is not None else None

    def _ensure_page(self):
        if self._page is not None:
            return self._page
        self._check_cancelled()
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
        self._context = self._browser.new_context(user_agent=self.http.user_agent)
        self._page = self._context.new_page()
        log_event(logger, logging.DEBUG, "browser_started")
        return self._page

    def navigate(self, url: str) -> str:
        validate_url(url)
        page = self._ensure_page()
        self._check_cancelled()
        page.goto(url, wait_until="networkidle", timeout=self.render.navigation_timeout_ms)
        self._check_cancelled()
        return page.content()

    def click(self, selector: str) -> None:
        page = self._ensure_page()
        page.click(selector, timeout=self.render.action_timeout_ms)
        page.wait_for_timeout(CLICK_SETTLE_MS)

    def type_text(self, selector: str, text: str) -> None:
        page = self._ensure_page()
        page.fill(selector, text, timeout=self.render.action_timeout_ms)

    def scroll(self, pixels: int) -> None:
        page = self._ensure_page()
        page.evaluate("(y) => window.scrollBy(0, y)", pixels)
        page.wait_for_timeout(CLICK_SETTLE_MS)

    def wait_for(self, selector: str, timeout_ms: int | None = None) -> bool:
        page = self._ensure_page()
        page.wait_for_selector(selector, timeout=timeout_ms or self.render.wait_for_timeout_ms)
        return True

    def screenshot(self) -> str:
        page = self._ensure_page()
        return base64.b64encode(page.screenshot(type="png")).decode("ascii")

    def evaluate(self, script: str) -> Any:
        page = self._ensure_page()
        page.set_default_timeout(self.render.action_timeout_ms)
        return page.evaluate(script)

    def content(self) -> str:
        return self._ensure_page().content()

    def close(self) -> None:
        for resource in (self._context, self._browser):
            if resource is None:
                continue
            try:
                resource.close()
            except PlaywrightError as exc:
                log_event(logger, logging.DEBUG, "browser_close_failed", error=str(exc))
        if self._playwright is not None:
            self._playwright.stop()
            log_event(logger, logging.DEBUG, "browser_closed")
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    def _check_cancelled(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()


class StaticBrowserSession:
    """Deterministic stand-in used when GL_MOCK_TOOLS is set: pages come from fetch_url."""

    def __init__(self, http: HttpConfig, render: RenderConfig, token: CancelToken | None = None):
        self.http = http
        self.render = render
        self.token = token
        self._url: str | None = None
        self._html: str | None = None
        self.actions: list[tuple[str, Any]] = []

    @property
    def started(self) -> bool:
        return self._html is not None

    @property
    def url(self) -> str | None:
        return self._url

    def navigate(self, url: str) -> str:
        response = fetch_url(url, self.http, token=self.token)
        self._url = url
        self._html = response.text()
        return self._html

    def click(self, selector: str) -> None:
        self._require_match(selector)
        self.actions.append(("click", selector))

    def type_text(self, selector: str, text: str) -> None:
        self._require_match(selector)
        self.actions.append(("type", (selector, text)))

    def scroll(self, pixels: int) -> None:
        self.actions.append(("scroll", pixels))

    def wait_for(self, selector: str, timeout_ms: int | None = None) -> bool:
        self._require_match(selector)
        return True

    def screenshot(self) -> str:
        return base64.b64encode(b"").decode("ascii")

    def evaluate(self, script: str) -> Any:
        raise RuntimeError("evaluate is not available without a real browser")

    def content(self) -> str:
        if self._html is None:
            raise RuntimeError("No page loaded. Call navigate first.")
        return self._html

    def close(self) -> None:
        self._url = None
        self._html = None

    def _require_match(self, selector: str) -> None:
        soup = BeautifulSoup(self.content(), "html.parser")
        if not soup.select(selector):
            raise RuntimeError(f"No element matches selector: {selector}")


def new_browser_session(
    http: HttpConfig, render: RenderConfig, token: CancelToken | None = None
) -> BrowserSession | StaticBrowserSession:
    if env_flag("GL_MOCK_TOOLS"):
        return StaticBrowserSession(http, render, token)
    return BrowserSession(http, render, token)


def render_page(
    url: str,
    *,
    http: HttpConfig,
    render: RenderConfig,
    token: CancelToken | None = None,
) -> str:
    session = new_browser_session(http, render, token)
    try:
        return session.navigate(url)
    finally:
        session.close()


def fetch_rendered_content(
    url: str,
    *,
    http: HttpConfig,
    render: RenderConfig,
    logger: logging.Logger,
    token: CancelToken | None = None,
) -> ArticleContent:
    """Rendered tier: headless-browser render followed by readability extraction."""
    try:
        html = render_page(url, http=http, render=render, token=token)
    except (PlaywrightError, FetchError, BlockedUrlError, RuntimeError) as exc:
        log_event(logger, logging.WARNING, "render_failed", url=url, error=str(exc))
        raise TierError(Tier.RENDERED.value, str(exc)) from exc
    extracted = extract_readable(html)
    if len(extracted["content"]) < MIN_CONTENT_CHARS:
        raise TierError(Tier.RENDERED.value, f"no readable content at {url}")
    return ArticleContent(
        url=url,
        title=extracted["title"] or url,
        content=extracted["content"],
        excerpt=extracted["excerpt"],
        html=html,
    )
