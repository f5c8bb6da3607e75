from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import urljoin

from ..config import HttpConfig, RenderConfig
from ..errors import ToolError
from ..pipelines.render import BrowserSession, StaticBrowserSession, new_browser_session
from ..tasks import CancelToken
from ..utils import log_event

logger = logging.getLogger("gleaner.tools")


@dataclass
class CachedPage:
    url: str
    html: str
    markdown: str | None = None
    rendered: bool = False


@dataclass
class ToolContext:
    """State owned by exactly one agent run: page cache and an optional browser."""

    base_url: str
    http: HttpConfig
    render: RenderConfig
    continue_on_error: bool = True
    token: CancelToken = field(default_factory=CancelToken)
    page_cache: dict[str, CachedPage] = field(default_factory=dict)
    _browser: BrowserSession | StaticBrowserSession | None = field(default=None, repr=False)

    @property
    def browser(self) -> BrowserSession | StaticBrowserSession:
        if self._browser is None:
            self._browser = new_browser_session(self.http, self.render, self.token)
            log_event(logger, logging.DEBUG, "browser_session_opened", base_url=self.base_url)
        return self._browser

    @property
    def has_browser(self) -> bool:
        return self._browser is not None

    def resolve(self, url: str) -> str:
        return urljoin(self.base_url, url.strip())

    def cache_page(self, url: str, html: str, *, markdown: str | None = None, rendered: bool = False) -> CachedPage:
        page = CachedPage(url=url, html=html, markdown=markdown, rendered=rendered)
        self.page_cache[url] = page
        return page

    def get_page(self, url: str, tool: str) -> CachedPage:
        resolved = self.resolve(url)
        page = self.page_cache.get(resolved) or self.page_cache.get(url)
        if page is None:
            raise ToolError(tool, f"Page not cached: {url}. Call fetch_page first.")
        return page

    def close(self) -> None:
        if self._browser is None:
            return
        browser, self._browser = self._browser, None
        browser.close()
        log_event(logger, logging.DEBUG, "browser_session_closed", base_url=self.base_url)
