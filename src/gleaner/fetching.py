from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import Request, urlopen

from .config import HttpConfig
from .errors import BlockedUrlError, FetchError
from .tasks import CancelToken
from .utils import env_flag, log_event

BLOCKED_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1", "[::1]"}
READ_CHUNK_BYTES = 64 * 1024

logger = logging.getLogger("gleaner.fetching")

_FIXTURES: dict[str, "FetchResponse"] = {}
_FIXTURES_LOCK = threading.Lock()


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: int
    content: bytes
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)

    def text(self) -> str:
        charset = "utf-8"
        if "charset=" in self.content_type:
            charset = self.content_type.split("charset=", 1)[1].split(";")[0].strip() or "utf-8"
        try:
            return self.content.decode(charset, errors="replace")
        except LookupError:
            return self.content.decode("utf-8", errors="replace")

    @property
    def media_type(self) -> str:
        return self.content_type.split(";")[0].strip().lower()


def validate_url(url: str) -> None:
    try:
        parsed = urlsplit(url)
    except ValueError as exc:
        raise BlockedUrlError(f"Invalid URL: {url}") from exc
    if parsed.scheme not in ("http", "https"):
        raise BlockedUrlError(f"Blocked URL scheme: {parsed.scheme or '(none)'}")
    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise BlockedUrlError(f"Invalid URL: {url}")
    if hostname in BLOCKED_HOSTS:
        raise BlockedUrlError(f"Blocked host: {hostname}")
    try:
        address = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return
    if address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified:
        raise BlockedUrlError(f"Blocked private address: {hostname}")


def register_fixture(
    url: str, body: str | bytes, content_type: str = "text/html; charset=utf-8", status: int = 200
) -> None:
    """Serve ``body`` for ``url`` while GL_MOCK_TOOLS is enabled."""
    content = body.encode("utf-8") if isinstance(body, str) else body
    with _FIXTURES_LOCK:
        _FIXTURES[url] = FetchResponse(
            url=url, status=status, content=content, content_type=content_type
        )


def clear_fixtures() -> None:
    with _FIXTURES_LOCK:
        _FIXTURES.clear()


def _fixture_response(url: str) -> FetchResponse:
    with _FIXTURES_LOCK:
        response = _FIXTURES.get(url)
    if response is None:
        raise FetchError(url, f"No fixture registered for {url}", status=404)
    if response.status >= 400:
        raise FetchError(url, f"HTTP {response.status}", status=response.status)
    return response


def fetch_url(
    url: str,
    http: HttpConfig,
    *,
    accept: str | None = None,
    token: CancelToken | None = None,
    headers: dict[str, str] | None = None,
) -> FetchResponse:
    """GET ``url`` with retries on network errors; HTTP errors are not retried."""
    validate_url(url)
    if token is not None:
        token.raise_if_cancelled()
    if env_flag("GL_MOCK_TOOLS"):
        return _fixture_response(url)

    request_headers = {"User-Agent": http.user_agent}
    if accept:
        request_headers["Accept"] = accept
    request_headers.update(headers or {})

    attempt = 0
    while True:
        try:
            request = Request(url, headers=request_headers)
            with urlopen(request, timeout=http.timeout_seconds) as response:
                status = response.getcode() or 200
                content = _read_body(response, http.max_bytes, token)
                response_headers = {key.lower(): value for key, value in response.headers.items()}
            return FetchResponse(
                url=url,
                status=status,
                content=content,
                content_type=response_headers.get("content-type", ""),
                headers=response_headers,
            )
        except HTTPError as exc:
            raise FetchError(url, f"HTTP {exc.code}", status=exc.code) from exc
        except TimeoutError as exc:
            raise FetchError(url, f"timed out after {http.timeout_seconds}s") from exc
        except (URLError, OSError, HTTPException) as exc:
            reason = exc.reason if isinstance(exc, URLError) else exc
            if attempt >= http.max_retries:
                raise FetchError(url, f"network error: {reason}") from exc
            log_event(
                logger,
                logging.DEBUG,
                "fetch_retry",
                url=url,
                attempt=attempt + 1,
                error=str(reason),
            )
            _sleep(http.backoff_seconds * (attempt + 1), token)
            attempt += 1


def fetch_markdown(
    url: str, http: HttpConfig, token: CancelToken | None = None
) -> FetchResponse | None:
    """Ask for a text/markdown rendition; None when the server answers with anything else."""
    response = fetch_url(
        url, http, accept="text/markdown, text/html;q=0.9", token=token
    )
    if response.media_type != "text/markdown":
        return None
    return response


def _read_body(response, max_bytes: int, token: CancelToken | None) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while True:
        if token is not None:
            token.raise_if_cancelled()
        chunk = response.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise FetchError(getattr(response, "url", ""), f"response exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _sleep(seconds: float, token: CancelToken | None) -> None:
    if token is None:
        time.sleep(seconds)
        return
    if token.wait(seconds):
        token.raise_if_cancelled()
