from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.request
from typing import Any

from ..config import LlmConfig
from ..errors import PlannerError

ANTHROPIC_VERSION = "2023-06-01"


def chat_completion(llm: LlmConfig, payload: dict[str, Any]) -> dict[str, Any]:
    """POST one chat request to the configured provider and return the decoded body."""
    base_url = llm.base_url or _default_base_url(llm.provider)
    if llm.provider == "openai_compatible":
        path = _join_url(base_url, "/chat/completions")
    elif llm.provider == "anthropic":
        path = _join_url(base_url, "/messages")
    else:
        raise PlannerError("unsupported_provider_type")
    headers = _auth_headers(llm.provider, llm.api_key)
    return _http_request("POST", path, headers, payload, llm.timeout_s)


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise PlannerError(f"http_error {exc.code}: {raw[:500]}") from exc
    except TimeoutError as exc:
        raise PlannerError(f"timeout after {timeout}s") from exc
    except (urllib.error.URLError, OSError, http.client.HTTPException) as exc:
        raise PlannerError(f"network_error: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PlannerError(f"invalid_json_response: {raw[:200]}") from exc


def _auth_headers(provider_type: str, api_key: str | None) -> dict[str, str]:
    if provider_type == "anthropic":
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if api_key:
            headers["x-api-key"] = api_key
        return headers
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    return ""


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
