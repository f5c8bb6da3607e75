from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Any

from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError

from .agent_loop import FINISHED, Conversation, Planner, run_agent_loop
from .config import Config
from .errors import (
    BlockedUrlError,
    CancelledError,
    FetchError,
    GleanerError,
    SkillValidationError,
)
from .fetching import fetch_url
from .models import RunStatus, SkillResult, Source, Tier, ValidationResult
from .pipelines.content_fetch import MIN_CONTENT_CHARS, extract_readable, extract_with_selector
from .pipelines.render import render_page
from .skills import SKILL_TIERS, SkillDraft, SkillStore, parse_skill, render_skill
from .storage import get_source
from .tasks import CancelToken, TaskRunRegistry
from .tools import DISCOVERY_TOOLS, Tool, ToolContext
from .tools.selectors import element_href
from .utils import absolute_url, log_event, same_origin, utc_now_iso

NO_CONFIGURATION = "agent did not produce a configuration"

logger = logging.getLogger("gleaner.discovery")

SYSTEM_PROMPT = """You work out how to extract news articles from a website.

Goal: find a reliable way to list the article links on the homepage and to read
each article's content, then call finish with instructions another agent can follow.

Approach:
1. fetch_page the homepage (use spa=true if the plain HTML has no article links).
2. get_structure to see the main regions of the page.
3. Try run_selector / run_xpath / run_regex until a query returns the article links
   and little else. Prefer stable selectors over generated class names.
4. test_article_link on two or three candidates to confirm they are real articles.
5. Call finish with:
   - tier: "static" when plain HTTP fetches are enough, "rendered" when a browser is needed
   - instructions: step-by-step extraction instructions in markdown
   - link_selector: CSS selector for article links on the homepage (or url_pattern: regex over link URLs)
   - content_selector: optional CSS selector for the article body
   - max_articles: optional cap per run

finish is only accepted once; do not call it before you have tested the selector."""

FINISH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "tier": {"type": "string", "enum": list(SKILL_TIERS)},
        "instructions": {"type": "string", "minLength": 20},
        "link_selector": {"type": "string"},
        "url_pattern": {"type": "string"},
        "content_selector": {"type": "string"},
        "max_articles": {"type": "integer", "minimum": 1},
        "description": {"type": "string"},
    },
    "required": ["tier", "instructions"],
    "additionalProperties": False,
}


def _finish_handler(ctx: ToolContext, **arguments: Any) -> dict[str, Any]:
    return {"accepted": True}


FINISH = Tool(
    "finish",
    "Submit the extraction configuration. Ends the session.",
    FINISH_SCHEMA,
    _finish_handler,
)


def build_prompt(name: str, homepage_url: str) -> str:
    return (
        f"Source name: {name}\n"
        f"Homepage: {homepage_url}\n\n"
        "Discover how to extract the latest articles from this site, then call finish."
    )


def draft_from_finish(arguments: dict[str, Any]) -> SkillDraft:
    def _text(key: str) -> str | None:
        value = arguments.get(key)
        return value.strip() or None if isinstance(value, str) else None

    return SkillDraft(
        tier=arguments["tier"],
        instructions=arguments["instructions"],
        link_selector=_text("link_selector"),
        url_pattern=_text("url_pattern"),
        content_selector=_text("content_selector"),
        max_articles=arguments.get("max_articles"),
        description=_text("description"),
    )


def _fetch_html(url: str, tier: str, config: Config, token: CancelToken | None) -> str:
    if tier == Tier.RENDERED.value:
        return render_page(url, http=config.http, render=config.render, token=token)
    return fetch_url(url, config.http, token=token).text()


def candidate_links(
    html: str, base_url: str, *, link_selector: str | None, url_pattern: str | None
) -> tuple[list[tuple[str, str]], str | None]:
    """Links with both an href and visible text. Returns (candidates, error)."""
    soup = BeautifulSoup(html, "html.parser")
    candidates: list[tuple[str, str]] = []
    if link_selector:
        try:
            elements = soup.select(link_selector)
        except Exception as exc:  # noqa: BLE001
            return [], f"Link selector {link_selector!r} is not valid CSS: {exc}"
        if not elements:
            return [], f"Link selector {link_selector!r} matched no elements on the homepage"
        for element in elements:
            href = element_href(element, base_url)
            text = element.get_text(" ", strip=True)
            if href and text:
                candidates.append((href, text))
        if not candidates:
            return [], (
                f"Link selector {link_selector!r} matched {len(elements)} elements "
                "but none has both an href and link text"
            )
        return candidates, None

    try:
        pattern = re.compile(url_pattern or "")
    except re.error as exc:
        return [], f"URL pattern {url_pattern!r} is not a valid regular expression: {exc}"
    for anchor in soup.find_all("a", href=True):
        href = absolute_url(base_url, anchor.get("href"))
        text = anchor.get_text(" ", strip=True)
        if not href or not text or not same_origin(href, base_url):
            continue
        if pattern.search(href):
            candidates.append((href, text))
    if not candidates:
        return [], f"URL pattern {url_pattern!r} matched no same-origin links on the homepage"
    return candidates, None


def validate_skill(
    source: Source,
    draft: SkillDraft,
    *,
    config: Config,
    token: CancelToken | None = None,
) -> ValidationResult:
    """Check a draft against the live site before it is installed."""
    try:
        text = render_skill(source, draft, version=source.skill_version + 1, generated_at=utc_now_iso())
        parse_skill(text)
    except SkillValidationError as exc:
        return ValidationResult(valid=False, error=f"Generated skill is invalid: {exc}")
    if not draft.link_selector and not draft.url_pattern:
        return ValidationResult(
            valid=False, error="Skill declares neither a link selector nor a URL pattern"
        )

    try:
        homepage = _fetch_html(source.url, draft.tier, config, token)
    except (FetchError, BlockedUrlError, PlaywrightError, RuntimeError) as exc:
        return ValidationResult(valid=False, error=f"Could not re-fetch homepage: {exc}")

    candidates, error = candidate_links(
        homepage, source.url, link_selector=draft.link_selector, url_pattern=draft.url_pattern
    )
    if error is not None:
        return ValidationResult(valid=False, error=error)

    sample_url = candidates[0][0]
    try:
        article_html = _fetch_html(sample_url, draft.tier, config, token)
    except (FetchError, BlockedUrlError, PlaywrightError, RuntimeError) as exc:
        return ValidationResult(
            valid=False,
            error=f"Could not fetch sample article {sample_url}: {exc}",
            sample_count=len(candidates),
        )
    content = ""
    if draft.content_selector:
        try:
            content = extract_with_selector(article_html, draft.content_selector)
        except ValueError as exc:
            return ValidationResult(valid=False, error=str(exc), sample_count=len(candidates))
    if len(content) < MIN_CONTENT_CHARS:
        content = extract_readable(article_html)["content"]
    if len(content) < MIN_CONTENT_CHARS:
        return ValidationResult(
            valid=False,
            error=f"Could not extract content from sample article {sample_url}",
            sample_count=len(candidates),
        )
    return ValidationResult(valid=True, error=None, sample_count=len(candidates))


def _skill_failed(
    error: str,
    registry: TaskRunRegistry | None,
    run_id: int | None,
    meta: dict[str, Any] | None = None,
    validation: ValidationResult | None = None,
) -> SkillResult:
    if registry is not None and run_id is not None:
        registry.finish(run_id, RunStatus.ERROR, {"error": error, **(meta or {})})
    return SkillResult(success=False, error=error, validation=validation)


def generate_skill(
    conn,
    source_id: str,
    homepage_url: str | None = None,
    name: str | None = None,
    *,
    config: Config,
    store: SkillStore,
    planner: Planner,
    registry: TaskRunRegistry | None = None,
    token: CancelToken | None = None,
    on_step=None,
) -> SkillResult:
    """Run discovery for a source and install the skill it produces.

    Failures come back as ``SkillResult(success=False)``; only cancellation and
    unexpected errors are raised.
    """
    source = get_source(conn, source_id)
    if source is None:
        return SkillResult(success=False, error=f"Source {source_id} not found")
    source = replace(source, url=homepage_url or source.url, name=name or source.name)

    token = token or CancelToken()
    run_id = None
    if registry is not None:
        run_id = registry.start(
            "skill", f"Skill: {source.name}", {"source_id": source.id, "url": source.url}, token
        )

    ctx = ToolContext(
        base_url=source.url,
        http=config.http,
        render=config.render,
        continue_on_error=config.agents.continue_on_error,
        token=token,
    )
    conversation = Conversation(
        system=SYSTEM_PROMPT,
        prompt=build_prompt(source.name, source.url),
        tools=list(DISCOVERY_TOOLS) + [FINISH],
        temperature=config.agents.temperature,
    )
    log_event(
        logger,
        logging.INFO,
        "discovery_started",
        source_id=source.id,
        url=source.url,
        max_steps=config.agents.discovery_max_steps,
    )
    try:
        loop = run_agent_loop(
            planner,
            conversation,
            ctx,
            max_steps=config.agents.discovery_max_steps,
            terminal=frozenset({FINISH.name}),
            on_step=on_step,
            agent="discovery",
        )
        if loop.outcome != FINISHED or loop.finish_call is None:
            log_event(
                logger,
                logging.WARNING,
                "discovery_failed",
                source_id=source.id,
                outcome=loop.outcome,
                steps=loop.steps,
            )
            return _skill_failed(NO_CONFIGURATION, registry, run_id, {"steps": loop.steps})

        draft = draft_from_finish(loop.finish_call.arguments)
        validation = validate_skill(source, draft, config=config, token=token)
        if not validation.valid:
            log_event(
                logger,
                logging.WARNING,
                "skill_rejected",
                source_id=source.id,
                error=validation.error,
            )
            return _skill_failed(
                validation.error or "validation failed",
                registry,
                run_id,
                {"steps": loop.steps},
                validation=validation,
            )

        path, document = store.install(conn, source, draft)
    except CancelledError as exc:
        if registry is not None:
            registry.finish(run_id, RunStatus.STOPPED, {"error": str(exc)})
        raise
    except GleanerError as exc:
        log_event(logger, logging.WARNING, "discovery_failed", source_id=source.id, error=str(exc))
        return _skill_failed(str(exc), registry, run_id)
    except Exception as exc:
        if registry is not None:
            registry.finish(run_id, RunStatus.ERROR, {"error": str(exc)})
        raise
    finally:
        ctx.close()

    if registry is not None:
        registry.finish(
            run_id,
            RunStatus.SUCCESS,
            {"skill_path": path, "version": document.version, "steps": loop.steps},
        )
    return SkillResult(success=True, skill_path=path, validation=validation)


def regenerate_skill(conn, source_id: str, **kwargs: Any) -> SkillResult:
    source = get_source(conn, source_id)
    if source is None:
        return SkillResult(success=False, error=f"Source {source_id} not found")
    return generate_skill(conn, source_id, source.url, source.name, **kwargs)
