from __future__ import annotations

import logging
from typing import Any

from .agent_loop import BUDGET_EXHAUSTED, Conversation, Planner, run_agent_loop
from .config import Config
from .errors import PreconditionError
from .handoff import ArticleHandoff
from .models import ExtractionResult, ExtractionStats, NewArticle, Source
from .skills import SkillDocument, SkillStore
from .storage import article_url_exists, get_source, insert_article
from .tasks import CancelToken
from .tools import EXTRACTION_TOOLS, Tool, ToolContext
from .utils import log_event, parse_date_text, utc_now_iso

logger = logging.getLogger("gleaner.extraction")

SYSTEM_PROMPT = """You extract news articles from a website by following a stored extraction skill.

Tools:
- fetch_page(url, spa?, prefer_markdown?): fetch and cache a page. Every other page tool needs it first.
- run_selector / run_xpath / run_regex: query a cached page.
- test_article_link(url): fetch a candidate article and check that it reads like one.
- extract_readable(url): main text, title and excerpt of a cached page.
- parse_date(text): normalize a date string to ISO 8601.
- navigate, click, type_text, scroll, wait_for, screenshot, evaluate, get_html: drive a headless browser.
- report_articles(articles): save extracted articles.

Rules:
- Call report_articles after every 2-3 extracted articles. Do not wait until the end:
  the run can be cut off at any step and anything not yet reported is lost.
- Each reported article needs url, title and content; excerpt, published_date and author are optional.
- Skip articles you have already reported.
- When there is nothing left to extract, reply with a short summary and no tool call."""

REPORT_ARTICLES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "articles": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "url": {"type": ["string", "null"]},
                    "title": {"type": ["string", "null"]},
                    "content": {"type": ["string", "null"]},
                    "excerpt": {"type": ["string", "null"]},
                    "published_date": {"type": ["string", "null"]},
                    "author": {"type": ["string", "null"]},
                },
            },
        }
    },
    "required": ["articles"],
    "additionalProperties": False,
}


def build_prompt(source: Source, skill: SkillDocument, max_articles: int) -> str:
    return (
        f"Source: {source.name}\n"
        f"Homepage: {skill.homepage_url}\n"
        f"Rendering tier: {skill.tier}\n\n"
        f"Extract up to {max_articles} articles maximum.\n\n"
        "Follow this extraction skill:\n\n"
        f"{skill.body}\n"
    )


class ArticleReporter:
    """Backs the report_articles tool: dedupes by URL and commits each article at once."""

    def __init__(
        self,
        conn,
        source: Source,
        handoff: ArticleHandoff | None,
        stats: ExtractionStats,
    ) -> None:
        self.conn = conn
        self.source = source
        self.handoff = handoff
        self.stats = stats
        self.reported: list[dict[str, Any]] = []

    def tool(self) -> Tool:
        return Tool(
            "report_articles",
            "Save a batch of extracted articles. Call it every 2-3 articles.",
            REPORT_ARTICLES_SCHEMA,
            self.report,
        )

    def report(self, ctx: ToolContext, articles: list[dict[str, Any]]) -> dict[str, Any]:
        inserted = skipped = failed = 0
        new_ids: list[int] = []
        for item in articles:
            url = (item.get("url") or "").strip()
            title = (item.get("title") or "").strip()
            content = (item.get("content") or "").strip()
            if not url or not title or not content:
                skipped += 1
                continue
            url = ctx.resolve(url)
            if article_url_exists(self.conn, url):
                skipped += 1
                continue
            article = NewArticle(
                url=url,
                title=title,
                content=content,
                excerpt=(item.get("excerpt") or "").strip() or None,
                published_at=parse_date_text(item.get("published_date")),
                author=(item.get("author") or "").strip() or None,
            )
            try:
                article_id = insert_article(self.conn, self.source.id, article, fetched_at=utc_now_iso())
            except Exception as exc:  # noqa: BLE001
                failed += 1
                log_event(
                    logger,
                    logging.ERROR,
                    "article_insert_failed",
                    source_id=self.source.id,
                    url=url,
                    error=str(exc),
                )
                continue
            if article_id is None:
                skipped += 1
                continue
            inserted += 1
            new_ids.append(article_id)
            self.reported.append({"id": article_id, "url": url, "title": title})

        self.stats.inserted += inserted
        self.stats.skipped += skipped
        self.stats.failed += failed
        if new_ids and self.handoff is not None:
            self.handoff.submit(new_ids)
        log_event(
            logger,
            logging.INFO,
            "articles_reported",
            source_id=self.source.id,
            received=len(articles),
            inserted=inserted,
            skipped=skipped,
            failed=failed,
        )
        return {"received": len(articles), "inserted": inserted, "skipped": skipped, "failed": failed}


def extract_articles(
    conn,
    source_id: str,
    *,
    config: Config,
    store: SkillStore,
    planner: Planner,
    handoff: ArticleHandoff | None = None,
    token: CancelToken | None = None,
    continue_on_error: bool | None = None,
    on_step=None,
) -> ExtractionResult:
    source = get_source(conn, source_id)
    if source is None:
        raise PreconditionError(f"Source {source_id} not found")
    if not store.is_installed(source):
        raise PreconditionError(f"No skill found for source {source_id}. Generate a skill first.")
    skill = store.read(source.id)

    tolerate = config.agents.continue_on_error if continue_on_error is None else continue_on_error
    ctx = ToolContext(
        base_url=skill.homepage_url or source.url,
        http=config.http,
        render=config.render,
        continue_on_error=tolerate,
        token=token or CancelToken(),
    )
    stats = ExtractionStats()
    reporter = ArticleReporter(conn, source, handoff, stats)
    max_articles = int(skill.hints.get("max_articles") or config.agents.max_articles)
    conversation = Conversation(
        system=SYSTEM_PROMPT,
        prompt=build_prompt(source, skill, max_articles),
        tools=list(EXTRACTION_TOOLS) + [reporter.tool()],
        temperature=config.agents.temperature,
    )
    log_event(
        logger,
        logging.INFO,
        "extraction_started",
        source_id=source.id,
        skill_version=skill.version,
        max_steps=config.agents.extraction_max_steps,
        continue_on_error=tolerate,
    )
    try:
        loop = run_agent_loop(
            planner,
            conversation,
            ctx,
            max_steps=config.agents.extraction_max_steps,
            on_step=on_step,
            agent="extraction",
        )
    finally:
        ctx.close()

    completed = loop.outcome != BUDGET_EXHAUSTED
    log_event(
        logger,
        logging.INFO if completed else logging.WARNING,
        "extraction_finished",
        source_id=source.id,
        outcome=loop.outcome,
        steps=loop.steps,
        inserted=stats.inserted,
        skipped=stats.skipped,
        failed=stats.failed,
    )
    return ExtractionResult(
        articles=list(reporter.reported),
        inserted=stats.inserted,
        skipped=stats.skipped,
        failed=stats.failed,
        completed=completed,
        steps=loop.steps,
    )
