from __future__ import annotations

import logging
from typing import Callable

from .agent_loop import Planner
from .config import TIER_POLICIES, Config, HealthConfig
from .errors import (
    CancelledError,
    FetchError,
    PlannerError,
    PreconditionError,
    SkillValidationError,
    SourceExhaustedError,
    TierError,
    ToolError,
)
from .extraction_agent import extract_articles
from .handoff import ArticleHandoff
from .health import record_failure, record_success
from .ingest import scrape_feed
from .models import ArticleContent, NewArticle, RunStatus, ScrapeResult, Source, SourceType, Tier, TierOutcome
from .pipelines.content_fetch import fetch_article_content
from .pipelines.render import fetch_rendered_content
from .skills import SkillStore
from .storage import get_source, insert_article, mark_fetched, set_scraping_strategy
from .tasks import CancelToken, TaskRunRegistry
from .utils import log_event, utc_now_iso

STRICT, ESCALATE = TIER_POLICIES

PlannerFactory = Callable[[], Planner]

logger = logging.getLogger("gleaner.scraper")


def tier_order(
    source: Source,
    *,
    skill_installed: bool,
    policy: str = STRICT,
    health: HealthConfig | None = None,
) -> list[Tier]:
    """Ordered tiers to attempt for a source. Raises PreconditionError for a site with no skill
    under the strict policy.
    """
    if source.type == SourceType.FEED:
        return [Tier.FEED]
    if policy == STRICT:
        if not skill_installed:
            raise PreconditionError(
                f"Source {source.id} has no skill installed. Generate a skill first."
            )
        return [Tier.SKILL]
    if policy != ESCALATE:
        raise ValueError(f"unknown tier policy: {policy}")

    order = [Tier.STATIC, Tier.RENDERED]
    if skill_installed:
        order.append(Tier.SKILL)
    cached = source.scraping_strategy
    if cached in order:
        order.remove(cached)
        order.insert(0, cached)
    degraded_at = health.degraded_threshold if health is not None else 3
    if skill_installed and source.consecutive_failures >= degraded_at:
        order.remove(Tier.SKILL)
        order.insert(0, Tier.SKILL)
    return order


def _insert_single(conn, source: Source, content: ArticleContent) -> TierOutcome:
    article = NewArticle(
        url=content.url,
        title=content.title,
        content=content.content,
        excerpt=content.excerpt,
        raw_html=content.html,
    )
    article_id = insert_article(conn, source.id, article, fetched_at=utc_now_iso())
    if article_id is None:
        return TierOutcome(inserted=0, skipped=1)
    return TierOutcome(inserted=1, skipped=0, article_ids=[article_id])


def run_tier(
    tier: Tier,
    conn,
    source: Source,
    *,
    config: Config,
    store: SkillStore,
    planner_factory: PlannerFactory | None,
    handoff: ArticleHandoff | None,
    token: CancelToken,
) -> TierOutcome:
    if tier == Tier.FEED:
        return scrape_feed(conn, source, config.http, logger, token)
    if tier == Tier.STATIC:
        content = fetch_article_content(source.url, http=config.http, logger=logger, token=token)
        return _insert_single(conn, source, content)
    if tier == Tier.RENDERED:
        content = fetch_rendered_content(
            source.url, http=config.http, render=config.render, logger=logger, token=token
        )
        return _insert_single(conn, source, content)

    if planner_factory is None:
        raise TierError(Tier.SKILL.value, "no planner configured")
    try:
        result = extract_articles(
            conn,
            source.id,
            config=config,
            store=store,
            planner=planner_factory(),
            handoff=handoff,
            token=token,
        )
    except (ToolError, PlannerError, FetchError, SkillValidationError, PreconditionError) as exc:
        raise TierError(Tier.SKILL.value, str(exc)) from exc
    return TierOutcome(
        inserted=result.inserted,
        skipped=result.skipped,
        article_ids=[item["id"] for item in result.articles],
    )


def scrape_source(
    conn,
    source_id: str,
    *,
    config: Config,
    store: SkillStore,
    planner_factory: PlannerFactory | None = None,
    registry: TaskRunRegistry | None = None,
    handoff: ArticleHandoff | None = None,
    token: CancelToken | None = None,
    run_id: int | None = None,
) -> ScrapeResult:
    """Try each tier in order; the first success wins and is cached on the source.

    ``run_id`` continues a task run the caller already opened (e.g. when queued).
    """
    source = get_source(conn, source_id)
    if source is None:
        error = PreconditionError(f"Source {source_id} not found")
        _finish(registry, run_id, RunStatus.ERROR, {"error": str(error)})
        raise error

    token = token or CancelToken()
    if registry is not None and run_id is not None:
        registry.update(run_id, {"source_id": source.id, "url": source.url, "queued": False})
    elif registry is not None:
        run_id = registry.start(
            "fetch-source",
            f"Fetch: {source.name}",
            {"source_id": source.id, "url": source.url},
            token,
        )

    try:
        tiers = tier_order(
            source,
            skill_installed=store.is_installed(source),
            policy=config.scraping.tier_policy,
            health=config.health,
        )
    except PreconditionError as exc:
        _finish(registry, run_id, RunStatus.ERROR, {"error": str(exc)})
        raise

    attempts: list[tuple[str, str]] = []
    try:
        for tier in tiers:
            token.raise_if_cancelled()
            log_event(logger, logging.INFO, "tier_attempt", source_id=source.id, tier=tier.value)
            if registry is not None:
                registry.update(run_id, {"tier": tier.value})
            try:
                outcome = run_tier(
                    tier,
                    conn,
                    source,
                    config=config,
                    store=store,
                    planner_factory=planner_factory,
                    handoff=handoff,
                    token=token,
                )
            except TierError as exc:
                attempts.append((tier.value, exc.message))
                log_event(
                    logger,
                    logging.WARNING,
                    "tier_failed",
                    source_id=source.id,
                    tier=tier.value,
                    error=exc.message,
                )
                continue

            set_scraping_strategy(conn, source.id, tier)
            mark_fetched(conn, source.id)
            record_success(conn, source.id)
            if handoff is not None and tier != Tier.SKILL:
                handoff.submit(outcome.article_ids)
            log_event(
                logger,
                logging.INFO,
                "source_scraped",
                source_id=source.id,
                tier=tier.value,
                inserted=outcome.inserted,
                skipped=outcome.skipped,
            )
            _finish(
                registry,
                run_id,
                RunStatus.SUCCESS,
                {"inserted": outcome.inserted, "skipped": outcome.skipped, "tier": tier.value},
            )
            return ScrapeResult(inserted=outcome.inserted, skipped=outcome.skipped, tier=tier)
    except CancelledError:
        _finish(registry, run_id, RunStatus.STOPPED, {"attempts": len(attempts)})
        raise
    except Exception as exc:
        _finish(registry, run_id, RunStatus.ERROR, {"error": str(exc)})
        raise

    status = record_failure(conn, source.id, config.health)
    error = SourceExhaustedError(source.id, attempts)
    log_event(
        logger,
        logging.ERROR,
        "source_exhausted",
        source_id=source.id,
        health=status.value if status is not None else None,
        error=str(error),
    )
    _finish(registry, run_id, RunStatus.ERROR, {"error": str(error)})
    raise error


def _finish(registry: TaskRunRegistry | None, run_id: int | None, status: RunStatus, meta: dict) -> None:
    if registry is not None and run_id is not None:
        registry.finish(run_id, status, meta)
