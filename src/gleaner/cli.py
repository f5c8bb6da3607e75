from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict

from .config import ConfigError, get_state_db_path, load_runtime_config
from .engine import Engine
from .errors import GleanerError, PreconditionError, SourceExhaustedError
from .health import is_stale, stale_sources
from .models import SourceType
from .storage import count_articles, create_source, get_source, init_db, list_sources
from .utils import configure_logging, json_dumps, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("gleaner")


def _db_path(args: argparse.Namespace) -> str:
    return args.db or get_state_db_path()


def _open_engine(args: argparse.Namespace, logger: logging.Logger) -> Engine | None:
    try:
        return Engine.open(_db_path(args))
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        source = create_source(
            conn,
            name=args.name,
            url=args.url,
            source_type=SourceType(args.type),
            source_id=args.id,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "source_added", source_id=source.id, type=source.type.value)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        sources = list_sources(conn, active_only=args.active)
    finally:
        conn.close()
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Add one with `gleaner sources add --name NAME --url URL --type feed`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            type=source.type.value,
            active=source.is_active,
            health=source.health_status.value,
            failures=source.consecutive_failures,
            strategy=source.scraping_strategy.value if source.scraping_strategy else None,
            url=source.url,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        source = get_source(conn, args.source_id)
        if source is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
        payload = asdict(source)
        payload["article_count"] = count_articles(conn, source.id)
        payload["stale"] = is_stale(conn, source.id)
    finally:
        conn.close()
    logger.info(json.dumps(json.loads(json_dumps(payload)), indent=2, sort_keys=True))
    return 0


def _cmd_scrape(args: argparse.Namespace, logger: logging.Logger) -> int:
    engine = _open_engine(args, logger)
    if engine is None:
        return 1
    try:
        result = engine.scrape_source(args.source_id)
    except (PreconditionError, SourceExhaustedError) as exc:
        log_event(logger, logging.ERROR, "scrape_failed", source_id=args.source_id, error=str(exc))
        return 1
    finally:
        engine.close()
    log_event(
        logger,
        logging.INFO,
        "scrape_complete",
        source_id=args.source_id,
        tier=result.tier.value,
        inserted=result.inserted,
        skipped=result.skipped,
    )
    return 0


def _cmd_fetch_all(args: argparse.Namespace, logger: logging.Logger) -> int:
    engine = _open_engine(args, logger)
    if engine is None:
        return 1
    try:
        outcomes = engine.fetch_batch()
    finally:
        engine.close()
    failed = 0
    for source_id, outcome in outcomes.items():
        if isinstance(outcome, BaseException):
            failed += 1
            log_event(logger, logging.ERROR, "source_failed", source_id=source_id, error=str(outcome))
            continue
        log_event(
            logger,
            logging.INFO,
            "source_ok",
            source_id=source_id,
            tier=outcome.tier.value,
            inserted=outcome.inserted,
            skipped=outcome.skipped,
        )
    log_event(logger, logging.INFO, "fetch_all_complete", sources=len(outcomes), failed=failed)
    return 1 if failed and failed == len(outcomes) else 0


def _cmd_skill_generate(args: argparse.Namespace, logger: logging.Logger) -> int:
    engine = _open_engine(args, logger)
    if engine is None:
        return 1
    try:
        if args.regenerate:
            result = engine.regenerate_skill(args.source_id)
        else:
            result = engine.generate_skill(args.source_id, args.url, args.name)
    except GleanerError as exc:
        log_event(logger, logging.ERROR, "skill_failed", source_id=args.source_id, error=str(exc))
        return 1
    finally:
        engine.close()
    if not result.success:
        log_event(logger, logging.ERROR, "skill_failed", source_id=args.source_id, error=result.error)
        return 1
    log_event(
        logger,
        logging.INFO,
        "skill_generated",
        source_id=args.source_id,
        path=result.skill_path,
        sample_links=result.validation.sample_count if result.validation else None,
    )
    return 0


def _cmd_skill_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    engine = _open_engine(args, logger)
    if engine is None:
        return 1
    try:
        document = engine.store.read(args.source_id)
    except GleanerError as exc:
        log_event(logger, logging.ERROR, "skill_not_found", source_id=args.source_id, error=str(exc))
        return 1
    finally:
        engine.close()
    logger.info(document.raw)
    return 0


def _cmd_extract(args: argparse.Namespace, logger: logging.Logger) -> int:
    engine = _open_engine(args, logger)
    if engine is None:
        return 1
    try:
        result = engine.extract_articles(
            args.source_id, continue_on_error=False if args.fail_fast else None
        )
    except GleanerError as exc:
        log_event(logger, logging.ERROR, "extract_failed", source_id=args.source_id, error=str(exc))
        return 1
    finally:
        engine.close()
    log_event(
        logger,
        logging.INFO,
        "extract_complete",
        source_id=args.source_id,
        inserted=result.inserted,
        skipped=result.skipped,
        failed=result.failed,
        completed=result.completed,
        steps=result.steps,
    )
    return 0


def _cmd_health_stale(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        days = args.days
        if days is None:
            try:
                days = load_runtime_config(conn).health.stale_days
            except ConfigError as exc:
                log_event(logger, logging.ERROR, "config_error", error=str(exc))
                return 1
        sources = stale_sources(conn, days)
    finally:
        conn.close()
    for source in sources:
        log_event(
            logger,
            logging.WARNING,
            "source_stale",
            source_id=source.id,
            last_fetched_at=source.last_fetched_at,
        )
    log_event(logger, logging.INFO, "stale_check_complete", stale=len(sources), threshold_days=days)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = _db_path(args)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    init_db(path).close()
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "admin_api_starting", host=args.host, port=args.port)
    uvicorn.run("gleaner.admin:app", host=args.host, port=args.port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gleaner", description="Gleaner source extraction CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $GL_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_add = sources_subparsers.add_parser("add", help="Register a source")
    sources_add.add_argument("--id", default=None, help="Source id (generated when omitted)")
    sources_add.add_argument("--name", required=True)
    sources_add.add_argument("--url", required=True)
    sources_add.add_argument(
        "--type", choices=[item.value for item in SourceType], default=SourceType.FEED.value
    )
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.add_argument("--active", action="store_true", help="Only active sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_show = sources_subparsers.add_parser("show", help="Show a source")
    sources_show.add_argument("source_id")
    sources_show.set_defaults(func=_cmd_sources_show)

    scrape_parser = subparsers.add_parser("scrape", help="Scrape one source now")
    scrape_parser.add_argument("source_id")
    scrape_parser.set_defaults(func=_cmd_scrape)

    fetch_all = subparsers.add_parser("fetch-all", help="Scrape every active source through the queue")
    fetch_all.set_defaults(func=_cmd_fetch_all)

    skill_parser = subparsers.add_parser("skill", help="Extraction skills")
    skill_subparsers = skill_parser.add_subparsers(dest="skill_command", required=True)

    skill_generate = skill_subparsers.add_parser("generate", help="Run discovery for a source")
    skill_generate.add_argument("source_id")
    skill_generate.add_argument("--url", default=None, help="Homepage URL (defaults to the source URL)")
    skill_generate.add_argument("--name", default=None, help="Display name (defaults to the source name)")
    skill_generate.set_defaults(func=_cmd_skill_generate, regenerate=False)

    skill_regenerate = skill_subparsers.add_parser("regenerate", help="Regenerate an existing skill")
    skill_regenerate.add_argument("source_id")
    skill_regenerate.set_defaults(func=_cmd_skill_generate, regenerate=True, url=None, name=None)

    skill_show = skill_subparsers.add_parser("show", help="Print the installed skill")
    skill_show.add_argument("source_id")
    skill_show.set_defaults(func=_cmd_skill_show)

    extract_parser = subparsers.add_parser("extract", help="Run the extraction agent for a source")
    extract_parser.add_argument("source_id")
    extract_parser.add_argument(
        "--fail-fast", action="store_true", help="Abort on the first tool error"
    )
    extract_parser.set_defaults(func=_cmd_extract)

    health_parser = subparsers.add_parser("health", help="Source health")
    health_subparsers = health_parser.add_subparsers(dest="health_command", required=True)
    health_stale = health_subparsers.add_parser("stale", help="List stale active sources")
    health_stale.add_argument("--days", type=int, default=None)
    health_stale.set_defaults(func=_cmd_health_stale)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the admin HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
