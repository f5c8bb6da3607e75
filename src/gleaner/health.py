from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from .config import HealthConfig
from .models import HealthStatus, Source
from .storage import (
    get_newest_published_at,
    get_source,
    list_sources,
    update_source_health,
)
from .utils import log_event, parse_iso, utc_now, utc_now_iso

DEGRADED_THRESHOLD = 3
DEAD_THRESHOLD = 7
STALE_DAYS = 30

_DEFAULT_HEALTH = HealthConfig(
    degraded_threshold=DEGRADED_THRESHOLD,
    dead_threshold=DEAD_THRESHOLD,
    stale_days=STALE_DAYS,
)

logger = logging.getLogger("gleaner.health")


def status_for_failures(failures: int, health: HealthConfig = _DEFAULT_HEALTH) -> HealthStatus:
    if failures >= health.dead_threshold:
        return HealthStatus.DEAD
    if failures >= health.degraded_threshold:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def record_success(conn: Any, source_id: str) -> None:
    source = get_source(conn, source_id)
    if source is None:
        return
    update_source_health(
        conn,
        source_id,
        consecutive_failures=0,
        health_status=HealthStatus.HEALTHY,
        last_error_at=None,
    )
    if source.health_status != HealthStatus.HEALTHY or source.consecutive_failures:
        log_event(
            logger,
            logging.INFO,
            "source_health_recovered",
            source_id=source_id,
            previous=source.health_status.value,
            previous_failures=source.consecutive_failures,
        )


def record_failure(
    conn: Any, source_id: str, health: HealthConfig = _DEFAULT_HEALTH
) -> HealthStatus | None:
    source = get_source(conn, source_id)
    if source is None:
        return None
    failures = source.consecutive_failures + 1
    status = status_for_failures(failures, health)
    update_source_health(
        conn,
        source_id,
        consecutive_failures=failures,
        health_status=status,
        last_error_at=utc_now_iso(),
        is_active=False if status == HealthStatus.DEAD else None,
    )
    if status != source.health_status:
        log_event(
            logger,
            logging.WARNING,
            "source_health_changed",
            source_id=source_id,
            previous=source.health_status.value,
            status=status.value,
            consecutive_failures=failures,
        )
    if status == HealthStatus.DEAD and source.is_active:
        log_event(logger, logging.WARNING, "source_deactivated", source_id=source_id)
    return status


def is_stale(conn: Any, source_id: str, threshold_days: int = STALE_DAYS) -> bool:
    newest = parse_iso(get_newest_published_at(conn, source_id))
    if newest is None:
        return True
    return newest < utc_now() - timedelta(days=threshold_days)


def stale_sources(conn: Any, threshold_days: int = STALE_DAYS) -> list[Source]:
    return [
        source
        for source in list_sources(conn, active_only=True)
        if is_stale(conn, source.id, threshold_days)
    ]
