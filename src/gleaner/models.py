from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SourceType(str, Enum):
    FEED = "feed"
    SITE = "site"


class Tier(str, Enum):
    FEED = "feed"
    STATIC = "static"
    RENDERED = "rendered"
    SKILL = "skill"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DEAD = "dead"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    url: str
    type: SourceType
    is_active: bool
    consecutive_failures: int
    health_status: HealthStatus
    last_error_at: str | None
    last_fetched_at: str | None
    scraping_strategy: Tier | None
    has_skill: bool
    skill_version: int
    skill_generated_at: str | None
    created_at: str | None = None


@dataclass(frozen=True)
class Article:
    id: int
    source_id: str
    url: str
    title: str
    content: str
    excerpt: str | None
    published_at: str | None
    fetched_at: str
    is_read: bool


@dataclass(frozen=True)
class NewArticle:
    url: str
    title: str
    content: str
    excerpt: str | None = None
    published_at: str | None = None
    author: str | None = None
    raw_html: str | None = None


@dataclass(frozen=True)
class ArticleContent:
    """Normalized output of a single-page tier (static or rendered)."""

    url: str
    title: str
    content: str
    excerpt: str | None
    html: str


@dataclass(frozen=True)
class TierOutcome:
    inserted: int
    skipped: int
    article_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class ScrapeResult:
    inserted: int
    skipped: int
    tier: Tier


@dataclass
class ExtractionStats:
    inserted: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: str | None
    sample_count: int = 0


@dataclass(frozen=True)
class SkillResult:
    success: bool
    skill_path: str | None = None
    error: str | None = None
    validation: ValidationResult | None = None


@dataclass(frozen=True)
class ExtractionResult:
    articles: list[dict[str, Any]]
    inserted: int
    skipped: int
    failed: int
    completed: bool
    steps: int


@dataclass(frozen=True)
class TaskRun:
    id: int
    kind: str
    label: str
    status: RunStatus
    started_at: str
    finished_at: str | None
    duration_ms: int | None
    meta: dict[str, Any]
