from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import Any

import yaml

from .errors import PreconditionError, SkillValidationError
from .models import Source, Tier
from .storage import set_skill_installed
from .utils import log_event, slugify, utc_now_iso

SKILL_FILENAME = "SKILL.md"
SKILL_TIERS = (Tier.STATIC.value, Tier.RENDERED.value)
_FRONTMATTER_RE = re.compile(r"\A---\n(.*?)\n---\n?(.*)\Z", re.DOTALL)
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")

logger = logging.getLogger("gleaner.skills")


@dataclass(frozen=True)
class SkillDraft:
    """What the discovery agent hands back through its finish call."""

    tier: str
    instructions: str
    link_selector: str | None = None
    url_pattern: str | None = None
    content_selector: str | None = None
    max_articles: int | None = None
    description: str | None = None


@dataclass(frozen=True)
class SkillDocument:
    source_id: str
    version: int
    generated_at: str
    tier: str
    homepage_url: str
    name: str
    description: str
    body: str
    hints: dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    @property
    def link_selector(self) -> str | None:
        return self.hints.get("link_selector") or None

    @property
    def url_pattern(self) -> str | None:
        return self.hints.get("url_pattern") or None

    @property
    def content_selector(self) -> str | None:
        return self.hints.get("content_selector") or None


def render_skill(
    source: Source, draft: SkillDraft, *, version: int, generated_at: str
) -> str:
    frontmatter: dict[str, Any] = {
        "name": _skill_name(source),
        "description": (draft.description or f"Extracts articles from {source.name}").strip(),
        "metadata": {
            "source_id": source.id,
            "version": version,
            "generated_at": generated_at,
            "tier": draft.tier,
            "homepage_url": source.url,
        },
    }
    hints = {
        key: value
        for key, value in (
            ("link_selector", draft.link_selector),
            ("url_pattern", draft.url_pattern),
            ("content_selector", draft.content_selector),
            ("max_articles", draft.max_articles),
        )
        if value
    }
    if hints:
        frontmatter["hints"] = hints
    content = "---\n"
    content += yaml.safe_dump(
        frontmatter, sort_keys=False, allow_unicode=True, default_flow_style=False
    )
    content += "---\n\n"
    content += draft.instructions.strip() + "\n"
    return content


def parse_skill(text: str) -> SkillDocument:
    match = _FRONTMATTER_RE.match(text.replace("\r\n", "\n"))
    if not match:
        raise SkillValidationError("Skill document has no frontmatter block")
    try:
        frontmatter = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise SkillValidationError(f"Skill frontmatter is not valid YAML: {exc}") from exc
    if not isinstance(frontmatter, dict):
        raise SkillValidationError("Skill frontmatter must be a mapping")
    metadata = frontmatter.get("metadata")
    if not isinstance(metadata, dict):
        raise SkillValidationError("Skill frontmatter is missing metadata")
    for key in ("source_id", "version", "generated_at", "tier", "homepage_url"):
        if metadata.get(key) in (None, ""):
            raise SkillValidationError(f"Skill metadata is missing {key}")
    if metadata["tier"] not in SKILL_TIERS:
        raise SkillValidationError(f"Skill tier must be one of {', '.join(SKILL_TIERS)}")
    hints = frontmatter.get("hints") or {}
    if not isinstance(hints, dict):
        raise SkillValidationError("Skill hints must be a mapping")
    body = match.group(2).strip()
    if not body:
        raise SkillValidationError("Skill document has no instructions")
    return SkillDocument(
        source_id=str(metadata["source_id"]),
        version=int(metadata["version"]),
        generated_at=str(metadata["generated_at"]),
        tier=str(metadata["tier"]),
        homepage_url=str(metadata["homepage_url"]),
        name=str(frontmatter.get("name") or ""),
        description=str(frontmatter.get("description") or ""),
        body=body,
        hints=hints,
        raw=text,
    )


class SkillStore:
    def __init__(self, root_dir: str) -> None:
        self.root_dir = root_dir

    def get_path(self, source_id: str) -> str:
        if not _SAFE_ID_RE.match(source_id):
            raise ValueError(f"unsafe source id for skill path: {source_id!r}")
        return os.path.join(self.root_dir, source_id, SKILL_FILENAME)

    def exists(self, source_id: str) -> bool:
        return os.path.isfile(self.get_path(source_id))

    def is_installed(self, source: Source) -> bool:
        return source.has_skill and self.exists(source.id)

    def read(self, source_id: str) -> SkillDocument:
        path = self.get_path(source_id)
        if not os.path.isfile(path):
            raise PreconditionError(f"No skill found for source {source_id}. Generate a skill first.")
        with open(path, "r", encoding="utf-8") as handle:
            return parse_skill(handle.read())

    def install(self, conn, source: Source, draft: SkillDraft) -> tuple[str, SkillDocument]:
        """Write the document and flag the source in one step; neither survives alone."""
        generated_at = utc_now_iso()
        version = source.skill_version + 1
        text = render_skill(source, draft, version=version, generated_at=generated_at)
        document = parse_skill(text)
        path = self.get_path(source.id)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)

        previous = None
        if os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as handle:
                previous = handle.read()

        fd, tmp_path = tempfile.mkstemp(prefix=".skill-", suffix=".md", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            set_skill_installed(conn, source.id, generated_at=generated_at, commit=False)
            os.replace(tmp_path, path)
        except Exception:
            conn.rollback()
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        try:
            conn.commit()
        except Exception:
            self._restore(path, previous)
            raise
        log_event(
            logger,
            logging.INFO,
            "skill_installed",
            source_id=source.id,
            version=version,
            tier=draft.tier,
            path=path,
        )
        return path, document

    def _restore(self, path: str, previous: str | None) -> None:
        if previous is None:
            if os.path.exists(path):
                os.unlink(path)
            return
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(previous)


def _skill_name(source: Source) -> str:
    return f"{slugify(source.name)}-extractor"
