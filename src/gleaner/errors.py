from __future__ import annotations


class GleanerError(Exception):
    pass


class TierError(GleanerError):
    def __init__(self, tier: str, message: str) -> None:
        super().__init__(message)
        self.tier = tier
        self.message = message


class SourceExhaustedError(GleanerError):
    def __init__(self, source_id: str, attempts: list[tuple[str, str]]) -> None:
        self.source_id = source_id
        self.attempts = attempts
        tried = "; ".join(f"{tier}: {error}" for tier, error in attempts)
        super().__init__(f"All scraping tiers failed (tried: {tried})")


class PreconditionError(GleanerError):
    pass


class SkillValidationError(GleanerError):
    pass


class ToolError(GleanerError):
    def __init__(self, tool: str, message: str) -> None:
        super().__init__(f"{tool}: {message}")
        self.tool = tool
        self.message = message


class CancelledError(GleanerError):
    pass


class BlockedUrlError(GleanerError):
    pass


class FetchError(GleanerError):
    def __init__(self, url: str, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class PlannerError(GleanerError):
    pass
