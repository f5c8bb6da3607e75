from __future__ import annotations

from ..config import LlmConfig
from .planner import ChatPlanner, ScriptedPlanner


def build_planner(llm: LlmConfig) -> ChatPlanner:
    return ChatPlanner(llm)


__all__ = ["ChatPlanner", "ScriptedPlanner", "build_planner"]
