"""Bounded planner/tool-execution cycle shared by the discovery and extraction agents.

Each step asks the planner for exactly one action, runs it, and appends the
observation to the conversation. The loop ends when the planner calls a terminal
tool, stops calling tools, or the step budget runs out. Nothing is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import jsonschema

from .tools import Tool, ToolContext, execute_tool
from .utils import log_event

FINISHED = "finished"
STOPPED = "stopped"
BUDGET_EXHAUSTED = "budget_exhausted"

logger = logging.getLogger("gleaner.agent")


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(frozen=True)
class Stop:
    text: str = ""


@dataclass(frozen=True)
class Turn:
    call: ToolCall
    result: dict[str, Any]


@dataclass
class Conversation:
    system: str
    prompt: str
    tools: list[Tool]
    turns: list[Turn] = field(default_factory=list)
    temperature: float = 0.1


class Planner(Protocol):
    def next_action(self, conversation: Conversation) -> ToolCall | Stop:
        ...


@dataclass(frozen=True)
class LoopResult:
    outcome: str
    steps: int
    finish_call: ToolCall | None = None
    final_text: str | None = None


def run_agent_loop(
    planner: Planner,
    conversation: Conversation,
    ctx: ToolContext,
    *,
    max_steps: int,
    terminal: frozenset[str] = frozenset(),
    on_step: Callable[[int, ToolCall, dict[str, Any]], None] | None = None,
    agent: str = "agent",
) -> LoopResult:
    tools = {tool.name: tool for tool in conversation.tools}
    steps = 0
    while steps < max_steps:
        ctx.token.raise_if_cancelled()
        action = planner.next_action(conversation)
        ctx.token.raise_if_cancelled()
        steps += 1
        if isinstance(action, Stop):
            log_event(logger, logging.INFO, "agent_stopped", agent=agent, steps=steps)
            return LoopResult(outcome=STOPPED, steps=steps, final_text=action.text)

        if action.name in terminal:
            error = _terminal_argument_error(tools.get(action.name), action.arguments)
            if error is None:
                log_event(logger, logging.INFO, "agent_finished", agent=agent, steps=steps)
                return LoopResult(outcome=FINISHED, steps=steps, finish_call=action)
            result: dict[str, Any] = {"error": error}
        else:
            result = execute_tool(ctx, tools, action.name, dict(action.arguments))

        conversation.turns.append(Turn(call=action, result=result))
        log_event(
            logger,
            logging.DEBUG,
            "agent_step",
            agent=agent,
            step=steps,
            tool=action.name,
            error=result.get("error") if isinstance(result, dict) else None,
        )
        if on_step is not None:
            on_step(steps, action, result)

    log_event(logger, logging.WARNING, "agent_budget_exhausted", agent=agent, steps=steps)
    return LoopResult(outcome=BUDGET_EXHAUSTED, steps=steps)


def _terminal_argument_error(tool: Tool | None, arguments: dict[str, Any]) -> str | None:
    if tool is None:
        return None
    try:
        jsonschema.validate(arguments, tool.parameters)
    except jsonschema.ValidationError as exc:
        return f"{tool.name}: invalid arguments: {exc.message}"
    return None


