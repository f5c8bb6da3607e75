from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from ..agent_loop import Conversation, Stop, ToolCall
from ..config import LlmConfig
from ..errors import PlannerError
from ..utils import json_dumps, log_event
from . import router

logger = logging.getLogger("gleaner.llm")


class ChatPlanner:
    """Planner backed by a tool-calling chat model (OpenAI-compatible or Anthropic)."""

    def __init__(self, llm: LlmConfig) -> None:
        self.llm = llm

    def next_action(self, conversation: Conversation) -> ToolCall | Stop:
        if self.llm.provider == "anthropic":
            response = router.chat_completion(self.llm, self._anthropic_payload(conversation))
            return _read_anthropic_action(response)
        response = router.chat_completion(self.llm, self._openai_payload(conversation))
        return _read_openai_action(response)

    def _openai_payload(self, conversation: Conversation) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": conversation.system},
            {"role": "user", "content": conversation.prompt},
        ]
        for index, turn in enumerate(conversation.turns):
            call_id = turn.call.call_id or f"call_{index}"
            messages.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": call_id,
                            "type": "function",
                            "function": {
                                "name": turn.call.name,
                                "arguments": json.dumps(turn.call.arguments),
                            },
                        }
                    ],
                }
            )
            messages.append(
                {"role": "tool", "tool_call_id": call_id, "content": json_dumps(turn.result)}
            )
        return {
            "model": self.llm.model,
            "messages": messages,
            "tools": [
                {"type": "function", "function": tool.definition()} for tool in conversation.tools
            ],
            "tool_choice": "auto",
            "parallel_tool_calls": False,
            "temperature": conversation.temperature,
            "max_tokens": self.llm.max_tokens,
        }

    def _anthropic_payload(self, conversation: Conversation) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [{"role": "user", "content": conversation.prompt}]
        for index, turn in enumerate(conversation.turns):
            call_id = turn.call.call_id or f"toolu_{index}"
            messages.append(
                {
                    "role": "assistant",
                    "content": [
                        {
                            "type": "tool_use",
                            "id": call_id,
                            "name": turn.call.name,
                            "input": turn.call.arguments,
                        }
                    ],
                }
            )
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": call_id,
                            "content": json_dumps(turn.result),
                            "is_error": "error" in turn.result,
                        }
                    ],
                }
            )
        return {
            "model": self.llm.model,
            "system": conversation.system,
            "messages": messages,
            "tools": [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in conversation.tools
            ],
            "temperature": conversation.temperature,
            "max_tokens": self.llm.max_tokens,
        }


def _read_openai_action(response: dict[str, Any]) -> ToolCall | Stop:
    choices = response.get("choices") or []
    if not choices:
        raise PlannerError("openai_missing_choices")
    message = choices[0].get("message") or {}
    tool_calls = message.get("tool_calls") or []
    if not tool_calls:
        return Stop(text=message.get("content") or "")
    if len(tool_calls) > 1:
        log_event(logger, logging.DEBUG, "planner_extra_tool_calls_dropped", count=len(tool_calls) - 1)
    call = tool_calls[0]
    function = call.get("function") or {}
    raw_arguments = function.get("arguments") or "{}"
    try:
        arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
    except json.JSONDecodeError as exc:
        raise PlannerError(f"malformed tool arguments for {function.get('name')}") from exc
    if not isinstance(arguments, dict):
        raise PlannerError(f"tool arguments for {function.get('name')} must be an object")
    return ToolCall(name=str(function.get("name") or ""), arguments=arguments, call_id=call.get("id"))


def _read_anthropic_action(response: dict[str, Any]) -> ToolCall | Stop:
    content = response.get("content")
    if content is None:
        raise PlannerError("anthropic_missing_content")
    texts = []
    for block in content:
        if block.get("type") == "tool_use":
            arguments = block.get("input") or {}
            if not isinstance(arguments, dict):
                raise PlannerError(f"tool arguments for {block.get('name')} must be an object")
            return ToolCall(name=str(block.get("name") or ""), arguments=arguments, call_id=block.get("id"))
        if block.get("type") == "text":
            texts.append(block.get("text") or "")
    return Stop(text="\n".join(texts))


class ScriptedPlanner:
    """Replays a fixed list of actions; used for deterministic runs and tests.

    Once the script is exhausted the planner repeats ``then`` forever when given,
    otherwise it stops.
    """

    def __init__(self, steps: Iterable[Any], then: ToolCall | None = None) -> None:
        self._steps = list(steps)
        self._then = then
        self.calls = 0
        self.observations: list[dict[str, Any]] = []

    def next_action(self, conversation: Conversation) -> ToolCall | Stop:
        if conversation.turns:
            self.observations.append(conversation.turns[-1].result)
        index = self.calls
        self.calls += 1
        if index < len(self._steps):
            step = self._steps[index]
            return step(conversation) if callable(step) else step
        if self._then is not None:
            return self._then
        return Stop(text="script exhausted")
