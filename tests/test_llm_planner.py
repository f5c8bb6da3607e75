import json
from dataclasses import replace

import pytest

import gleaner.llm.router as router
from gleaner.agent_loop import Conversation, Stop, ToolCall, Turn, run_agent_loop
from gleaner.errors import CancelledError, PlannerError
from gleaner.llm import build_planner
from gleaner.tasks import CancelToken
from gleaner.tools import EXTRACTION_TOOLS, ToolContext


def _conversation():
    return Conversation(
        system="system prompt",
        prompt="extract things",
        tools=list(EXTRACTION_TOOLS[:2]),
        turns=[
            Turn(
                call=ToolCall("fetch_page", {"url": "https://site.example.com/"}, "call_a"),
                result={"success": True, "length": 10},
            )
        ],
    )


def _capture(monkeypatch, response):
    seen = {}

    def fake_request(method, url, headers, payload, timeout):
        seen.update(method=method, url=url, headers=headers, payload=payload)
        return response

    monkeypatch.setattr(router, "_http_request", fake_request)
    return seen


def test_openai_tool_call_is_parsed(config, monkeypatch):
    llm = replace(config.llm, api_key="sk-test")
    seen = _capture(
        monkeypatch,
        {
            "choices": [
                {
                    "message": {
                        "tool_calls": [
                            {
                                "id": "call_b",
                                "type": "function",
                                "function": {
                                    "name": "run_selector",
                                    "arguments": json.dumps({"url": "/", "selector": "h2 a"}),
                                },
                            }
                        ]
                    }
                }
            ]
        },
    )

    action = build_planner(llm).next_action(_conversation())

    assert action == ToolCall("run_selector", {"url": "/", "selector": "h2 a"}, "call_b")
    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["headers"]["Authorization"] == "Bearer sk-test"
    messages = seen["payload"]["messages"]
    assert [message["role"] for message in messages] == ["system", "user", "assistant", "tool"]
    assert messages[3]["tool_call_id"] == "call_a"
    assert seen["payload"]["tools"][0]["function"]["name"] == "fetch_page"


def test_openai_text_reply_stops(config, monkeypatch):
    _capture(monkeypatch, {"choices": [{"message": {"content": "all done"}}]})
    assert build_planner(config.llm).next_action(_conversation()) == Stop("all done")


def test_openai_malformed_arguments_raise(config, monkeypatch):
    _capture(
        monkeypatch,
        {
            "choices": [
                {"message": {"tool_calls": [{"function": {"name": "x", "arguments": "{oops"}}]}}
            ]
        },
    )
    with pytest.raises(PlannerError, match="malformed tool arguments"):
        build_planner(config.llm).next_action(_conversation())


def test_anthropic_tool_use_is_parsed(config, monkeypatch):
    llm = replace(config.llm, provider="anthropic", base_url="https://api.anthropic.com/v1", api_key="key")
    seen = _capture(
        monkeypatch,
        {
            "content": [
                {"type": "text", "text": "Looking at the page."},
                {"type": "tool_use", "id": "toolu_1", "name": "parse_date", "input": {"text": "today"}},
            ]
        },
    )

    action = build_planner(llm).next_action(_conversation())

    assert action == ToolCall("parse_date", {"text": "today"}, "toolu_1")
    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "key"
    assert seen["payload"]["system"] == "system prompt"
    tool_result = seen["payload"]["messages"][2]["content"][0]
    assert tool_result["tool_use_id"] == "call_a"
    assert tool_result["is_error"] is False


def test_anthropic_missing_content_raises(config, monkeypatch):
    llm = replace(config.llm, provider="anthropic")
    _capture(monkeypatch, {"type": "error"})
    with pytest.raises(PlannerError):
        build_planner(llm).next_action(_conversation())


def test_connection_reset_becomes_planner_error(config, monkeypatch):
    def resetting(request, timeout=None):
        raise ConnectionResetError("connection reset by peer")

    monkeypatch.setattr(router.urllib.request, "urlopen", resetting)
    planner = build_planner(replace(config.llm, api_key="sk-test"))

    with pytest.raises(PlannerError, match="network_error: connection reset by peer"):
        planner.next_action(_conversation())


def test_stop_during_model_call_discards_the_action(config):
    token = CancelToken()
    executed = []

    class SlowPlanner:
        def next_action(self, conversation):
            token.cancel("stopped by user")
            return ToolCall("parse_date", {"text": "March 3, 2024"})

    ctx = ToolContext(
        base_url="https://site.example.com/", http=config.http, render=config.render, token=token
    )
    conversation = Conversation(system="system", prompt="prompt", tools=list(EXTRACTION_TOOLS))

    with pytest.raises(CancelledError):
        run_agent_loop(
            SlowPlanner(),
            conversation,
            ctx,
            max_steps=5,
            on_step=lambda step, call, result: executed.append(call.name),
        )
    assert executed == []
    assert conversation.turns == []
