from dataclasses import replace

import pytest

from gleaner.agent_loop import Stop, ToolCall
from gleaner.errors import PreconditionError, ToolError
from gleaner.extraction_agent import build_prompt, extract_articles
from gleaner.fetching import register_fixture
from gleaner.handoff import ArticleHandoff
from gleaner.llm.planner import ScriptedPlanner
from gleaner.models import RunStatus, SourceType
from gleaner.skills import SkillDraft
from gleaner.storage import count_articles, create_source, get_source, list_articles
from gleaner.tasks import TaskRunRegistry

HOMEPAGE = "https://site.example.com/"


def _seed_with_skill(conn, store, **draft_overrides):
    source = create_source(
        conn, name="Example Site", url=HOMEPAGE, source_type=SourceType.SITE, source_id="site"
    )
    values = {
        "tier": "static",
        "instructions": "Collect links with `h2 a` and report each article body from `article`.",
        "link_selector": "h2 a",
    }
    values.update(draft_overrides)
    store.install(conn, source, SkillDraft(**values))
    return get_source(conn, "site")


def _article(index, **overrides):
    article = {
        "url": f"/news/{index}",
        "title": f"Story {index}",
        "content": f"Body of story {index}.",
        "published_date": "March 3, 2024",
    }
    article.update(overrides)
    return article


def _report(*articles):
    return ToolCall("report_articles", {"articles": list(articles)})


def test_reports_are_persisted_even_when_budget_runs_out(conn, config, store):
    _seed_with_skill(conn, store)
    limited = replace(config, agents=replace(config.agents, extraction_max_steps=5))
    planner = ScriptedPlanner(
        [_report(_article(1), _article(2)), _report(_article(3), _article(4))],
        then=ToolCall("parse_date", {"text": "yesterday"}),
    )

    result = extract_articles(conn, "site", config=limited, store=store, planner=planner)

    assert result.completed is False
    assert result.steps == 5
    assert result.inserted == 4
    assert count_articles(conn, "site") == 4
    assert [item["url"] for item in result.articles] == [
        f"https://site.example.com/news/{index}" for index in range(1, 5)
    ]
    stored = {article.url: article for article in list_articles(conn, "site")}
    assert stored["https://site.example.com/news/1"].published_at.startswith("2024-03-03")


def test_duplicates_and_incomplete_items_are_skipped(conn, config, store):
    _seed_with_skill(conn, store)
    planner = ScriptedPlanner(
        [
            _report(_article(1), _article(2, content="")),
            _report(_article(1), {"url": "/news/3", "title": None, "content": "x"}),
            Stop("done"),
        ]
    )

    result = extract_articles(conn, "site", config=config, store=store, planner=planner)

    assert result.completed is True
    assert (result.inserted, result.skipped, result.failed) == (1, 3, 0)
    assert planner.observations[0] == {"received": 2, "inserted": 1, "skipped": 1, "failed": 0}
    assert planner.observations[1] == {"received": 2, "inserted": 0, "skipped": 2, "failed": 0}


def test_new_articles_are_handed_off(conn, config, store):
    _seed_with_skill(conn, store)
    received = []
    handoff = ArticleHandoff(received.append)
    planner = ScriptedPlanner([_report(_article(1), _article(2))])

    result = extract_articles(
        conn, "site", config=config, store=store, planner=planner, handoff=handoff
    )
    handoff.shutdown(wait=True)

    assert sorted(received) == sorted(item["id"] for item in result.articles)


def test_skill_max_articles_reaches_prompt(conn, store):
    source = _seed_with_skill(conn, store, max_articles=3)
    skill = store.read("site")
    prompt = build_prompt(source, skill, int(skill.hints["max_articles"]))
    assert "Extract up to 3 articles maximum." in prompt
    assert skill.body in prompt


def test_tool_failure_aborts_when_not_tolerated(conn, config, store):
    _seed_with_skill(conn, store)
    planner = ScriptedPlanner([ToolCall("run_selector", {"url": HOMEPAGE, "selector": "h2 a"})])

    with pytest.raises(ToolError, match="Page not cached"):
        extract_articles(
            conn, "site", config=config, store=store, planner=planner, continue_on_error=False
        )


def test_tool_failure_is_observed_when_tolerated(conn, config, store):
    _seed_with_skill(conn, store)
    register_fixture(HOMEPAGE, "<html><body><h2><a href='/news/1'>One</a></h2></body></html>")
    planner = ScriptedPlanner(
        [
            ToolCall("run_selector", {"url": HOMEPAGE, "selector": "h2 a"}),
            ToolCall("fetch_page", {"url": HOMEPAGE}),
            ToolCall("run_selector", {"url": HOMEPAGE, "selector": "h2 a"}),
        ]
    )

    result = extract_articles(
        conn, "site", config=config, store=store, planner=planner, continue_on_error=True
    )

    assert result.completed is True
    assert "Page not cached" in planner.observations[0]["error"]
    assert planner.observations[2]["total_matches"] == 1
    assert planner.observations[2]["results"][0]["href"] == "https://site.example.com/news/1"


def test_extraction_requires_installed_skill(conn, config, store):
    create_source(conn, name="Bare", url=HOMEPAGE, source_type=SourceType.SITE, source_id="bare")
    with pytest.raises(PreconditionError, match="Generate a skill first"):
        extract_articles(conn, "bare", config=config, store=store, planner=ScriptedPlanner([]))
    with pytest.raises(PreconditionError):
        extract_articles(conn, "missing", config=config, store=store, planner=ScriptedPlanner([]))


def test_handoff_failures_are_recorded_not_raised():
    registry = TaskRunRegistry()

    def processor(article_id):
        if article_id == 2:
            raise RuntimeError("summarizer offline")

    handoff = ArticleHandoff(processor, registry=registry)
    futures = handoff.submit([1, 2])
    for future in futures:
        future.result(timeout=5)
    handoff.shutdown(wait=True)

    runs = {run.meta["article_id"]: run for run in registry.list(kind="pipeline-article")}
    assert runs[1].status == RunStatus.SUCCESS
    assert runs[2].status == RunStatus.ERROR
    assert runs[2].meta["error"] == "summarizer offline"
