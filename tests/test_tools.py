import pytest

from gleaner.errors import CancelledError, ToolError
from gleaner.fetching import register_fixture
from gleaner.tasks import CancelToken
from gleaner.tools import DISCOVERY_TOOLS, EXTRACTION_TOOLS, ToolContext, execute_tool, tool_map

BASE = "https://site.example.com/"

PAGE = """<html><head><title>Example Site</title>
<meta name="description" content="Local news"></head><body>
<main>
  <article><h2><a href="/news/1">First story</a></h2><time>March 3, 2024</time></article>
  <article><h2><a href="/news/2">Second story</a></h2><time>March 4, 2024</time></article>
  <a href="/">Home</a>
  <button id="more">More</button>
</main>
</body></html>"""


def _ctx(config, **kwargs):
    return ToolContext(base_url=BASE, http=config.http, render=config.render, **kwargs)


def _tools():
    return tool_map(DISCOVERY_TOOLS, EXTRACTION_TOOLS)


def test_page_tools_need_a_cached_page(config):
    ctx = _ctx(config, continue_on_error=True)
    result = execute_tool(ctx, _tools(), "run_selector", {"url": BASE, "selector": "h2 a"})
    assert result == {"error": f"run_selector: Page not cached: {BASE}. Call fetch_page first."}


def test_fetch_page_caches_by_resolved_url(config):
    register_fixture(BASE, PAGE)
    ctx = _ctx(config)
    result = execute_tool(ctx, _tools(), "fetch_page", {"url": "/"})
    assert result["success"] is True
    assert result["url"] == BASE
    assert BASE in ctx.page_cache


def test_run_selector_counts_article_like_links(config):
    register_fixture(BASE, PAGE)
    ctx = _ctx(config)
    tools = _tools()
    execute_tool(ctx, tools, "fetch_page", {"url": BASE})

    result = execute_tool(ctx, tools, "run_selector", {"url": BASE, "selector": "main a", "limit": 2})

    assert result["total_matches"] == 3
    assert result["article_like_links"] == 2
    assert [item["href"] for item in result["results"]] == [
        "https://site.example.com/news/1",
        "https://site.example.com/news/2",
    ]


def test_run_xpath_and_regex(config):
    register_fixture(BASE, PAGE)
    ctx = _ctx(config)
    tools = _tools()
    execute_tool(ctx, tools, "fetch_page", {"url": BASE})

    xpath = execute_tool(ctx, tools, "run_xpath", {"url": BASE, "xpath": "//article//a"})
    assert xpath["total_matches"] == 2
    assert xpath["results"][0]["text"] == "First story"

    hrefs = execute_tool(ctx, tools, "run_xpath", {"url": BASE, "xpath": "//article//a/@href"})
    assert [item["text"] for item in hrefs["results"]] == ["/news/1", "/news/2"]

    regex = execute_tool(ctx, tools, "run_regex", {"url": BASE, "pattern": r'href="(/news/\d+)"'})
    assert regex["total_matches"] == 2
    assert regex["matches"][1]["groups"] == ["/news/2"]

    first_only = execute_tool(
        ctx, tools, "run_regex", {"url": BASE, "pattern": r"story", "flags": "i", "target": "text"}
    )
    assert first_only["total_matches"] == 1


def test_invalid_queries_surface_as_tool_errors(config):
    register_fixture(BASE, PAGE)
    ctx = _ctx(config, continue_on_error=False)
    tools = _tools()
    execute_tool(ctx, tools, "fetch_page", {"url": BASE})

    with pytest.raises(ToolError, match="invalid pattern"):
        execute_tool(ctx, tools, "run_regex", {"url": BASE, "pattern": "("})
    with pytest.raises(ToolError, match="invalid xpath"):
        execute_tool(ctx, tools, "run_xpath", {"url": BASE, "xpath": "//["})
    with pytest.raises(ToolError, match="invalid arguments"):
        execute_tool(ctx, tools, "run_selector", {"url": BASE})
    with pytest.raises(ToolError, match="Unknown tool"):
        execute_tool(ctx, tools, "delete_everything", {})


def test_fetch_errors_are_reported_not_raised(config):
    ctx = _ctx(config, continue_on_error=True)
    result = execute_tool(ctx, _tools(), "fetch_page", {"url": "https://site.example.com/missing"})
    assert "No fixture registered" in result["error"]

    blocked = execute_tool(ctx, _tools(), "fetch_page", {"url": "http://127.0.0.1/admin"})
    assert "Blocked" in blocked["error"]


def test_get_structure_and_extract_readable(config):
    body = "<p>" + "Council approves the new budget for the harbour. " * 10 + "</p>"
    article = f"<html><head><title>Budget</title></head><body><article>{body}</article></body></html>"
    register_fixture(BASE, PAGE)
    register_fixture("https://site.example.com/news/1", article)
    ctx = _ctx(config)
    tools = _tools()
    execute_tool(ctx, tools, "fetch_page", {"url": BASE})

    structure = execute_tool(ctx, tools, "get_structure", {"url": BASE})
    assert structure["title"] == "Example Site"
    assert structure["meta_description"] == "Local news"
    assert structure["article_element_count"] == 2

    probe = execute_tool(ctx, tools, "test_article_link", {"url": "/news/1"})
    assert probe["looks_like_article"] is True

    readable = execute_tool(ctx, tools, "extract_readable", {"url": "/news/1"})
    assert "Council approves" in readable["content"]
    assert readable["format"] == "html"


def test_parse_date_tool(config):
    ctx = _ctx(config, continue_on_error=True)
    tools = _tools()
    assert execute_tool(ctx, tools, "parse_date", {"text": "March 3, 2024"})["date"].startswith(
        "2024-03-03"
    )
    assert "Could not parse date" in execute_tool(ctx, tools, "parse_date", {"text": "soon-ish"})["error"]


def test_browser_tools_share_one_session(config):
    register_fixture(BASE, PAGE)
    ctx = _ctx(config, continue_on_error=True)
    tools = _tools()

    assert execute_tool(ctx, tools, "navigate", {"url": BASE})["cached"] is True
    assert execute_tool(ctx, tools, "click", {"selector": "#more"})["success"] is True
    assert "No element matches" in execute_tool(ctx, tools, "wait_for", {"selector": ".nope"})["error"]
    html = execute_tool(ctx, tools, "get_html", {})
    assert html["url"] == BASE
    assert ctx.page_cache[BASE].rendered is True
    assert ctx.has_browser
    ctx.close()
    assert not ctx.has_browser


def test_cancelled_token_stops_tool_execution(config):
    token = CancelToken()
    token.cancel("user stop")
    ctx = _ctx(config, token=token)
    with pytest.raises(CancelledError):
        execute_tool(ctx, _tools(), "parse_date", {"text": "March 3, 2024"})


def test_xpath_on_empty_page_is_reported(config):
    register_fixture(BASE, "")
    ctx = _ctx(config, continue_on_error=True)
    tools = _tools()
    assert execute_tool(ctx, tools, "fetch_page", {"url": BASE})["success"] is True

    result = execute_tool(ctx, tools, "run_xpath", {"url": BASE, "xpath": "//a"})

    assert result["error"].startswith(f"run_xpath: cannot parse {BASE}")
