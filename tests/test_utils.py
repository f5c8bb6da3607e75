from gleaner.utils import absolute_url, normalize_url, parse_date_text, same_origin, slugify


def test_normalize_url_lowercases_host_and_drops_fragment():
    assert normalize_url("HTTPS://Example.COM/Path?b=2#top") == "https://example.com/Path?b=2"
    assert normalize_url("https://example.com") == "https://example.com/"


def test_absolute_url_skips_non_navigational_links():
    base = "https://example.com/news/"
    assert absolute_url(base, "story-1") == "https://example.com/news/story-1"
    assert absolute_url(base, "/about") == "https://example.com/about"
    assert absolute_url(base, "javascript:void(0)") is None
    assert absolute_url(base, "#comments") is None
    assert absolute_url(base, None) is None


def test_same_origin_compares_host():
    assert same_origin("https://Example.com/a", "https://example.com/")
    assert not same_origin("https://cdn.example.com/a", "https://example.com/")


def test_parse_date_text_formats():
    assert parse_date_text("2024-03-03T10:00:00Z").startswith("2024-03-03T10:00:00")
    assert parse_date_text("Sun, 03 Mar 2024 10:00:00 GMT").startswith("2024-03-03T10:00:00")
    assert parse_date_text("March 3, 2024").startswith("2024-03-03")
    assert parse_date_text("") is None
    assert parse_date_text(None) is None


def test_slugify():
    assert slugify("Le Monde: Économie") == "le-monde-economie"
    assert slugify("") == "untitled"


def test_json_dumps_handles_models_and_enums():
    import json
    from datetime import datetime, timezone

    from gleaner.models import ScrapeResult, Tier
    from gleaner.utils import json_dumps

    payload = {
        "result": ScrapeResult(inserted=2, skipped=1, tier=Tier.RENDERED),
        "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "tiers": {Tier.FEED},
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["result"] == {"inserted": 2, "skipped": 1, "tier": "rendered"}
    assert decoded["when"].startswith("2025-01-01T00:00:00")
    assert decoded["tiers"] == ["feed"]
