from gleaner.health import is_stale, record_failure, record_success, stale_sources
from gleaner.models import HealthStatus, NewArticle, SourceType
from gleaner.storage import create_source, get_source, insert_article
from gleaner.utils import utc_now_iso_offset


def _seed_source(conn, source_id: str = "source-1"):
    return create_source(
        conn,
        name="Test Source",
        url=f"https://{source_id}.example.com/feed.xml",
        source_type=SourceType.FEED,
        source_id=source_id,
    )


def test_failures_below_threshold_stay_healthy(conn):
    _seed_source(conn)
    for _ in range(2):
        record_failure(conn, "source-1")
    source = get_source(conn, "source-1")
    assert source.consecutive_failures == 2
    assert source.health_status == HealthStatus.HEALTHY
    assert source.is_active is True
    assert source.last_error_at is not None


def test_three_to_six_failures_degrade(conn):
    _seed_source(conn)
    for count in range(1, 7):
        status = record_failure(conn, "source-1")
        if count >= 3:
            assert status == HealthStatus.DEGRADED
    source = get_source(conn, "source-1")
    assert source.health_status == HealthStatus.DEGRADED
    assert source.is_active is True


def test_seven_failures_kill_and_deactivate(conn):
    _seed_source(conn)
    for _ in range(7):
        record_failure(conn, "source-1")
    source = get_source(conn, "source-1")
    assert source.consecutive_failures == 7
    assert source.health_status == HealthStatus.DEAD
    assert source.is_active is False


def test_success_resets_any_failure_count(conn):
    _seed_source(conn)
    for _ in range(5):
        record_failure(conn, "source-1")
    record_success(conn, "source-1")
    source = get_source(conn, "source-1")
    assert source.consecutive_failures == 0
    assert source.health_status == HealthStatus.HEALTHY
    assert source.last_error_at is None


def test_record_on_missing_source_is_noop(conn):
    assert record_failure(conn, "missing") is None
    record_success(conn, "missing")


def test_is_stale_without_articles(conn):
    _seed_source(conn)
    assert is_stale(conn, "source-1") is True


def test_is_stale_by_newest_published(conn):
    _seed_source(conn, "fresh")
    _seed_source(conn, "old")
    insert_article(
        conn,
        "fresh",
        NewArticle(
            url="https://fresh.example.com/a",
            title="Fresh",
            content="body",
            published_at=utc_now_iso_offset(days=-2),
        ),
    )
    insert_article(
        conn,
        "old",
        NewArticle(
            url="https://old.example.com/a",
            title="Old",
            content="body",
            published_at=utc_now_iso_offset(days=-45),
        ),
    )
    assert is_stale(conn, "fresh") is False
    assert is_stale(conn, "old") is True
    assert is_stale(conn, "old", threshold_days=60) is False
    assert [source.id for source in stale_sources(conn)] == ["old"]
