from datetime import timedelta

import pytest
from conftest import NOW

from daystart.content_cache import (
    ContentValidationError,
    cache_content,
    cleanup_expired_content,
    get_compact_content,
    get_content_freshness_summary,
    get_fresh_content,
    get_latest_cache_age_hours,
    record_fetch_attempt,
)


def test_fresh_content_returns_latest_per_source(conn):
    cache_content(conn, "news", "newsapi", {"v": 1}, expires_hours=12, now=NOW - timedelta(hours=3))
    cache_content(conn, "news", "newsapi", {"v": 2}, expires_hours=12, now=NOW - timedelta(hours=1))
    cache_content(conn, "news", "gnews", {"v": 3}, expires_hours=12, now=NOW - timedelta(hours=2))

    content = get_fresh_content(conn, ["news"], now=NOW)

    by_source = {item["source"]: item for item in content["news"]}
    assert set(by_source) == {"newsapi", "gnews"}
    assert by_source["newsapi"]["data"] == {"v": 2}
    assert by_source["newsapi"]["age_hours"] == 1.0


def test_expired_entries_are_ignored(conn):
    cache_content(conn, "stocks", "yahoo", {"v": "new"}, expires_hours=1, now=NOW - timedelta(hours=3))
    cache_content(conn, "stocks", "yahoo", {"v": "old"}, expires_hours=12, now=NOW - timedelta(hours=5))

    content = get_fresh_content(conn, ["stocks"], now=NOW)

    # The newest snapshot expired; the older one is still inside its window.
    assert content["stocks"][0]["data"] == {"v": "old"}


def test_missing_types_are_absent(conn):
    cache_content(conn, "news", "newsapi", {"v": 1}, now=NOW)
    content = get_fresh_content(conn, ["news", "sports"], now=NOW)
    assert "news" in content
    assert "sports" not in content


def test_unknown_content_type_is_rejected(conn):
    with pytest.raises(ContentValidationError):
        get_fresh_content(conn, ["weather"], now=NOW)
    with pytest.raises(ContentValidationError):
        cache_content(conn, "news", "src", {}, expires_hours=0, now=NOW)


def test_compact_content_merges_and_limits(conn):
    cache_content(conn, "news", "a", {"compact": {"news": [1, 2, 3]}}, now=NOW - timedelta(minutes=10))
    cache_content(conn, "news", "b", {"compact": {"news": [4, 5]}}, now=NOW)

    compact = get_compact_content(conn, ["news"], now=NOW, limit=4)

    assert compact["news"] == [4, 5, 1, 2]


def test_cleanup_expired_content(conn):
    cache_content(conn, "sports", "espn", {}, expires_hours=1, now=NOW - timedelta(hours=2))
    cache_content(conn, "sports", "espn", {}, expires_hours=12, now=NOW)

    assert cleanup_expired_content(conn, now=NOW) == 1
    assert get_latest_cache_age_hours(conn, "sports", now=NOW) == 0.0


def test_freshness_summary_grades_sources(conn):
    record_fetch_attempt(conn, "newsapi", "news", "success", now=NOW - timedelta(minutes=30))
    record_fetch_attempt(conn, "yahoo", "stocks", "success", now=NOW - timedelta(hours=8))
    record_fetch_attempt(
        conn,
        "espn",
        "sports",
        "failed_used_cache",
        cached_data_age_hours=5.5,
        now=NOW - timedelta(hours=1),
    )
    cache_content(conn, "sports", "espn", {}, expires_hours=12, now=NOW - timedelta(hours=5))
    record_fetch_attempt(conn, "gnews", "news", "failed_no_cache", now=NOW - timedelta(hours=2))

    summary = get_content_freshness_summary(conn, now=NOW)
    by_source = {row["source"]: row for row in summary}

    assert by_source["newsapi"]["status"] == "fresh"
    assert by_source["yahoo"]["status"] == "stale"
    assert by_source["espn"]["status"] == "cache_only"
    assert by_source["espn"]["fallback_count_24h"] == 1
    assert by_source["espn"]["max_cache_age_used"] == 5.5
    assert by_source["gnews"]["status"] == "critical"
    assert by_source["gnews"]["failure_count_24h"] == 1
    assert summary[0]["source"] == "gnews"


def test_record_fetch_attempt_rejects_unknown_status(conn):
    with pytest.raises(ContentValidationError):
        record_fetch_attempt(conn, "newsapi", "news", "partial", now=NOW)
