from datetime import timedelta

from conftest import NOW, create_job

from daystart.config import load_runtime_config
from daystart.content_cache import cache_content, record_fetch_attempt
from daystart.monitoring import build_monitoring_summary, check_content_cache, check_job_queue
from daystart.storage import claim_next_job


def test_cache_check_warns_when_a_type_is_missing(conn):
    cache_content(conn, "news", "newsapi", {}, now=NOW - timedelta(hours=1))
    cache_content(conn, "stocks", "yahoo", {}, now=NOW - timedelta(hours=1))

    check = check_content_cache(conn, now=NOW)

    assert check["status"] == "warn"
    assert check["details"]["sports"] == {"status": "missing"}


def test_cache_check_grades_by_age(conn):
    for content_type in ("news", "stocks", "sports"):
        cache_content(conn, content_type, "src", {}, expires_hours=48, now=NOW - timedelta(hours=1))
    assert check_content_cache(conn, now=NOW)["status"] == "pass"

    cache_content(conn, "news", "src", {}, expires_hours=48, now=NOW - timedelta(minutes=1))
    assert check_content_cache(conn, now=NOW + timedelta(hours=13))["status"] == "warn"
    assert check_content_cache(conn, now=NOW + timedelta(hours=25))["status"] == "fail"


def test_cache_check_fails_on_expired_latest_entry(conn):
    for content_type in ("news", "stocks", "sports"):
        cache_content(conn, content_type, "src", {}, expires_hours=1, now=NOW - timedelta(hours=2))
    check = check_content_cache(conn, now=NOW)
    assert check["status"] == "fail"
    assert check["details"]["expired_entries"] == 3


def test_queue_check_fails_on_stuck_leases(conn):
    create_job(conn)
    claim_next_job(conn, "worker-1", now=NOW, lease_minutes=15)

    assert check_job_queue(conn, now=NOW)["status"] == "pass"
    check = check_job_queue(conn, now=NOW + timedelta(minutes=20))
    assert check["status"] == "fail"
    assert check["details"]["expired_leases"] == 1


def test_summary_combines_checks(conn):
    config = load_runtime_config(conn)
    record_fetch_attempt(conn, "newsapi", "news", "success", now=NOW)

    summary = build_monitoring_summary(conn, config, now=NOW)

    assert summary["overall_status"] == "warn"
    assert [check["name"] for check in summary["checks"]] == [
        "content_cache_freshness",
        "jobs_queue",
    ]
    assert summary["sources"][0]["source"] == "newsapi"
