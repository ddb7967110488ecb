from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from .config import Config
from .content_cache import get_content_freshness_summary
from .models import CONTENT_TYPES
from .storage import get_queue_stats
from .utils import hours_between, isoformat_utc, utc_now

CHECK_PASS = "pass"
CHECK_WARN = "warn"
CHECK_FAIL = "fail"

OVERDUE_WARN_MINUTES = 5
OVERDUE_FAIL_MINUTES = 10


def check_content_cache(
    conn: Any,
    *,
    warn_hours: float = 12.0,
    fail_hours: float = 24.0,
    now: datetime | None = None,
) -> dict[str, object]:
    """Grade the newest entry of every content type by age and expiry."""
    now = now or utc_now()
    status = CHECK_PASS
    details: dict[str, object] = {}
    for content_type in CONTENT_TYPES:
        row = conn.execute(
            """
            SELECT created_at, expires_at FROM content_cache
            WHERE content_type = ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (content_type,),
        ).fetchone()
        if not row:
            details[content_type] = {"status": "missing"}
            status = _worst(status, CHECK_WARN)
            continue
        created_at, expires_at = row
        age = hours_between(created_at, now)
        expired = expires_at < isoformat_utc(now)
        details[content_type] = {
            "created_at": created_at,
            "expires_at": expires_at,
            "age_hours": round(age, 2),
            "expired": expired,
        }
        if expired or age > fail_hours:
            status = _worst(status, CHECK_FAIL)
        elif age > warn_hours:
            status = _worst(status, CHECK_WARN)
    row = conn.execute(
        "SELECT COUNT(*) FROM content_cache WHERE expires_at < ?",
        (isoformat_utc(now),),
    ).fetchone()
    details["expired_entries"] = int(row[0]) if row else 0
    return {"name": "content_cache_freshness", "status": status, "details": details}


def check_job_queue(
    conn: Any,
    *,
    max_attempts: int = 3,
    now: datetime | None = None,
) -> dict[str, object]:
    """Stuck leases or briefings 10+ minutes past their slot fail; 5+ minutes warns."""
    now = now or utc_now()
    details: dict[str, object] = dict(get_queue_stats(conn, now=now, max_attempts=max_attempts))
    for label, minutes in (("overdue_warn", OVERDUE_WARN_MINUTES), ("overdue_fail", OVERDUE_FAIL_MINUTES)):
        row = conn.execute(
            """
            SELECT COUNT(*) FROM jobs
            WHERE status IN ('queued', 'processing') AND scheduled_at < ?
            """,
            (isoformat_utc(now - timedelta(minutes=minutes)),),
        ).fetchone()
        details[label] = int(row[0]) if row else 0
    status = CHECK_PASS
    if details["expired_leases"] or details["overdue_fail"]:
        status = CHECK_FAIL
    elif details["overdue_warn"]:
        status = CHECK_WARN
    return {"name": "jobs_queue", "status": status, "details": details}


def build_monitoring_summary(
    conn: Any,
    config: Config,
    *,
    now: datetime | None = None,
) -> dict[str, object]:
    now = now or utc_now()
    freshness = config.content.freshness
    checks = [
        check_content_cache(
            conn,
            warn_hours=freshness.warn_hours,
            fail_hours=freshness.fail_hours,
            now=now,
        ),
        check_job_queue(conn, max_attempts=config.jobs.max_attempts, now=now),
    ]
    overall = CHECK_PASS
    for check in checks:
        overall = _worst(overall, str(check["status"]))
    return {
        "overall_status": overall,
        "checked_at": isoformat_utc(now),
        "checks": checks,
        "sources": get_content_freshness_summary(
            conn,
            now=now,
            fresh_hours=freshness.fresh_hours,
            recent_hours=freshness.recent_hours,
            stale_hours=freshness.stale_hours,
        ),
    }


def _worst(current: str, candidate: str) -> str:
    order = {CHECK_PASS: 0, CHECK_WARN: 1, CHECK_FAIL: 2}
    return candidate if order[candidate] > order[current] else current
