from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable

from .models import CONTENT_TYPES, FETCH_STATUSES, ContentCacheEntry
from .utils import hours_between, isoformat_utc, json_dumps, json_loads_or, log_event, utc_now

logger = logging.getLogger("daystart.content_cache")

FRESHNESS_ORDER = {"critical": 1, "cache_only": 2, "stale": 3, "recent": 4, "fresh": 5}


class ContentValidationError(ValueError):
    pass


def validate_content_types(content_types: Iterable[str]) -> list[str]:
    requested = [str(item).strip().lower() for item in content_types if str(item).strip()]
    unknown = [item for item in requested if item not in CONTENT_TYPES]
    if unknown:
        raise ContentValidationError(
            f"unknown content type(s): {', '.join(sorted(set(unknown)))}"
        )
    # Keep first-seen order, drop duplicates.
    return list(dict.fromkeys(requested))


def cache_content(
    conn: Any,
    content_type: str,
    source: str,
    data: dict[str, object],
    *,
    expires_hours: int = 12,
    now: datetime | None = None,
) -> str:
    """Append a snapshot for ``(content_type, source)``; existing rows are never touched."""
    validate_content_types([content_type])
    if not source or not source.strip():
        raise ContentValidationError("source is required")
    if expires_hours <= 0:
        raise ContentValidationError("expires_hours must be positive")
    now = now or utc_now()
    entry_id = f"cc_{uuid.uuid4().hex}"
    conn.execute(
        """
        INSERT INTO content_cache (id, content_type, source, data_json, created_at, expires_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            entry_id,
            content_type,
            source.strip(),
            json_dumps(data),
            isoformat_utc(now),
            isoformat_utc(now + timedelta(hours=expires_hours)),
        ),
    )
    log_event(
        logger,
        logging.INFO,
        "content_cached",
        content_type=content_type,
        source=source,
        expires_hours=expires_hours,
    )
    return entry_id


def get_fresh_content(
    conn: Any,
    content_types: Iterable[str] = CONTENT_TYPES,
    *,
    now: datetime | None = None,
) -> dict[str, list[dict[str, object]]]:
    """Latest non-expired entry per source for each requested type.

    Types with nothing fresh are left out of the result instead of failing
    the read.
    """
    requested = validate_content_types(content_types)
    if not requested:
        return {}
    now = now or utc_now()
    result: dict[str, list[dict[str, object]]] = {}
    for entry in _latest_per_source(conn, requested, now):
        result.setdefault(entry.content_type, []).append(
            {
                "source": entry.source,
                "data": entry.data,
                "fetched_at": entry.created_at,
                "age_hours": round(hours_between(entry.created_at, now), 2),
            }
        )
    return result


def get_compact_content(
    conn: Any,
    content_types: Iterable[str] = CONTENT_TYPES,
    *,
    now: datetime | None = None,
    limit: int = 200,
) -> dict[str, list[object]]:
    requested = validate_content_types(content_types)
    now = now or utc_now()
    result: dict[str, list[object]] = {}
    for content_type in requested:
        rows = conn.execute(
            """
            SELECT data_json FROM content_cache
            WHERE content_type = ? AND expires_at > ?
            ORDER BY created_at DESC
            """,
            (content_type, isoformat_utc(now)),
        ).fetchall()
        items: list[object] = []
        for (data_json,) in rows:
            data = json_loads_or(data_json, {})
            compact = data.get("compact") if isinstance(data, dict) else None
            values = compact.get(content_type) if isinstance(compact, dict) else None
            if not isinstance(values, list):
                continue
            items.extend(values[: limit - len(items)])
            if len(items) >= limit:
                break
        if items:
            result[content_type] = items
    return result


def list_cache_entries(
    conn: Any,
    content_type: str | None = None,
    limit: int = 50,
) -> list[ContentCacheEntry]:
    if content_type:
        validate_content_types([content_type])
        cursor = conn.execute(
            """
            SELECT id, content_type, source, data_json, created_at, expires_at
            FROM content_cache WHERE content_type = ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (content_type, limit),
        )
    else:
        cursor = conn.execute(
            """
            SELECT id, content_type, source, data_json, created_at, expires_at
            FROM content_cache ORDER BY created_at DESC LIMIT ?
            """,
            (limit,),
        )
    return [_row_to_entry(row) for row in cursor.fetchall()]


def get_content_stats(conn: Any, *, now: datetime | None = None) -> list[dict[str, object]]:
    now = now or utc_now()
    rows = conn.execute(
        """
        SELECT content_type, source, created_at
        FROM content_cache
        WHERE expires_at > ?
        ORDER BY content_type, source
        """,
        (isoformat_utc(now),),
    ).fetchall()
    grouped: dict[tuple[str, str], list[str]] = {}
    for content_type, source, created_at in rows:
        grouped.setdefault((content_type, source), []).append(created_at)
    stats = []
    for (content_type, source), created in sorted(grouped.items()):
        ages = [hours_between(value, now) for value in created]
        stats.append(
            {
                "content_type": content_type,
                "source": source,
                "count": len(created),
                "latest_fetch": max(created),
                "oldest_fetch": min(created),
                "avg_age_hours": round(sum(ages) / len(ages), 2),
            }
        )
    return stats


def get_latest_cache_age_hours(
    conn: Any,
    content_type: str,
    *,
    source: str | None = None,
    fresh_only: bool = False,
    now: datetime | None = None,
) -> float | None:
    validate_content_types([content_type])
    now = now or utc_now()
    sql = "SELECT MAX(created_at) FROM content_cache WHERE content_type = ?"
    params: list[object] = [content_type]
    if source:
        sql += " AND source = ?"
        params.append(source)
    if fresh_only:
        sql += " AND expires_at > ?"
        params.append(isoformat_utc(now))
    row = conn.execute(sql, tuple(params)).fetchone()
    if not row or not row[0]:
        return None
    return round(hours_between(row[0], now), 2)


def cleanup_expired_content(conn: Any, *, now: datetime | None = None) -> int:
    cursor = conn.execute(
        "DELETE FROM content_cache WHERE expires_at < ?",
        (isoformat_utc(now or utc_now()),),
    )
    deleted = max(cursor.rowcount, 0)
    log_event(logger, logging.INFO, "content_cache_cleaned", deleted=deleted)
    return deleted


def cleanup_fetch_log(conn: Any, days_to_keep: int = 7, *, now: datetime | None = None) -> int:
    cutoff = (now or utc_now()) - timedelta(days=days_to_keep)
    cursor = conn.execute(
        "DELETE FROM content_fetch_log WHERE created_at < ?",
        (isoformat_utc(cutoff),),
    )
    return max(cursor.rowcount, 0)


def record_fetch_attempt(
    conn: Any,
    source: str,
    content_type: str,
    fetch_status: str,
    *,
    error_message: str | None = None,
    cached_data_age_hours: float | None = None,
    items_fetched: int | None = None,
    api_response_time_ms: int | None = None,
    now: datetime | None = None,
) -> None:
    validate_content_types([content_type])
    if fetch_status not in FETCH_STATUSES:
        raise ContentValidationError(f"unknown fetch status: {fetch_status}")
    conn.execute(
        """
        INSERT INTO content_fetch_log
            (source, content_type, fetch_status, error_message, cached_data_age_hours,
             items_fetched, api_response_time_ms, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source,
            content_type,
            fetch_status,
            error_message,
            cached_data_age_hours,
            items_fetched,
            api_response_time_ms,
            isoformat_utc(now or utc_now()),
        ),
    )


def get_content_freshness_summary(
    conn: Any,
    *,
    now: datetime | None = None,
    fresh_hours: float = 1.0,
    recent_hours: float = 6.0,
    stale_hours: float = 24.0,
) -> list[dict[str, object]]:
    """Per source and type health derived from the fetch log and current cache.

    Only pairs with fetch attempts in the last 48 hours are reported. Rows
    come back worst first.
    """
    now = now or utc_now()
    window_start = isoformat_utc(now - timedelta(hours=48))
    day_start = isoformat_utc(now - timedelta(hours=24))
    rows = conn.execute(
        """
        SELECT source, content_type, fetch_status, cached_data_age_hours, created_at
        FROM content_fetch_log
        WHERE created_at > ?
        """,
        (window_start,),
    ).fetchall()
    fetches: dict[tuple[str, str], dict[str, Any]] = {}
    for source, content_type, fetch_status, cached_age, created_at in rows:
        item = fetches.setdefault(
            (source, content_type),
            {"last_success": None, "fallback_24h": 0, "failure_24h": 0, "max_cache_age": None},
        )
        if fetch_status == "success":
            if item["last_success"] is None or created_at > item["last_success"]:
                item["last_success"] = created_at
        elif created_at > day_start:
            key = "fallback_24h" if fetch_status == "failed_used_cache" else "failure_24h"
            item[key] += 1
        if fetch_status == "failed_used_cache" and cached_age is not None:
            if item["max_cache_age"] is None or cached_age > item["max_cache_age"]:
                item["max_cache_age"] = float(cached_age)

    cache_ages = {
        (entry.source, entry.content_type): round(hours_between(entry.created_at, now), 2)
        for entry in _latest_per_source(conn, list(CONTENT_TYPES), now)
    }

    summary = []
    for (source, content_type), item in fetches.items():
        hours_since = (
            round(hours_between(item["last_success"], now), 2) if item["last_success"] else None
        )
        current_age = cache_ages.get((source, content_type))
        if hours_since is not None and hours_since < fresh_hours:
            status = "fresh"
        elif hours_since is not None and hours_since < recent_hours:
            status = "recent"
        elif hours_since is not None and hours_since < stale_hours:
            status = "stale"
        elif hours_since is None and current_age is not None:
            status = "cache_only"
        else:
            status = "critical"
        summary.append(
            {
                "source": source,
                "content_type": content_type,
                "last_success": item["last_success"],
                "hours_since_success": hours_since,
                "fallback_count_24h": item["fallback_24h"],
                "failure_count_24h": item["failure_24h"],
                "max_cache_age_used": item["max_cache_age"],
                "current_cache_age": current_age,
                "status": status,
            }
        )
    summary.sort(key=lambda row: (FRESHNESS_ORDER[row["status"]], row["source"]))
    return summary


def _latest_per_source(conn: Any, content_types: list[str], now: datetime) -> list[ContentCacheEntry]:
    placeholders = ",".join(["?"] * len(content_types))
    cursor = conn.execute(
        f"""
        SELECT id, content_type, source, data_json, created_at, expires_at
        FROM (
            SELECT id, content_type, source, data_json, created_at, expires_at,
                   ROW_NUMBER() OVER (
                       PARTITION BY content_type, source
                       ORDER BY created_at DESC, id DESC
                   ) AS rn
            FROM content_cache
            WHERE content_type IN ({placeholders}) AND expires_at > ?
        ) ranked
        WHERE rn = 1
        ORDER BY content_type, created_at DESC
        """,
        (*content_types, isoformat_utc(now)),
    )
    return [_row_to_entry(row) for row in cursor.fetchall()]


def _row_to_entry(row: tuple) -> ContentCacheEntry:
    entry_id, content_type, source, data_json, created_at, expires_at = row
    return ContentCacheEntry(
        id=entry_id,
        content_type=content_type,
        source=source,
        data=json_loads_or(data_json, {}),
        created_at=created_at,
        expires_at=expires_at,
    )
