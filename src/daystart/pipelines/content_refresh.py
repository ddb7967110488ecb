from __future__ import annotations

import json
import logging
import time
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import yaml

from ..content_cache import cache_content, get_latest_cache_age_hours, record_fetch_attempt
from ..models import (
    CONTENT_TYPES,
    FETCH_FAILED_NO_CACHE,
    FETCH_FAILED_USED_CACHE,
    FETCH_SUCCESS,
)
from ..storage import release_lease, try_acquire_lease
from ..utils import log_event, utc_now

REFRESH_LEASE = "content_refresh"

Fetcher = Callable[[], dict[str, Any]]


@dataclass(frozen=True)
class ContentSource:
    name: str
    content_type: str
    fetch: Fetcher
    expires_hours: int | None = None


@dataclass
class RefreshReport:
    succeeded: list[str] = field(default_factory=list)
    used_cache: list[str] = field(default_factory=list)
    no_cache: list[str] = field(default_factory=list)
    skipped: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "succeeded": self.succeeded,
            "used_cache": self.used_cache,
            "no_cache": self.no_cache,
            "skipped": self.skipped,
        }


def refresh_content(
    conn: Any,
    sources: list[ContentSource],
    *,
    default_expires_hours: int = 12,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> RefreshReport:
    """Fetch every source once and append the results to the cache.

    A failing source never blocks the others. Its fetch log row records
    whether an older snapshot can still serve generation.
    """
    logger = logger or logging.getLogger("daystart.pipelines.content_refresh")
    report = RefreshReport()
    if not try_acquire_lease(conn, REFRESH_LEASE):
        log_event(logger, logging.INFO, "content_refresh_skipped", reason="lease_held")
        report.skipped = True
        return report
    try:
        for source in sources:
            _refresh_source(conn, source, default_expires_hours, now, logger, report)
    finally:
        release_lease(conn, REFRESH_LEASE)
    log_event(
        logger,
        logging.INFO,
        "content_refresh_done",
        succeeded=len(report.succeeded),
        used_cache=len(report.used_cache),
        no_cache=len(report.no_cache),
    )
    return report


def _refresh_source(
    conn: Any,
    source: ContentSource,
    default_expires_hours: int,
    now: datetime | None,
    logger: logging.Logger,
    report: RefreshReport,
) -> None:
    started = time.monotonic()
    try:
        data = source.fetch()
        if not isinstance(data, dict):
            raise ValueError(f"source {source.name} returned {type(data).__name__}, expected object")
    except Exception as exc:  # noqa: BLE001
        elapsed_ms = int((time.monotonic() - started) * 1000)
        cached_age = get_latest_cache_age_hours(
            conn, source.content_type, source=source.name, fresh_only=True, now=now
        )
        status = FETCH_FAILED_USED_CACHE if cached_age is not None else FETCH_FAILED_NO_CACHE
        record_fetch_attempt(
            conn,
            source.name,
            source.content_type,
            status,
            error_message=str(exc)[:1000],
            cached_data_age_hours=cached_age,
            api_response_time_ms=elapsed_ms,
            now=now,
        )
        log_event(
            logger,
            logging.WARNING,
            "content_fetch_failed",
            source=source.name,
            content_type=source.content_type,
            fetch_status=status,
            cached_age_hours=cached_age,
            error=str(exc),
        )
        if status == FETCH_FAILED_USED_CACHE:
            report.used_cache.append(source.name)
        else:
            report.no_cache.append(source.name)
        return

    elapsed_ms = int((time.monotonic() - started) * 1000)
    cache_content(
        conn,
        source.content_type,
        source.name,
        data,
        expires_hours=source.expires_hours or default_expires_hours,
        now=now or utc_now(),
    )
    record_fetch_attempt(
        conn,
        source.name,
        source.content_type,
        FETCH_SUCCESS,
        items_fetched=count_items(data, source.content_type),
        api_response_time_ms=elapsed_ms,
        now=now,
    )
    report.succeeded.append(source.name)


def count_items(data: dict[str, Any], content_type: str) -> int | None:
    items = data.get("items")
    if isinstance(items, list):
        return len(items)
    compact = data.get("compact")
    if isinstance(compact, dict) and isinstance(compact.get(content_type), list):
        return len(compact[content_type])
    return None


def http_json_fetcher(url: str, *, timeout_seconds: int = 20, user_agent: str = "DayStart/0.1") -> Fetcher:
    def fetch() -> dict[str, Any]:
        request = urllib.request.Request(
            url, headers={"User-Agent": user_agent, "Accept": "application/json"}
        )
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            payload = json.loads(response.read().decode("utf-8", errors="replace"))
        if isinstance(payload, list):
            return {"items": payload}
        return payload

    return fetch


def load_sources_file(path: str) -> list[ContentSource]:
    """Build HTTP JSON sources from a YAML file.

    Expected layout::

        sources:
          - name: newsapi_general
            content_type: news
            url: https://example.invalid/news.json
            expires_hours: 6
    """
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    entries = raw.get("sources") if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ValueError("sources file must contain a list under 'sources'")
    sources = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"sources[{index}] must be a mapping")
        name = str(entry.get("name") or "").strip()
        content_type = str(entry.get("content_type") or "").strip()
        url = str(entry.get("url") or "").strip()
        if not name or not url:
            raise ValueError(f"sources[{index}] needs name and url")
        if content_type not in CONTENT_TYPES:
            raise ValueError(f"sources[{index}] has unknown content_type {content_type!r}")
        expires = entry.get("expires_hours")
        sources.append(
            ContentSource(
                name=name,
                content_type=content_type,
                fetch=http_json_fetcher(url, timeout_seconds=int(entry.get("timeout_seconds", 20))),
                expires_hours=int(expires) if expires is not None else None,
            )
        )
    return sources
