from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import Config
from ..db import database_errors
from ..models import STATUS_FAILED, STATUS_PROCESSING, STATUS_QUEUED, STATUS_READY
from ..storage import (
    SNAPSHOT_CONTEXT,
    SNAPSHOT_SETTINGS,
    JobIntake,
    apply_intake,
    cancel_jobs,
    get_job_by_user_date,
    insert_request_log,
    list_jobs_for_user,
    mark_user_completed,
    reactivate_jobs,
    update_job_snapshots as store_job_snapshots,
    update_jobs_settings,
)
from ..utils import log_event, parse_iso, sanitize_name, utc_now

logger = logging.getLogger("daystart.services.jobs")

DEFAULT_SPORTS = ["MLB", "NHL", "NBA", "NFL", "NCAAF"]
ALLOWED_SPORTS = frozenset(DEFAULT_SPORTS)
ALLOWED_NEWS_CATEGORIES = frozenset({"World", "Business", "Technology", "Politics", "Science"})
SOCIAL_PATTERNS = ("DAILY_GENERIC", "SOCIAL_TIKTOK", "SOCIAL_YOUTUBE", "SOCIAL_INSTAGRAM")
WELCOME_DAYSTART_LENGTH = 60

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_STOCK_SYMBOL_RE = re.compile(r"[A-Z0-9\-\.\$\=\^]{1,16}")
# Keeps offset and lease arithmetic clear of datetime.min and datetime.max.
_EARLIEST_TIMESTAMP = datetime(1970, 1, 1, tzinfo=timezone.utc)
_LATEST_TIMESTAMP = datetime(9999, 1, 1, tzinfo=timezone.utc)

_API_STATUS = {
    STATUS_READY: "ready",
    STATUS_QUEUED: "processing",
    STATUS_PROCESSING: "processing",
    STATUS_FAILED: "failed",
}


class ValidationError(ValueError):
    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message)
        self.code = code


def new_request_id() -> str:
    return str(uuid.uuid4())


def success_envelope(request_id: str, **fields: Any) -> dict[str, Any]:
    return {"success": True, **fields, "request_id": request_id}


def error_envelope(request_id: str, error_code: str, error_message: str) -> dict[str, Any]:
    return {
        "success": False,
        "error_code": error_code,
        "error_message": error_message,
        "request_id": request_id,
    }


def run_enveloped(request_id: str, operation, *args, **kwargs) -> dict[str, Any]:
    """Call ``operation`` and turn any failure into an error envelope."""
    try:
        return operation(*args, request_id=request_id, **kwargs)
    except ValidationError as exc:
        return error_envelope(request_id, exc.code, str(exc))
    except database_errors() as exc:
        log_event(logger, logging.ERROR, "database_error", request_id=request_id, error=str(exc))
        return error_envelope(request_id, "DATABASE_ERROR", "Database operation failed")
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "internal_error", request_id=request_id, error=str(exc))
        return error_envelope(request_id, "INTERNAL_ERROR", "Internal server error")


def require_user_id(user_id: str | None) -> str:
    if not user_id or not user_id.strip():
        raise ValidationError("x-client-info header required", code="MISSING_USER_ID")
    return user_id.strip()


def prepare_intake(user_id: str, body: Any, *, now: datetime | None = None) -> JobIntake:
    """Validate a create request and turn it into a :class:`JobIntake`.

    Resolves ``TODAY`` and ``NOW``, fills defaults, sanitizes the name and
    detects social accounts. Raises :class:`ValidationError` before anything
    is written.
    """
    now = now or utc_now()
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    user_id = require_user_id(user_id)

    timezone_name = body.get("timezone")
    zone = None
    if timezone_name:
        zone = _zone(str(timezone_name))

    local_date = body.get("local_date")
    if local_date == "TODAY" and zone is not None:
        local_date = now.astimezone(zone).date().isoformat()

    scheduled_raw = body.get("scheduled_at")
    immediate = scheduled_raw == "NOW"
    process_not_before_raw = body.get("process_not_before")
    if immediate:
        scheduled_raw = now.isoformat()
        process_not_before_raw = now.isoformat()

    for field_name, value in (
        ("local_date", local_date),
        ("scheduled_at", scheduled_raw),
        ("timezone", timezone_name),
    ):
        if not value:
            raise ValidationError(f"Missing required field: {field_name}")

    local_date = validate_local_date(str(local_date), "local_date")
    scheduled_at = _parse_timestamp(scheduled_raw, "scheduled_at")
    process_not_before = None
    if process_not_before_raw:
        process_not_before = _parse_timestamp(process_not_before_raw, "process_not_before")

    is_welcome = body.get("is_welcome") is True
    social = bool(body.get("social_daystart")) or any(
        pattern in user_id for pattern in SOCIAL_PATTERNS
    )

    snapshot = build_snapshot(body, timezone_name=str(timezone_name), is_welcome=is_welcome)
    return JobIntake(
        user_id=user_id,
        local_date=local_date,
        scheduled_at=scheduled_at,
        timezone=str(timezone_name),
        snapshot=snapshot,
        is_welcome=is_welcome,
        social_daystart=social,
        force_update=bool(body.get("force_update")),
        immediate=immediate,
        process_not_before=process_not_before,
    )


def build_snapshot(body: dict[str, Any], *, timezone_name: str, is_welcome: bool) -> dict[str, object]:
    settings = validate_settings(body)
    snapshot: dict[str, object] = {
        "preferred_name": settings.get("preferred_name"),
        "include_weather": bool(body.get("include_weather", False)),
        "include_news": bool(body.get("include_news", False)),
        "include_sports": bool(body.get("include_sports", False)),
        "selected_sports": settings.get("selected_sports") or list(DEFAULT_SPORTS),
        "include_stocks": bool(body.get("include_stocks", False)),
        "stock_symbols": settings.get("stock_symbols") or [],
        "include_calendar": bool(body.get("include_calendar", False)),
        "include_quotes": bool(body.get("include_quotes", False)),
        "quote_preference": settings.get("quote_preference"),
        "voice_option": settings.get("voice_option"),
        "daystart_length": settings.get("daystart_length"),
        "timezone": timezone_name,
    }
    if "selected_news_categories" in settings:
        snapshot["selected_news_categories"] = settings["selected_news_categories"]
    if is_welcome:
        snapshot["daystart_length"] = WELCOME_DAYSTART_LENGTH
    for key in SNAPSHOT_CONTEXT:
        if key in body:
            snapshot[key] = body[key]
    return snapshot


def validate_settings(settings: dict[str, Any]) -> dict[str, object]:
    """Validate the preference fields present in ``settings``; absent keys stay absent."""
    cleaned: dict[str, object] = {}
    for key in SNAPSHOT_SETTINGS:
        if key not in settings:
            continue
        value = settings[key]
        if key == "preferred_name":
            cleaned[key] = sanitize_name(value if isinstance(value, str) else None)
        elif key == "stock_symbols":
            cleaned[key] = _validate_stock_symbols(value)
        elif key == "selected_sports":
            cleaned[key] = _validate_members(value, ALLOWED_SPORTS, "selected_sports")
        elif key == "selected_news_categories":
            cleaned[key] = _validate_members(
                value, ALLOWED_NEWS_CATEGORIES, "selected_news_categories"
            )
        elif key == "daystart_length":
            cleaned[key] = _validate_length(value)
        elif key == "timezone":
            _zone(str(value))
            cleaned[key] = str(value)
        elif key.startswith("include_"):
            cleaned[key] = bool(value)
        else:
            cleaned[key] = value if value is None else str(value)
    return cleaned


def validate_local_date(value: str, field_name: str = "date") -> str:
    if not _DATE_RE.fullmatch(value):
        raise ValidationError(f"{field_name} must be in YYYY-MM-DD format")
    try:
        date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} is not a valid calendar date") from exc
    return value


def create_or_update_job(
    conn: Any,
    config: Config,
    user_id: str | None,
    body: Any,
    *,
    request_id: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utc_now()
    intake = prepare_intake(user_id, body, now=now)
    outcome = apply_intake(
        conn,
        intake,
        now=now,
        process_not_before_offset_minutes=config.jobs.process_not_before_offset_minutes,
        estimated_ready_seconds=config.jobs.estimated_ready_seconds,
    )
    log_event(
        logger,
        logging.INFO,
        "job_intake",
        request_id=request_id,
        job_id=outcome.job_id,
        action=outcome.action,
        status=outcome.status,
    )
    return success_envelope(
        request_id,
        job_id=outcome.job_id,
        status=outcome.status,
        estimated_ready_time=outcome.estimated_ready_time,
        is_welcome=outcome.is_welcome,
    )


def get_audio_status(
    conn: Any,
    config: Config,
    user_id: str | None,
    local_date: str | None,
    *,
    mark_completed: bool = False,
    request_id: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utc_now()
    if not local_date:
        raise ValidationError(
            "Date parameter is required (YYYY-MM-DD)", code="MISSING_PARAMETER"
        )
    if not _DATE_RE.fullmatch(local_date):
        raise ValidationError("Date must be in YYYY-MM-DD format", code="INVALID_DATE_FORMAT")
    user_id = require_user_id(user_id)

    job = get_job_by_user_date(conn, user_id, local_date)
    status = _API_STATUS.get(job.status, "not_found") if job else "not_found"
    if job is None or status == "not_found":
        return success_envelope(request_id, status="not_found")

    audio_url = None
    if job.status == STATUS_READY and job.audio_file_path:
        audio_url = build_signed_audio_url(job.audio_file_path, config, now=now)
        if mark_completed and not job.user_completed:
            mark_user_completed(conn, job.job_id, now=now)

    return success_envelope(
        request_id,
        status=status,
        job_id=job.job_id,
        audio_url=audio_url,
        estimated_ready_time=job.estimated_ready_time,
        duration=job.audio_duration,
        transcript=job.transcript,
        error_code=job.error_code,
        error_message=job.error_message,
    )


def get_jobs(
    conn: Any,
    user_id: str | None,
    start_date: str | None,
    end_date: str | None,
    *,
    request_id: str,
) -> dict[str, Any]:
    user_id = require_user_id(user_id)
    if not start_date or not end_date:
        raise ValidationError("start_date and end_date query parameters are required")
    validate_local_date(start_date, "start_date")
    validate_local_date(end_date, "end_date")
    jobs = [
        {
            "job_id": job.job_id,
            "local_date": job.local_date,
            "scheduled_at": job.scheduled_at,
            "status": job.status,
        }
        for job in list_jobs_for_user(conn, user_id, start_date, end_date)
    ]
    return success_envelope(request_id, jobs=jobs)


def update_jobs(
    conn: Any,
    config: Config,
    user_id: str | None,
    body: Any,
    *,
    request_id: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Bulk settings update plus schedule-change cancel and reactivate."""
    now = now or utc_now()
    user_id = require_user_id(user_id)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    dates = _date_list(body.get("dates"), "dates")
    cancel_dates = _date_list(body.get("cancel_dates"), "cancel_dates")
    reactivate_dates = _date_list(body.get("reactivate_dates"), "reactivate_dates")
    date_range = body.get("date_range")
    start_date = end_date = None
    if date_range is not None:
        if not isinstance(date_range, dict):
            raise ValidationError("date_range must be an object")
        start_date = validate_local_date(str(date_range.get("start_local_date") or ""), "start_local_date")
        end_date = validate_local_date(str(date_range.get("end_local_date") or ""), "end_local_date")
    statuses = body.get("statuses")
    if statuses is not None:
        if not isinstance(statuses, list) or any(
            item not in (STATUS_QUEUED, STATUS_FAILED, STATUS_PROCESSING, STATUS_READY)
            for item in statuses
        ):
            raise ValidationError("statuses must be a list of queued, failed, processing, ready")
    raw_settings = body.get("settings") or {}
    if not isinstance(raw_settings, dict):
        raise ValidationError("settings must be an object")
    settings = validate_settings(raw_settings)
    force_requeue = bool(body.get("force_requeue"))

    affected: list[dict[str, str]] = []
    if settings or force_requeue:
        affected = update_jobs_settings(
            conn,
            user_id,
            settings,
            dates=dates or None,
            start_date=start_date,
            end_date=end_date,
            statuses=statuses,
            force_requeue=force_requeue,
            today=_today_for(settings.get("timezone") or config.app.timezone, now),
            now=now,
            estimated_ready_seconds=config.jobs.estimated_ready_seconds,
        )
    cancelled = cancel_jobs(conn, user_id, cancel_dates, now=now)
    reactivated = reactivate_jobs(conn, user_id, reactivate_dates, now=now)
    return success_envelope(
        request_id,
        updated_count=len(affected),
        cancelled_count=cancelled,
        reactivated_count=reactivated,
        affected_jobs=affected,
    )


def update_job_snapshots(
    conn: Any,
    user_id: str | None,
    body: Any,
    *,
    request_id: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    job_ids = body.get("job_ids")
    if not isinstance(job_ids, list) or not job_ids:
        raise ValidationError("job_ids array is required and cannot be empty")
    user_id = require_user_id(user_id)
    context = {key: body[key] for key in SNAPSHOT_CONTEXT if key in body}
    updated = store_job_snapshots(conn, user_id, [str(item) for item in job_ids], context, now=now)
    return success_envelope(request_id, updated_count=updated)


def record_request(
    conn: Any,
    *,
    request_id: str,
    endpoint: str,
    method: str,
    user_id: str | None,
    started: float,
    envelope: dict[str, Any] | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> None:
    # Request logging never fails the call it describes.
    try:
        insert_request_log(
            conn,
            request_id=request_id,
            endpoint=endpoint,
            method=method,
            user_id=user_id,
            status_code=200,
            response_time_ms=int((time.monotonic() - started) * 1000),
            error_code=(envelope or {}).get("error_code"),
            user_agent=user_agent,
            ip_address=ip_address,
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "request_log_failed", request_id=request_id, error=str(exc))


def build_signed_audio_url(path: str, config: Config, *, now: datetime | None = None) -> str | None:
    secret = os.environ.get("DS_SIGNING_SECRET", "")
    if not secret:
        log_event(logger, logging.WARNING, "signed_url_unavailable", reason="DS_SIGNING_SECRET unset")
        return None
    now = now or utc_now()
    expires = int((now + timedelta(seconds=config.audio.signed_url_ttl_seconds)).timestamp())
    signature = sign_audio_path(path, expires, secret)
    base = config.audio.base_url.rstrip("/")
    return f"{base}/{quote(path)}?expires={expires}&signature={signature}"


def sign_audio_path(path: str, expires: int, secret: str) -> str:
    message = f"{path}|{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_audio_signature(
    path: str,
    expires: int,
    signature: str,
    secret: str,
    *,
    now: datetime | None = None,
) -> bool:
    if not secret or not signature:
        return False
    if int((now or utc_now()).timestamp()) > expires:
        return False
    return hmac.compare_digest(sign_audio_path(path, expires, secret), signature)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}") from exc


def _today_for(timezone_name: str, now: datetime) -> str:
    try:
        return now.astimezone(ZoneInfo(timezone_name)).date().isoformat()
    except (ZoneInfoNotFoundError, ValueError):
        return now.date().isoformat()


def _parse_timestamp(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be valid ISO timestamp")
    try:
        parsed = parse_iso(value)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(f"{field_name} must be valid ISO timestamp") from exc
    if not _EARLIEST_TIMESTAMP <= parsed < _LATEST_TIMESTAMP:
        raise ValidationError(f"{field_name} is out of range")
    return parsed


def _validate_stock_symbols(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("stock_symbols must be a list")
    for symbol in value:
        if not isinstance(symbol, str) or not _STOCK_SYMBOL_RE.fullmatch(symbol):
            raise ValidationError(f"Invalid stock symbol: {symbol}")
    return list(value)


def _validate_members(value: Any, allowed: frozenset[str], field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field_name} must be a list")
    for item in value:
        if item not in allowed:
            raise ValidationError(f"Invalid {field_name} value: {item}")
    return list(value)


def _validate_length(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValidationError("daystart_length must be a positive number")
    return int(value)


def _date_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field_name} must be a list of dates")
    return [validate_local_date(str(item), field_name) for item in value]
