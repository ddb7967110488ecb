from __future__ import annotations

import hashlib
import json
import logging
import struct
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from .db import connect_db
from .models import (
    ERROR_LEASE_EXPIRED,
    PRIORITY_WELCOME,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    STATUS_READY,
    Job,
    JobResult,
)
from .priority import calculate_priority, default_process_not_before
from .utils import isoformat_utc, json_dumps, json_loads_or, log_event, utc_now

logger = logging.getLogger("daystart.storage")

_JOB_COLUMNS = """
    job_id, user_id, local_date, scheduled_at, process_not_before, timezone, status,
    priority, attempt_count, worker_id, lease_until, is_welcome, social_daystart,
    snapshot_json, estimated_ready_time, script_content, audio_file_path, audio_duration,
    transcript, script_cost, tts_cost, total_cost, error_code, error_message,
    user_completed, user_completed_at, created_at, updated_at, completed_at,
    lease_token
"""

# Parameters: max_attempts, now, max_attempts, now.
_ELIGIBLE = """
    (status = 'queued' OR (status = 'failed' AND attempt_count < ?))
    AND (lease_until IS NULL OR lease_until < ?)
    AND attempt_count < ?
    AND process_not_before <= ?
"""

_CLEAR_RESULTS = """
    script_content = NULL,
    audio_file_path = NULL,
    audio_duration = NULL,
    transcript = NULL,
    script_cost = NULL,
    tts_cost = NULL,
    total_cost = NULL,
    error_code = NULL,
    error_message = NULL,
    completed_at = NULL,
    worker_id = NULL,
    lease_until = NULL,
    lease_token = NULL
"""

SNAPSHOT_SETTINGS = (
    "preferred_name",
    "include_weather",
    "include_news",
    "include_sports",
    "selected_sports",
    "selected_news_categories",
    "include_stocks",
    "stock_symbols",
    "include_calendar",
    "include_quotes",
    "quote_preference",
    "voice_option",
    "daystart_length",
    "timezone",
)

SNAPSHOT_CONTEXT = ("location_data", "weather_data", "calendar_events")


@dataclass(frozen=True)
class JobIntake:
    user_id: str
    local_date: str
    scheduled_at: datetime
    timezone: str
    snapshot: dict[str, object]
    is_welcome: bool = False
    social_daystart: bool = False
    force_update: bool = False
    immediate: bool = False
    process_not_before: datetime | None = None


@dataclass(frozen=True)
class IntakeOutcome:
    job_id: str
    status: str
    action: str
    is_welcome: bool
    priority: int
    estimated_ready_time: str | None


def init_db(path: str | None = None):
    if path is None:
        from .config import get_state_db_path

        path = get_state_db_path()
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, isoformat_utc(utc_now())),
    )


def get_schema_version(conn: Any) -> str | None:
    row = conn.execute(
        "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
    ).fetchone()
    return row[0] if row else None


def apply_intake(
    conn: Any,
    intake: JobIntake,
    *,
    now: datetime | None = None,
    process_not_before_offset_minutes: int = 45,
    estimated_ready_seconds: int = 90,
) -> IntakeOutcome:
    """Create or update the single job for ``(user_id, local_date)``.

    Runs as one transaction. A welcome request upgrades an existing job in
    place and returns. Jobs already ``processing`` or ``ready`` are left
    alone unless ``force_update`` is set; anything else is overwritten with
    the new snapshot and put back in the queue with a fresh attempt budget.
    """
    now = now or utc_now()
    now_iso = isoformat_utc(now)
    eta = isoformat_utc(now + timedelta(seconds=estimated_ready_seconds))
    not_before = intake.process_not_before or default_process_not_before(
        intake.scheduled_at, process_not_before_offset_minutes
    )

    with conn.transaction():
        row = _select_job_for_update(conn, intake.user_id, intake.local_date)
        if row is None:
            priority = calculate_priority(
                intake.scheduled_at, now, is_welcome=intake.is_welcome, immediate=intake.immediate
            )
            inserted = conn.execute(
                f"""
                INSERT INTO jobs
                    (job_id, user_id, local_date, scheduled_at, process_not_before, timezone,
                     status, priority, attempt_count, is_welcome, social_daystart, snapshot_json,
                     estimated_ready_time, user_completed, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'queued', ?, 0, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(user_id, local_date) DO NOTHING
                RETURNING {_JOB_COLUMNS}
                """,
                (
                    _new_job_id(),
                    intake.user_id,
                    intake.local_date,
                    isoformat_utc(intake.scheduled_at),
                    isoformat_utc(not_before),
                    intake.timezone,
                    priority,
                    1 if intake.is_welcome else 0,
                    1 if intake.social_daystart else 0,
                    json_dumps(intake.snapshot),
                    eta,
                    now_iso,
                    now_iso,
                ),
            ).fetchall()
            if inserted:
                job = _row_to_job(inserted[0])
                log_event(
                    logger,
                    logging.INFO,
                    "job_created",
                    job_id=job.job_id,
                    user_id=job.user_id,
                    local_date=job.local_date,
                    priority=job.priority,
                    welcome=job.is_welcome,
                )
                return IntakeOutcome(
                    job_id=job.job_id,
                    status=job.status,
                    action="created",
                    is_welcome=job.is_welcome,
                    priority=job.priority,
                    estimated_ready_time=eta,
                )
            row = _select_job_for_update(conn, intake.user_id, intake.local_date)
            if row is None:
                raise RuntimeError("job row vanished during intake")

        existing = _row_to_job(row)

        if intake.is_welcome and not existing.is_welcome:
            conn.execute(
                """
                UPDATE jobs
                SET is_welcome = 1, priority = ?, social_daystart = ?, updated_at = ?
                WHERE job_id = ?
                """,
                (
                    PRIORITY_WELCOME,
                    1 if (existing.social_daystart or intake.social_daystart) else 0,
                    now_iso,
                    existing.job_id,
                ),
            )
            log_event(
                logger,
                logging.INFO,
                "job_welcome_upgraded",
                job_id=existing.job_id,
                status=existing.status,
            )
            return IntakeOutcome(
                job_id=existing.job_id,
                status=existing.status,
                action="welcome_upgraded",
                is_welcome=True,
                priority=PRIORITY_WELCOME,
                estimated_ready_time=existing.estimated_ready_time,
            )

        if existing.status in (STATUS_PROCESSING, STATUS_READY) and not intake.force_update:
            log_event(
                logger,
                logging.DEBUG,
                "job_intake_unchanged",
                job_id=existing.job_id,
                status=existing.status,
            )
            return IntakeOutcome(
                job_id=existing.job_id,
                status=existing.status,
                action="unchanged",
                is_welcome=existing.is_welcome,
                priority=existing.priority,
                estimated_ready_time=existing.estimated_ready_time,
            )

        is_welcome = existing.is_welcome or intake.is_welcome
        priority = calculate_priority(
            intake.scheduled_at, now, is_welcome=is_welcome, immediate=intake.immediate
        )
        conn.execute(
            f"""
            UPDATE jobs
            SET scheduled_at = ?,
                process_not_before = ?,
                timezone = ?,
                status = 'queued',
                priority = ?,
                attempt_count = 0,
                is_welcome = ?,
                social_daystart = ?,
                snapshot_json = ?,
                estimated_ready_time = ?,
                {_CLEAR_RESULTS},
                updated_at = ?
            WHERE job_id = ?
            """,
            (
                isoformat_utc(intake.scheduled_at),
                isoformat_utc(not_before),
                intake.timezone,
                priority,
                1 if is_welcome else 0,
                1 if (existing.social_daystart or intake.social_daystart) else 0,
                json_dumps(intake.snapshot),
                eta,
                now_iso,
                existing.job_id,
            ),
        )
        log_event(
            logger,
            logging.INFO,
            "job_requeued",
            job_id=existing.job_id,
            previous_status=existing.status,
            forced=intake.force_update,
            priority=priority,
        )
        return IntakeOutcome(
            job_id=existing.job_id,
            status=STATUS_QUEUED,
            action="requeued",
            is_welcome=is_welcome,
            priority=priority,
            estimated_ready_time=eta,
        )


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?",
        (job_id,),
    ).fetchone()
    return _row_to_job(row) if row else None


def get_job_by_user_date(conn: Any, user_id: str, local_date: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE user_id = ? AND local_date = ?",
        (user_id, local_date),
    ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs_for_user(
    conn: Any, user_id: str, start_date: str, end_date: str
) -> list[Job]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        WHERE user_id = ? AND local_date >= ? AND local_date <= ?
        ORDER BY local_date ASC
        """,
        (user_id, start_date, end_date),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def list_jobs(conn: Any, status: str | None = None, limit: int = 50) -> list[Job]:
    if status:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
            WHERE status = ?
            ORDER BY priority DESC, created_at ASC
            LIMIT ?
            """,
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def claim_next_job(
    conn: Any,
    worker_id: str,
    *,
    now: datetime | None = None,
    lease_minutes: int = 15,
    max_attempts: int = 3,
) -> Job | None:
    now = now or utc_now()
    now_iso = isoformat_utc(now)
    lease_until = isoformat_utc(now + timedelta(minutes=lease_minutes))
    skip_locked = "FOR UPDATE SKIP LOCKED" if conn.is_postgres else ""
    with conn.transaction():
        rows = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'processing',
                attempt_count = attempt_count + 1,
                worker_id = ?,
                lease_until = ?,
                lease_token = ?,
                updated_at = ?
            WHERE job_id = (
                SELECT job_id FROM jobs
                WHERE {_ELIGIBLE}
                ORDER BY priority DESC, created_at ASC, job_id ASC
                LIMIT 1
                {skip_locked}
            )
            RETURNING {_JOB_COLUMNS}
            """,
            (
                worker_id,
                lease_until,
                _new_lease_token(),
                now_iso,
                max_attempts,
                now_iso,
                max_attempts,
                now_iso,
            ),
        ).fetchall()
    if not rows:
        return None
    job = _row_to_job(rows[0])
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.job_id,
        worker_id=worker_id,
        attempt=job.attempt_count,
        priority=job.priority,
        lease_until=lease_until,
    )
    return job


def claim_specific_job(
    conn: Any,
    job_id: str,
    worker_id: str,
    *,
    now: datetime | None = None,
    lease_minutes: int = 15,
    max_attempts: int = 3,
) -> Job | None:
    now = now or utc_now()
    now_iso = isoformat_utc(now)
    lease_until = isoformat_utc(now + timedelta(minutes=lease_minutes))
    with conn.transaction():
        rows = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'processing',
                attempt_count = attempt_count + 1,
                worker_id = ?,
                lease_until = ?,
                lease_token = ?,
                updated_at = ?
            WHERE job_id = ? AND {_ELIGIBLE}
            RETURNING {_JOB_COLUMNS}
            """,
            (
                worker_id,
                lease_until,
                _new_lease_token(),
                now_iso,
                job_id,
                max_attempts,
                now_iso,
                max_attempts,
                now_iso,
            ),
        ).fetchall()
    if not rows:
        return None
    job = _row_to_job(rows[0])
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.job_id,
        worker_id=worker_id,
        attempt=job.attempt_count,
        priority=job.priority,
        specific=True,
    )
    return job


def complete_job(
    conn: Any,
    job_id: str,
    worker_id: str,
    result: JobResult,
    *,
    lease_token: str,
    now: datetime | None = None,
) -> bool:
    """Record a result for the claim identified by ``lease_token``.

    A reclaimed job gets a new token, so a run that outlived its lease
    cannot report over the attempt that replaced it.
    """
    now_iso = isoformat_utc(now or utc_now())
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'ready',
            script_content = ?,
            audio_file_path = ?,
            audio_duration = ?,
            transcript = ?,
            script_cost = ?,
            tts_cost = ?,
            total_cost = ?,
            error_code = NULL,
            error_message = NULL,
            worker_id = NULL,
            lease_until = NULL,
            lease_token = NULL,
            completed_at = ?,
            updated_at = ?
        WHERE job_id = ? AND status = 'processing' AND worker_id = ? AND lease_token = ?
        """,
        (
            result.script_content,
            result.audio_file_path,
            result.audio_duration,
            result.transcript,
            result.script_cost,
            result.tts_cost,
            result.total_cost,
            now_iso,
            now_iso,
            job_id,
            worker_id,
            lease_token,
        ),
    )
    if cursor.rowcount != 1:
        log_event(
            logger,
            logging.WARNING,
            "job_complete_skipped",
            job_id=job_id,
            worker_id=worker_id,
        )
        return False
    log_event(logger, logging.INFO, "job_succeeded", job_id=job_id, worker_id=worker_id)
    return True


def fail_job(
    conn: Any,
    job_id: str,
    worker_id: str,
    error_code: str,
    error_message: str,
    *,
    lease_token: str,
    now: datetime | None = None,
) -> bool:
    # lease_until is kept as a retry hold-off; the reclaimer clears it.
    now_iso = isoformat_utc(now or utc_now())
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed',
            error_code = ?,
            error_message = ?,
            worker_id = NULL,
            lease_token = NULL,
            updated_at = ?
        WHERE job_id = ? AND status = 'processing' AND worker_id = ? AND lease_token = ?
        """,
        (error_code, error_message[:2000], now_iso, job_id, worker_id, lease_token),
    )
    if cursor.rowcount != 1:
        log_event(
            logger,
            logging.WARNING,
            "job_fail_skipped",
            job_id=job_id,
            worker_id=worker_id,
        )
        return False
    log_event(
        logger,
        logging.WARNING,
        "job_failed",
        job_id=job_id,
        worker_id=worker_id,
        error_code=error_code,
    )
    return True


def release_expired_leases(
    conn: Any,
    *,
    now: datetime | None = None,
    max_attempts: int = 3,
) -> int:
    """Return orphaned work to the queue; exhausted jobs become terminal ``failed``."""
    now_iso = isoformat_utc(now or utc_now())
    with conn.transaction():
        processing = conn.execute(
            """
            UPDATE jobs
            SET status = CASE WHEN attempt_count < ? THEN 'queued' ELSE 'failed' END,
                error_code = CASE WHEN attempt_count < ? THEN error_code ELSE ? END,
                error_message = CASE
                    WHEN attempt_count < ? THEN error_message
                    ELSE 'Lease expired on final attempt'
                END,
                worker_id = NULL,
                lease_until = NULL,
                lease_token = NULL,
                updated_at = ?
            WHERE status = 'processing' AND lease_until IS NOT NULL AND lease_until < ?
            """,
            (max_attempts, max_attempts, ERROR_LEASE_EXPIRED, max_attempts, now_iso, now_iso),
        ).rowcount
        held = conn.execute(
            """
            UPDATE jobs
            SET status = CASE WHEN attempt_count < ? THEN 'queued' ELSE 'failed' END,
                lease_until = NULL,
                updated_at = ?
            WHERE status = 'failed' AND lease_until IS NOT NULL AND lease_until < ?
            """,
            (max_attempts, now_iso, now_iso),
        ).rowcount
    total = max(processing, 0) + max(held, 0)
    if total:
        log_event(
            logger,
            logging.INFO,
            "leases_released",
            processing=processing,
            failed_holdoff=held,
        )
    return total


def mark_user_completed(conn: Any, job_id: str, *, now: datetime | None = None) -> bool:
    now_iso = isoformat_utc(now or utc_now())
    cursor = conn.execute(
        """
        UPDATE jobs
        SET user_completed = 1, user_completed_at = ?, updated_at = ?
        WHERE job_id = ? AND user_completed = 0
        """,
        (now_iso, now_iso, job_id),
    )
    return cursor.rowcount == 1


def cancel_jobs(conn: Any, user_id: str, dates: Iterable[str], *, now: datetime | None = None) -> int:
    """Soft-cancel queued or failed jobs; reserved-priority jobs are never touched."""
    dates = list(dates)
    if not dates:
        return 0
    placeholders = ",".join(["?"] * len(dates))
    cursor = conn.execute(
        f"""
        UPDATE jobs
        SET status = 'cancelled', lease_until = NULL, lease_token = NULL, worker_id = NULL,
            updated_at = ?
        WHERE user_id = ?
          AND local_date IN ({placeholders})
          AND status IN ('queued', 'failed')
          AND priority < ?
          AND is_welcome = 0
        """,
        (isoformat_utc(now or utc_now()), user_id, *dates, PRIORITY_WELCOME),
    )
    count = max(cursor.rowcount, 0)
    if count:
        log_event(logger, logging.INFO, "jobs_cancelled", user_id=user_id, count=count)
    return count


def reactivate_jobs(
    conn: Any,
    user_id: str,
    dates: Iterable[str],
    *,
    now: datetime | None = None,
) -> int:
    dates = list(dates)
    if not dates:
        return 0
    placeholders = ",".join(["?"] * len(dates))
    cursor = conn.execute(
        f"""
        UPDATE jobs
        SET status = 'queued',
            attempt_count = 0,
            error_code = NULL,
            error_message = NULL,
            worker_id = NULL,
            lease_until = NULL,
            lease_token = NULL,
            updated_at = ?
        WHERE user_id = ? AND local_date IN ({placeholders}) AND status = 'cancelled'
        """,
        (isoformat_utc(now or utc_now()), user_id, *dates),
    )
    count = max(cursor.rowcount, 0)
    if count:
        log_event(logger, logging.INFO, "jobs_reactivated", user_id=user_id, count=count)
    return count


def update_jobs_settings(
    conn: Any,
    user_id: str,
    settings: dict[str, object],
    *,
    dates: list[str] | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    statuses: list[str] | None = None,
    force_requeue: bool = False,
    today: str,
    now: datetime | None = None,
    estimated_ready_seconds: int = 90,
) -> list[dict[str, str]]:
    """Merge ``settings`` into the snapshot of a user's matching jobs.

    Without explicit dates or a range only jobs from ``today`` on are touched.
    ``statuses`` defaults to queued and failed.
    """
    now = now or utc_now()
    now_iso = isoformat_utc(now)
    statuses = list(statuses or [STATUS_QUEUED, STATUS_FAILED])
    params: list[object] = [user_id, *statuses]
    clause = f"user_id = ? AND status IN ({','.join(['?'] * len(statuses))})"
    if dates:
        clause += f" AND local_date IN ({','.join(['?'] * len(dates))})"
        params.extend(dates)
    elif start_date and end_date:
        clause += " AND local_date >= ? AND local_date <= ?"
        params.extend([start_date, end_date])
    else:
        clause += " AND local_date >= ?"
        params.append(today)
    lock = " FOR UPDATE" if conn.is_postgres else ""

    affected: list[dict[str, str]] = []
    with conn.transaction():
        rows = conn.execute(
            f"SELECT job_id, local_date, status, snapshot_json, timezone FROM jobs WHERE {clause}{lock}",
            tuple(params),
        ).fetchall()
        for job_id, local_date, status, snapshot_json, timezone_name in rows:
            snapshot = json_loads_or(snapshot_json, {})
            snapshot.update(settings)
            new_timezone = str(settings.get("timezone") or timezone_name)
            if force_requeue:
                conn.execute(
                    f"""
                    UPDATE jobs
                    SET snapshot_json = ?,
                        timezone = ?,
                        status = 'queued',
                        attempt_count = 0,
                        estimated_ready_time = ?,
                        {_CLEAR_RESULTS},
                        updated_at = ?
                    WHERE job_id = ?
                    """,
                    (
                        json_dumps(snapshot),
                        new_timezone,
                        isoformat_utc(now + timedelta(seconds=estimated_ready_seconds)),
                        now_iso,
                        job_id,
                    ),
                )
                status = STATUS_QUEUED
            else:
                conn.execute(
                    "UPDATE jobs SET snapshot_json = ?, timezone = ?, updated_at = ? WHERE job_id = ?",
                    (json_dumps(snapshot), new_timezone, now_iso, job_id),
                )
            affected.append({"job_id": job_id, "local_date": local_date, "status": status})
    log_event(
        logger,
        logging.INFO,
        "jobs_settings_updated",
        user_id=user_id,
        count=len(affected),
        force_requeue=force_requeue,
    )
    return affected


def update_job_snapshots(
    conn: Any,
    user_id: str,
    job_ids: list[str],
    context: dict[str, object],
    *,
    now: datetime | None = None,
) -> int:
    """Refresh location, weather and calendar context on the user's own jobs."""
    if not job_ids:
        return 0
    context = {key: value for key, value in context.items() if key in SNAPSHOT_CONTEXT}
    now_iso = isoformat_utc(now or utc_now())
    placeholders = ",".join(["?"] * len(job_ids))
    lock = " FOR UPDATE" if conn.is_postgres else ""
    updated = 0
    with conn.transaction():
        rows = conn.execute(
            f"""
            SELECT job_id, snapshot_json FROM jobs
            WHERE user_id = ? AND job_id IN ({placeholders}){lock}
            """,
            (user_id, *job_ids),
        ).fetchall()
        for job_id, snapshot_json in rows:
            snapshot = json_loads_or(snapshot_json, {})
            snapshot.update(context)
            conn.execute(
                "UPDATE jobs SET snapshot_json = ?, updated_at = ? WHERE job_id = ?",
                (json_dumps(snapshot), now_iso, job_id),
            )
            updated += 1
    return updated


def cleanup_old_data(
    conn: Any,
    days_to_keep: int = 30,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    cutoff = isoformat_utc((now or utc_now()) - timedelta(days=days_to_keep))
    with conn.transaction():
        deleted = conn.execute(
            "DELETE FROM jobs WHERE created_at < ? AND status IN ('ready', 'failed')",
            (cutoff,),
        ).rowcount
        request_logs = conn.execute(
            "DELETE FROM request_logs WHERE created_at < ?",
            (cutoff,),
        ).rowcount
    result = {
        "jobs_deleted": max(deleted, 0),
        "request_logs_deleted": max(request_logs, 0),
    }
    log_event(logger, logging.INFO, "old_data_cleaned", days_to_keep=days_to_keep, **result)
    return result


def list_audio_files_to_cleanup(
    conn: Any,
    days_to_keep: int = 10,
    *,
    now: datetime | None = None,
) -> list[dict[str, object]]:
    cutoff = isoformat_utc((now or utc_now()) - timedelta(days=days_to_keep))
    cursor = conn.execute(
        """
        SELECT job_id, user_id, audio_file_path, created_at
        FROM jobs
        WHERE audio_file_path IS NOT NULL
          AND audio_file_path <> ''
          AND created_at < ?
          AND status = 'ready'
        ORDER BY created_at ASC
        """,
        (cutoff,),
    )
    return [
        {
            "job_id": job_id,
            "user_id": user_id,
            "audio_file_path": audio_file_path,
            "created_at": created_at,
        }
        for job_id, user_id, audio_file_path, created_at in cursor.fetchall()
    ]


def mark_audio_paths_cleared(conn: Any, job_ids: list[str]) -> int:
    if not job_ids:
        return 0
    placeholders = ",".join(["?"] * len(job_ids))
    cursor = conn.execute(
        f"""
        UPDATE jobs SET audio_file_path = NULL, updated_at = ?
        WHERE job_id IN ({placeholders}) AND audio_file_path IS NOT NULL
        """,
        (isoformat_utc(utc_now()), *job_ids),
    )
    return max(cursor.rowcount, 0)


def insert_request_log(
    conn: Any,
    *,
    request_id: str,
    endpoint: str,
    method: str,
    user_id: str | None = None,
    status_code: int | None = 200,
    response_time_ms: int | None = None,
    error_code: str | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO request_logs
            (request_id, user_id, endpoint, method, status_code, response_time_ms,
             error_code, user_agent, ip_address, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            request_id,
            user_id,
            endpoint,
            method,
            status_code,
            response_time_ms,
            error_code,
            user_agent,
            ip_address,
            isoformat_utc(utc_now()),
        ),
    )


def get_queue_stats(conn: Any, *, now: datetime | None = None, max_attempts: int = 3) -> dict[str, int]:
    now_iso = isoformat_utc(now or utc_now())
    stats = {status: 0 for status in (
        STATUS_QUEUED, STATUS_PROCESSING, STATUS_READY, STATUS_FAILED, STATUS_CANCELLED
    )}
    for status, count in conn.execute(
        "SELECT status, COUNT(*) FROM jobs GROUP BY status"
    ).fetchall():
        stats[status] = int(count)
    row = conn.execute(
        f"SELECT COUNT(*) FROM jobs WHERE {_ELIGIBLE}",
        (max_attempts, now_iso, max_attempts, now_iso),
    ).fetchone()
    stats["eligible"] = int(row[0]) if row else 0
    row = conn.execute(
        "SELECT COUNT(*) FROM jobs WHERE status = 'processing' AND lease_until < ?",
        (now_iso,),
    ).fetchone()
    stats["expired_leases"] = int(row[0]) if row else 0
    return stats


def _select_job_for_update(conn: Any, user_id: str, local_date: str):
    lock = " FOR UPDATE" if conn.is_postgres else ""
    return conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE user_id = ? AND local_date = ?{lock}",
        (user_id, local_date),
    ).fetchone()


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        user_id,
        local_date,
        scheduled_at,
        process_not_before,
        timezone_name,
        status,
        priority,
        attempt_count,
        worker_id,
        lease_until,
        is_welcome,
        social_daystart,
        snapshot_json,
        estimated_ready_time,
        script_content,
        audio_file_path,
        audio_duration,
        transcript,
        script_cost,
        tts_cost,
        total_cost,
        error_code,
        error_message,
        user_completed,
        user_completed_at,
        created_at,
        updated_at,
        completed_at,
        lease_token,
    ) = row
    return Job(
        job_id=job_id,
        user_id=user_id,
        local_date=local_date,
        scheduled_at=scheduled_at,
        process_not_before=process_not_before,
        timezone=timezone_name,
        status=status,
        priority=int(priority),
        attempt_count=int(attempt_count),
        worker_id=worker_id,
        lease_until=lease_until,
        is_welcome=bool(is_welcome),
        social_daystart=bool(social_daystart),
        snapshot=json_loads_or(snapshot_json, {}),
        estimated_ready_time=estimated_ready_time,
        script_content=script_content,
        audio_file_path=audio_file_path,
        audio_duration=int(audio_duration) if audio_duration is not None else None,
        transcript=transcript,
        script_cost=script_cost,
        tts_cost=tts_cost,
        total_cost=total_cost,
        error_code=error_code,
        error_message=error_message,
        user_completed=bool(user_completed),
        user_completed_at=user_completed_at,
        created_at=created_at,
        updated_at=updated_at,
        completed_at=completed_at,
        lease_token=lease_token,
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def _new_lease_token() -> str:
    return uuid.uuid4().hex


def try_acquire_lease(conn: Any, lease_name: str) -> bool:
    # Session-level advisory lock on PostgreSQL; SQLite deployments run one refresher.
    if not conn.is_postgres:
        return True
    row = conn.execute("SELECT pg_try_advisory_lock(?)", (_lease_key(lease_name),)).fetchone()
    return bool(row and row[0])


def release_lease(conn: Any, lease_name: str) -> bool:
    if not conn.is_postgres:
        return True
    row = conn.execute("SELECT pg_advisory_unlock(?)", (_lease_key(lease_name),)).fetchone()
    return bool(row and row[0])


def _lease_key(lease_name: str) -> int:
    digest = hashlib.sha256(lease_name.encode("utf-8")).digest()
    return struct.unpack(">q", digest[:8])[0]
