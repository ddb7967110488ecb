from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    # Schema changes go through new versions only; never edit an applied one.
    logger = logging.getLogger("daystart.migrations")
    with conn.transaction():
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)


def _migration_initial_schema(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            job_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            local_date TEXT NOT NULL,
            scheduled_at TEXT NOT NULL,
            process_not_before TEXT NOT NULL,
            timezone TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'queued'
                CHECK (status IN ('queued', 'processing', 'ready', 'failed', 'cancelled')),
            priority INTEGER NOT NULL DEFAULT 50 CHECK (priority >= 0 AND priority <= 100),
            attempt_count INTEGER NOT NULL DEFAULT 0,
            worker_id TEXT NULL,
            lease_until TEXT NULL,
            is_welcome INTEGER NOT NULL DEFAULT 0,
            social_daystart INTEGER NOT NULL DEFAULT 0,
            snapshot_json TEXT NOT NULL,
            estimated_ready_time TEXT NULL,
            script_content TEXT NULL,
            audio_file_path TEXT NULL,
            audio_duration INTEGER NULL,
            transcript TEXT NULL,
            script_cost REAL NULL,
            tts_cost REAL NULL,
            total_cost REAL NULL,
            error_code TEXT NULL,
            error_message TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT NULL,
            UNIQUE(user_id, local_date)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority DESC, created_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(lease_until)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user_date ON jobs(user_id, local_date)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS request_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id TEXT NOT NULL,
            user_id TEXT NULL,
            endpoint TEXT NOT NULL,
            method TEXT NOT NULL,
            status_code INTEGER NULL,
            response_time_ms INTEGER NULL,
            error_code TEXT NULL,
            user_agent TEXT NULL,
            ip_address TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_request_logs_user ON request_logs(user_id, endpoint, created_at)"
    )


def _migration_content_cache(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS content_cache (
            id TEXT PRIMARY KEY,
            content_type TEXT NOT NULL CHECK (content_type IN ('news', 'stocks', 'sports')),
            source TEXT NOT NULL,
            data_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_cache_type ON content_cache(content_type, source, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_cache_expires ON content_cache(expires_at)"
    )


def _migration_user_completed(conn: Any) -> None:
    columns = _table_columns(conn, "jobs")
    if "user_completed" not in columns:
        conn.execute("ALTER TABLE jobs ADD COLUMN user_completed INTEGER NOT NULL DEFAULT 0")
    if "user_completed_at" not in columns:
        conn.execute("ALTER TABLE jobs ADD COLUMN user_completed_at TEXT NULL")


def _migration_content_fetch_log(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS content_fetch_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source TEXT NOT NULL,
            content_type TEXT NOT NULL CHECK (content_type IN ('news', 'stocks', 'sports')),
            fetch_status TEXT NOT NULL
                CHECK (fetch_status IN ('success', 'failed_used_cache', 'failed_no_cache')),
            error_message TEXT NULL,
            cached_data_age_hours REAL NULL,
            items_fetched INTEGER NULL,
            api_response_time_ms INTEGER NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_fetch_log_source ON content_fetch_log(source, created_at)"
    )


def _migration_lease_token(conn: Any) -> None:
    if "lease_token" not in _table_columns(conn, "jobs"):
        conn.execute("ALTER TABLE jobs ADD COLUMN lease_token TEXT NULL")


def _table_columns(conn: Any, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_content_cache", _migration_content_cache),
        ("003_user_completed", _migration_user_completed),
        ("004_content_fetch_log", _migration_content_fetch_log),
        ("005_lease_token", _migration_lease_token),
    ]
