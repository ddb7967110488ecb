from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations_pg(conn: Any) -> None:
    logger = logging.getLogger("daystart.migrations")
    with conn.transaction():
        # Serialize concurrent bootstraps from several workers starting at once.
        conn.execute("SELECT pg_advisory_xact_lock(881234560)")
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
        for version, migration in _get_migrations_pg():
            if version in applied:
                continue
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)


def _bootstrap_schema(conn: Any) -> None:
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
            script_cost DOUBLE PRECISION NULL,
            tts_cost DOUBLE PRECISION NULL,
            total_cost DOUBLE PRECISION NULL,
            error_code TEXT NULL,
            error_message TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT NULL,
            user_completed INTEGER NOT NULL DEFAULT 0,
            user_completed_at TEXT NULL,
            UNIQUE(user_id, local_date)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_claim
            ON jobs(status, priority DESC, created_at)
            WHERE status IN ('queued', 'failed', 'processing')
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(lease_until) WHERE lease_until IS NOT NULL"
    )
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
            id BIGSERIAL PRIMARY KEY,
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
        "CREATE INDEX IF NOT EXISTS idx_content_cache_type ON content_cache(content_type, source, created_at DESC)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_cache_expires ON content_cache(expires_at)"
    )


def _migrate_content_fetch_log(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS content_fetch_log (
            id BIGSERIAL PRIMARY KEY,
            source TEXT NOT NULL,
            content_type TEXT NOT NULL CHECK (content_type IN ('news', 'stocks', 'sports')),
            fetch_status TEXT NOT NULL
                CHECK (fetch_status IN ('success', 'failed_used_cache', 'failed_no_cache')),
            error_message TEXT NULL,
            cached_data_age_hours DOUBLE PRECISION NULL,
            items_fetched INTEGER NULL,
            api_response_time_ms INTEGER NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_fetch_log_source ON content_fetch_log(source, created_at DESC)"
    )


def _migrate_lease_token(conn: Any) -> None:
    conn.execute("ALTER TABLE jobs ADD COLUMN IF NOT EXISTS lease_token TEXT NULL")


def _get_migrations_pg() -> list[tuple[str, Migration]]:
    return [
        ("pg_bootstrap_001", _bootstrap_schema),
        ("pg_content_fetch_log_002", _migrate_content_fetch_log),
        ("pg_lease_token_003", _migrate_lease_token),
    ]
