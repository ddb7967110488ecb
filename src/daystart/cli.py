from __future__ import annotations

import argparse
import json
import logging
import os

import uvicorn
import yaml

from .config import (
    ConfigError,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .content_cache import (
    cleanup_expired_content,
    cleanup_fetch_log,
    get_content_stats,
    list_cache_entries,
)
from .models import CONTENT_TYPES, JOB_STATUSES
from .monitoring import build_monitoring_summary
from .pipelines.content_refresh import load_sources_file, refresh_content
from .storage import (
    cleanup_old_data,
    get_schema_version,
    init_db,
    list_audio_files_to_cleanup,
    list_jobs,
    mark_audio_paths_cleared,
    release_expired_leases,
)
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("daystart")


def _open(logger: logging.Logger):
    conn = init_db(get_state_db_path())
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(get_state_db_path())
    try:
        log_event(
            logger,
            logging.INFO,
            "db_migrated",
            backend=conn.backend,
            version=get_schema_version(conn),
        )
    finally:
        conn.close()
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(get_state_db_path())
    try:
        jobs = list_jobs(conn, status=args.status, limit=args.limit)
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.job_id,
            user_id=job.user_id,
            local_date=job.local_date,
            status=job.status,
            priority=job.priority,
            attempts=job.attempt_count,
            process_not_before=job.process_not_before,
            error_code=job.error_code,
        )
    return 0


def _cmd_jobs_reclaim(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        released = release_expired_leases(conn, max_attempts=config.jobs.max_attempts)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "reclaim_done", released=released)
    return 0


def _cmd_cleanup(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        days = args.days if args.days is not None else config.jobs.retention_days
        cleanup_old_data(conn, days)
        cleanup_expired_content(conn)
        deleted = cleanup_fetch_log(conn, args.fetch_log_days)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "fetch_log_cleaned", deleted=deleted)
    return 0


def _cmd_audio_cleanup(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        days = args.days if args.days is not None else config.audio.cleanup_days
        candidates = list_audio_files_to_cleanup(conn, days)
        for item in candidates:
            log_event(logger, logging.INFO, "audio_cleanup_candidate", **item)
        if not args.delete:
            return 0
        audio_root = os.path.join(
            os.environ.get("DS_DATA_DIR", config.paths.data_dir), config.paths.audio_prefix
        )
        cleared = []
        for item in candidates:
            target = os.path.join(audio_root, str(item["audio_file_path"]))
            try:
                if os.path.isfile(target):
                    os.remove(target)
            except OSError as exc:
                log_event(logger, logging.WARNING, "audio_delete_failed", path=target, error=str(exc))
                continue
            cleared.append(str(item["job_id"]))
        count = mark_audio_paths_cleared(conn, cleared)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "audio_cleanup_done", cleared=count)
    return 0


def _cmd_content_refresh(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        sources = load_sources_file(args.sources)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        log_event(logger, logging.ERROR, "sources_load_error", error=str(exc))
        return 1
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        report = refresh_content(
            conn,
            sources,
            default_expires_hours=config.content.default_expires_hours,
            logger=logger,
        )
    finally:
        conn.close()
    print(json.dumps(report.as_dict(), indent=2))
    return 0 if not report.no_cache else 2


def _cmd_content_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(get_state_db_path())
    try:
        entries = list_cache_entries(conn, args.type, limit=args.limit)
    finally:
        conn.close()
    for entry in entries:
        log_event(
            logger,
            logging.INFO,
            "content_entry",
            id=entry.id,
            content_type=entry.content_type,
            source=entry.source,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
        )
    return 0


def _cmd_content_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(get_state_db_path())
    try:
        stats = get_content_stats(conn)
    finally:
        conn.close()
    for row in stats:
        log_event(logger, logging.INFO, "content_stats", **row)
    return 0


def _cmd_monitor(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        summary = build_monitoring_summary(conn, config)
    finally:
        conn.close()
    print(json.dumps(summary, indent=2))
    return 1 if summary["overall_status"] == "fail" else 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run(
        "daystart.api:app",
        host=args.host,
        port=args.port,
        proxy_headers=False,
        log_level=os.environ.get("DS_LOG_LEVEL", "info").lower(),
    )
    return 0


def _cmd_config_export(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(get_state_db_path())
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    try:
        with open(args.out, "w", encoding="utf-8") as handle:
            yaml.safe_dump(cfg, handle, sort_keys=False)
    except OSError as exc:
        log_event(logger, logging.ERROR, "config_export_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "config_exported", path=args.out)
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        with open(args.path, "r", encoding="utf-8") as handle:
            cfg = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        log_event(logger, logging.ERROR, "config_import_error", error=str(exc))
        return 1
    if not isinstance(cfg, dict):
        log_event(logger, logging.ERROR, "config_import_error", error="config must be a mapping")
        return 1
    conn = init_db(get_state_db_path())
    try:
        set_runtime_config(conn, cfg)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="daystart", description="DayStart scheduler CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--status", choices=JOB_STATUSES, default=None)
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)
    jobs_reclaim = jobs_subparsers.add_parser("reclaim", help="Release expired leases")
    jobs_reclaim.set_defaults(func=_cmd_jobs_reclaim)

    cleanup_parser = subparsers.add_parser("cleanup", help="Apply retention to jobs and caches")
    cleanup_parser.add_argument("--days", type=int, default=None, help="Job retention in days")
    cleanup_parser.add_argument("--fetch-log-days", type=int, default=7)
    cleanup_parser.set_defaults(func=_cmd_cleanup)

    audio_parser = subparsers.add_parser("audio-cleanup", help="List or delete old audio files")
    audio_parser.add_argument("--days", type=int, default=None)
    audio_parser.add_argument(
        "--delete", action="store_true", help="Delete local files and clear their paths"
    )
    audio_parser.set_defaults(func=_cmd_audio_cleanup)

    content_parser = subparsers.add_parser("content", help="Content cache commands")
    content_subparsers = content_parser.add_subparsers(dest="content_command", required=True)
    content_refresh = content_subparsers.add_parser("refresh", help="Fetch sources into the cache")
    content_refresh.add_argument("--sources", required=True, help="Path to sources YAML file")
    content_refresh.set_defaults(func=_cmd_content_refresh)
    content_list = content_subparsers.add_parser("list", help="List recent cache entries")
    content_list.add_argument("--type", choices=CONTENT_TYPES, default=None)
    content_list.add_argument("--limit", type=int, default=20)
    content_list.set_defaults(func=_cmd_content_list)
    content_stats = content_subparsers.add_parser("stats", help="Per-source cache stats")
    content_stats.set_defaults(func=_cmd_content_stats)

    monitor_parser = subparsers.add_parser("monitor", help="Print queue and cache health")
    monitor_parser.set_defaults(func=_cmd_monitor)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    config_parser = subparsers.add_parser("config", help="Runtime config")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_export = config_subparsers.add_parser("export", help="Write runtime config as YAML")
    config_export.add_argument("--out", required=True)
    config_export.set_defaults(func=_cmd_config_export)
    config_import = config_subparsers.add_parser("import", help="Load runtime config from YAML")
    config_import.add_argument("path")
    config_import.set_defaults(func=_cmd_config_import)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
