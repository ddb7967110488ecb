from __future__ import annotations

import argparse
import logging
import os
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass

from .config import Config, ConfigError, load_runtime_config
from .content_cache import get_compact_content, get_fresh_content
from .generation import (
    GenerationContext,
    GenerationError,
    Generator,
    coerce_result,
    content_types_for,
    load_generator,
)
from .models import ERROR_PROCESSING, Job
from .storage import (
    claim_next_job,
    claim_specific_job,
    complete_job,
    fail_job,
    init_db,
    release_expired_leases,
)
from .utils import configure_logging, log_event

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


def default_worker_id() -> str:
    """Host name plus a per-process suffix so concurrent runs never share an id."""
    return f"{os.environ.get('HOSTNAME', 'worker')}-{uuid.uuid4().hex[:8]}"


@dataclass
class BatchSummary:
    reclaimed: int = 0
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: str) -> None:
        if outcome == OUTCOME_SUCCEEDED:
            self.succeeded += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        else:
            self.skipped += 1


def _setup_logging() -> logging.Logger:
    return configure_logging("daystart.worker")


def process_batch(
    conn,
    config: Config,
    worker_id: str,
    generator: Generator,
    job_id: str | None = None,
    logger: logging.Logger | None = None,
) -> BatchSummary:
    """Reclaim expired leases, then claim and run up to ``max_jobs_per_run`` jobs."""
    logger = logger or logging.getLogger("daystart.worker")
    summary = BatchSummary()
    summary.reclaimed = release_expired_leases(conn, max_attempts=config.jobs.max_attempts)
    for index in range(config.jobs.max_jobs_per_run):
        if job_id and index == 0:
            job = claim_specific_job(
                conn,
                job_id,
                worker_id,
                lease_minutes=config.jobs.lease_minutes,
                max_attempts=config.jobs.max_attempts,
            )
            if job is None:
                log_event(logger, logging.INFO, "job_not_claimable", job_id=job_id)
        else:
            job = claim_next_job(
                conn,
                worker_id,
                lease_minutes=config.jobs.lease_minutes,
                max_attempts=config.jobs.max_attempts,
            )
        if job is None:
            break
        summary.claimed += 1
        summary.record(_process_claimed_job(conn, config, job, worker_id, generator, logger))
    log_event(
        logger,
        logging.INFO,
        "worker_batch_done",
        worker_id=worker_id,
        reclaimed=summary.reclaimed,
        claimed=summary.claimed,
        succeeded=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return summary


def _process_claimed_job(
    conn,
    config: Config,
    job: Job,
    worker_id: str,
    generator: Generator,
    logger: logging.Logger,
) -> str:
    types = content_types_for(job.snapshot)
    content = get_fresh_content(conn, types) if types else {}
    compact = (
        get_compact_content(conn, types, limit=config.content.compact_limit) if types else {}
    )
    missing = [item for item in types if item not in content]
    if missing:
        log_event(
            logger,
            logging.WARNING,
            "content_missing",
            job_id=job.job_id,
            types=",".join(missing),
        )

    try:
        result = coerce_result(generator(GenerationContext(job=job, content=content, compact=compact)))
    except GenerationError as exc:
        return _report_failure(conn, job, worker_id, exc.code, str(exc), logger)
    except Exception as exc:  # noqa: BLE001
        return _report_failure(conn, job, worker_id, ERROR_PROCESSING, str(exc), logger)

    # A cancelled or re-leased job no longer matches and the write is skipped.
    if complete_job(conn, job.job_id, worker_id, result, lease_token=job.lease_token):
        return OUTCOME_SUCCEEDED
    return OUTCOME_SKIPPED


def _report_failure(
    conn,
    job: Job,
    worker_id: str,
    error_code: str,
    message: str,
    logger: logging.Logger,
) -> str:
    log_event(
        logger,
        logging.ERROR,
        "generation_failed",
        job_id=job.job_id,
        attempt=job.attempt_count,
        error_code=error_code,
        error=message,
    )
    if fail_job(
        conn,
        job.job_id,
        worker_id,
        error_code,
        message or error_code,
        lease_token=job.lease_token,
    ):
        return OUTCOME_FAILED
    return OUTCOME_SKIPPED


def run_once(
    worker_id: str,
    generator: Generator | None = None,
    job_id: str | None = None,
) -> int:
    logger = _setup_logging()
    try:
        generator = generator or load_generator()
        conn = init_db()
        config = load_runtime_config(conn)
    except (ConfigError, GenerationError) as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        process_batch(conn, config, worker_id, generator, job_id=job_id, logger=logger)
    finally:
        conn.close()
    return 0


def _process_claimed_job_thread(worker_id: str, job: Job, generator: Generator) -> str:
    logger = _setup_logging()
    conn = init_db()
    try:
        config = load_runtime_config(conn)
        return _process_claimed_job(conn, config, job, worker_id, generator, logger)
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    generator: Generator | None = None,
    concurrency: int = 1,
) -> int:
    logger = _setup_logging()
    try:
        generator = generator or load_generator()
    except GenerationError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    if concurrency <= 1:
        while True:
            run_once(worker_id, generator)
            time.sleep(sleep_seconds)

    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            if len(futures) < max_workers:
                try:
                    conn = init_db()
                    config = load_runtime_config(conn)
                except ConfigError as exc:
                    log_event(logger, logging.ERROR, "config_error", error=str(exc))
                    time.sleep(sleep_seconds)
                    continue
                try:
                    release_expired_leases(conn, max_attempts=config.jobs.max_attempts)
                    while len(futures) < max_workers:
                        job = claim_next_job(
                            conn,
                            worker_id,
                            lease_minutes=config.jobs.lease_minutes,
                            max_attempts=config.jobs.max_attempts,
                        )
                        if not job:
                            break
                        futures.add(
                            executor.submit(_process_claimed_job_thread, worker_id, job, generator)
                        )
                finally:
                    conn.close()
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="daystart-worker")
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit")
    parser.add_argument("--sleep", type=int, default=60, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=default_worker_id())
    parser.add_argument("--job-id", default=None, help="Claim this job first (with --once)")
    parser.add_argument("--generator", default=None, help="module:callable producing audio")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("DS_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    try:
        generator = load_generator(args.generator)
    except GenerationError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        return run_once(args.worker_id, generator, job_id=args.job_id)
    return run_loop(args.worker_id, args.sleep, generator, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
