from __future__ import annotations

import dataclasses
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .content_cache import (
    ContentValidationError,
    cleanup_expired_content,
    cleanup_fetch_log,
    get_compact_content,
    get_fresh_content,
)
from .db import database_errors
from .models import ERROR_PROCESSING, CONTENT_TYPES, JobResult
from .monitoring import build_monitoring_summary
from .services.jobs_service import (
    ValidationError,
    create_or_update_job,
    error_envelope,
    get_audio_status,
    get_jobs,
    new_request_id,
    record_request,
    run_enveloped,
    update_job_snapshots,
    update_jobs,
    verify_audio_signature,
)
from .storage import (
    claim_next_job,
    claim_specific_job,
    cleanup_old_data,
    complete_job,
    fail_job,
    init_db,
    release_expired_leases,
)
from .utils import configure_logging, log_event

app = FastAPI(title="DayStart Scheduler API")
app.add_middleware(
    ProxyHeadersMiddleware, trusted_hosts=os.environ.get("DS_TRUSTED_PROXIES", "*")
)

logger = logging.getLogger("daystart.api")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("DS_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _require_worker_token(request: Request) -> None:
    token = os.environ.get("DS_WORKER_TOKEN")
    if not token:
        return
    if request.headers.get("X-Worker-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class ClaimRequest(BaseModel):
    worker_id: str
    job_id: str | None = None


class CompleteRequest(BaseModel):
    worker_id: str
    lease_token: str
    audio_file_path: str
    audio_duration: int | None = None
    script_content: str | None = None
    transcript: str | None = None
    script_cost: float | None = None
    tts_cost: float | None = None
    total_cost: float | None = None


class FailRequest(BaseModel):
    worker_id: str
    lease_token: str
    error_code: str = ERROR_PROCESSING
    error_message: str = ""


@app.on_event("startup")
def _startup() -> None:
    configure_logging("daystart.api")
    try:
        conn = _get_conn()
    except (ConfigError, *database_errors()) as exc:
        log_event(logger, logging.ERROR, "startup_failed", error=str(exc))
        return
    conn.close()


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "DayStart Scheduler API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"status": "ok"}


# User-facing endpoints always answer 200 with a success envelope.


@app.post("/create_job")
async def create_job_endpoint(request: Request) -> dict[str, Any]:
    raw = await request.body()
    user_id = request.headers.get("x-client-info")

    def call(conn, *, request_id: str) -> dict[str, Any]:
        config = load_runtime_config(conn)
        return create_or_update_job(
            conn, config, user_id, _json_body(raw), request_id=request_id
        )

    return await run_in_threadpool(_respond, request, "/create_job", call)


@app.get("/get_audio_status")
def get_audio_status_endpoint(
    request: Request,
    date: str | None = None,
    mark_completed: str | None = None,
) -> dict[str, Any]:
    user_id = request.headers.get("x-client-info")

    def call(conn, *, request_id: str) -> dict[str, Any]:
        config = load_runtime_config(conn)
        return get_audio_status(
            conn,
            config,
            user_id,
            date,
            mark_completed=_truthy(mark_completed),
            request_id=request_id,
        )

    return _respond(request, "/get_audio_status", call)


@app.get("/get_jobs")
def get_jobs_endpoint(
    request: Request,
    start_date: str | None = None,
    end_date: str | None = None,
) -> dict[str, Any]:
    user_id = request.headers.get("x-client-info")

    def call(conn, *, request_id: str) -> dict[str, Any]:
        return get_jobs(conn, user_id, start_date, end_date, request_id=request_id)

    return _respond(request, "/get_jobs", call)


@app.post("/update_jobs")
async def update_jobs_endpoint(request: Request) -> dict[str, Any]:
    raw = await request.body()
    user_id = request.headers.get("x-client-info")

    def call(conn, *, request_id: str) -> dict[str, Any]:
        config = load_runtime_config(conn)
        return update_jobs(conn, config, user_id, _json_body(raw), request_id=request_id)

    return await run_in_threadpool(_respond, request, "/update_jobs", call)


@app.post("/update_job_snapshots")
async def update_job_snapshots_endpoint(request: Request) -> dict[str, Any]:
    raw = await request.body()
    user_id = request.headers.get("x-client-info")

    def call(conn, *, request_id: str) -> dict[str, Any]:
        return update_job_snapshots(conn, user_id, _json_body(raw), request_id=request_id)

    return await run_in_threadpool(_respond, request, "/update_job_snapshots", call)


@app.get("/audio/{path:path}")
def audio_file(path: str, expires: int = 0, signature: str = "") -> FileResponse:
    secret = os.environ.get("DS_SIGNING_SECRET", "")
    if not verify_audio_signature(path, expires, signature, secret):
        raise HTTPException(status_code=403, detail="invalid or expired signature")
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
    finally:
        conn.close()
    root = os.path.realpath(
        os.path.join(
            os.environ.get("DS_DATA_DIR", config.paths.data_dir), config.paths.audio_prefix
        )
    )
    target = os.path.realpath(os.path.join(root, path))
    if os.path.commonpath([root, target]) != root or not os.path.isfile(target):
        raise HTTPException(status_code=404, detail="audio not found")
    return FileResponse(target, media_type="audio/mpeg")


@app.post("/internal/jobs/claim", dependencies=[Depends(_require_worker_token)])
def internal_claim(payload: ClaimRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
        if payload.job_id:
            job = claim_specific_job(
                conn,
                payload.job_id,
                payload.worker_id,
                lease_minutes=config.jobs.lease_minutes,
                max_attempts=config.jobs.max_attempts,
            )
        else:
            job = claim_next_job(
                conn,
                payload.worker_id,
                lease_minutes=config.jobs.lease_minutes,
                max_attempts=config.jobs.max_attempts,
            )
    finally:
        conn.close()
    return {"job": dataclasses.asdict(job) if job else None}


@app.post("/internal/jobs/{job_id}/complete", dependencies=[Depends(_require_worker_token)])
def internal_complete(job_id: str, payload: CompleteRequest) -> dict[str, object]:
    result = JobResult(
        audio_file_path=payload.audio_file_path,
        audio_duration=payload.audio_duration,
        script_content=payload.script_content,
        transcript=payload.transcript,
        script_cost=payload.script_cost,
        tts_cost=payload.tts_cost,
        total_cost=payload.total_cost,
    )
    conn = _get_conn()
    try:
        updated = complete_job(
            conn, job_id, payload.worker_id, result, lease_token=payload.lease_token
        )
    finally:
        conn.close()
    if not updated:
        raise HTTPException(status_code=409, detail="job is not processing under this lease")
    return {"status": "ok"}


@app.post("/internal/jobs/{job_id}/fail", dependencies=[Depends(_require_worker_token)])
def internal_fail(job_id: str, payload: FailRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        updated = fail_job(
            conn,
            job_id,
            payload.worker_id,
            payload.error_code,
            payload.error_message or payload.error_code,
            lease_token=payload.lease_token,
        )
    finally:
        conn.close()
    if not updated:
        raise HTTPException(status_code=409, detail="job is not processing under this lease")
    return {"status": "ok"}


@app.post("/internal/jobs/reclaim", dependencies=[Depends(_require_worker_token)])
def internal_reclaim() -> dict[str, int]:
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
        released = release_expired_leases(conn, max_attempts=config.jobs.max_attempts)
    finally:
        conn.close()
    return {"released": released}


@app.get("/internal/content/fresh", dependencies=[Depends(_require_worker_token)])
def internal_content_fresh(types: str | None = None, compact: bool = False) -> dict[str, object]:
    requested = [item for item in (types or "").split(",") if item.strip()] or list(CONTENT_TYPES)
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
        payload: dict[str, object] = {"content": get_fresh_content(conn, requested)}
        if compact:
            payload["compact"] = get_compact_content(
                conn, requested, limit=config.content.compact_limit
            )
    except ContentValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return payload


@app.get("/internal/content/freshness", dependencies=[Depends(_require_worker_token)])
def internal_content_freshness() -> dict[str, object]:
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
        return build_monitoring_summary(conn, config)
    finally:
        conn.close()


@app.post("/internal/maintenance/cleanup", dependencies=[Depends(_require_worker_token)])
def internal_cleanup() -> dict[str, object]:
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
        result: dict[str, object] = dict(
            cleanup_old_data(conn, config.jobs.retention_days)
        )
        result["content_deleted"] = cleanup_expired_content(conn)
        result["fetch_log_deleted"] = cleanup_fetch_log(conn)
    finally:
        conn.close()
    return result


def _respond(request: Request, endpoint: str, call: Callable[..., dict[str, Any]]) -> dict[str, Any]:
    request_id = new_request_id()
    started = time.monotonic()
    try:
        conn = _get_conn()
    except database_errors() as exc:
        log_event(logger, logging.ERROR, "database_error", request_id=request_id, error=str(exc))
        return error_envelope(request_id, "DATABASE_ERROR", "Database operation failed")
    try:
        envelope = run_enveloped(request_id, call, conn)
        record_request(
            conn,
            request_id=request_id,
            endpoint=endpoint,
            method=request.method,
            user_id=request.headers.get("x-client-info"),
            started=started,
            envelope=envelope,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    finally:
        conn.close()
    return envelope


def _json_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Invalid JSON in request body", code="INVALID_JSON") from exc


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def _client_ip(request: Request) -> str | None:
    # ProxyHeadersMiddleware has already applied X-Forwarded-For from trusted proxies.
    return request.client.host if request.client else None


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("daystart")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn
