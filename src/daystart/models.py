from __future__ import annotations

from dataclasses import dataclass, field

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_READY = "ready"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

JOB_STATUSES = (
    STATUS_QUEUED,
    STATUS_PROCESSING,
    STATUS_READY,
    STATUS_FAILED,
    STATUS_CANCELLED,
)

PRIORITY_WELCOME = 100
PRIORITY_URGENT = 75
PRIORITY_NORMAL = 50
PRIORITY_BACKGROUND = 25

CONTENT_TYPES = ("news", "stocks", "sports")

FETCH_SUCCESS = "success"
FETCH_FAILED_USED_CACHE = "failed_used_cache"
FETCH_FAILED_NO_CACHE = "failed_no_cache"

FETCH_STATUSES = (FETCH_SUCCESS, FETCH_FAILED_USED_CACHE, FETCH_FAILED_NO_CACHE)

ERROR_LEASE_EXPIRED = "LEASE_EXPIRED"
ERROR_PROCESSING = "PROCESSING_ERROR"


@dataclass(frozen=True)
class Job:
    job_id: str
    user_id: str
    local_date: str
    scheduled_at: str
    process_not_before: str
    timezone: str
    status: str
    priority: int
    attempt_count: int
    worker_id: str | None
    lease_until: str | None
    is_welcome: bool
    social_daystart: bool
    snapshot: dict[str, object]
    estimated_ready_time: str | None
    script_content: str | None
    audio_file_path: str | None
    audio_duration: int | None
    transcript: str | None
    script_cost: float | None
    tts_cost: float | None
    total_cost: float | None
    error_code: str | None
    error_message: str | None
    user_completed: bool
    user_completed_at: str | None
    created_at: str
    updated_at: str
    completed_at: str | None
    lease_token: str | None = None


@dataclass(frozen=True)
class ContentCacheEntry:
    id: str
    content_type: str
    source: str
    data: dict[str, object]
    created_at: str
    expires_at: str


@dataclass(frozen=True)
class JobResult:
    """Output of a successful generation run, persisted by ``complete_job``."""

    audio_file_path: str
    audio_duration: int | None = None
    script_content: str | None = None
    transcript: str | None = None
    script_cost: float | None = None
    tts_cost: float | None = None
    total_cost: float | None = None
    extra: dict[str, object] = field(default_factory=dict)
