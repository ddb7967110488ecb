from datetime import timedelta

import pytest
from conftest import create_job

from daystart.config import load_runtime_config
from daystart.content_cache import cache_content
from daystart.generation import (
    GenerationContext,
    GenerationError,
    coerce_result,
    content_types_for,
    load_generator,
)
from daystart.models import JobResult
from daystart.storage import get_job
from daystart.utils import utc_now
from daystart.worker import build_parser, default_worker_id, process_batch


def _create_due_job(conn, user_id: str, **kwargs):
    now = utc_now()
    return create_job(
        conn,
        user_id,
        now=now,
        not_before=now - timedelta(minutes=1),
        **kwargs,
    )


def fake_generator(context: GenerationContext) -> dict:
    return {
        "audio_file_path": f"{context.job.user_id}/{context.job.local_date}.mp3",
        "audio_duration": 95,
        "transcript": "Good morning",
        "sources_seen": sorted(context.content),
    }


def test_process_batch_completes_jobs(conn):
    config = load_runtime_config(conn)
    first = _create_due_job(conn, "user-a")
    second = _create_due_job(conn, "user-b")

    summary = process_batch(conn, config, "worker-1", fake_generator)

    assert summary.claimed == 2
    assert summary.succeeded == 2
    job = get_job(conn, first.job_id)
    assert job.status == "ready"
    assert job.audio_file_path == "user-a/2025-03-10.mp3"
    assert job.audio_duration == 95
    assert get_job(conn, second.job_id).status == "ready"


def test_process_batch_passes_fresh_content(conn):
    config = load_runtime_config(conn)
    cache_content(conn, "news", "newsapi", {"compact": {"news": ["headline"]}})
    _create_due_job(conn, "user-a", snapshot={"include_news": True, "include_stocks": True})
    seen = {}

    def generator(context):
        seen["content"] = context.content
        seen["compact"] = context.compact
        return JobResult(audio_file_path="a.mp3")

    process_batch(conn, config, "worker-1", generator)

    assert list(seen["content"]) == ["news"]
    assert seen["compact"] == {"news": ["headline"]}


def test_generator_failures_are_recorded(conn):
    config = load_runtime_config(conn)
    plain = _create_due_job(conn, "user-a")
    coded = _create_due_job(conn, "user-b")

    def generator(context):
        if context.job.job_id == plain.job_id:
            raise RuntimeError("tts exploded")
        raise GenerationError("quota", code="TTS_QUOTA")

    summary = process_batch(conn, config, "worker-1", generator)

    assert summary.failed == 2
    failed = get_job(conn, plain.job_id)
    assert failed.status == "failed"
    assert failed.error_code == "PROCESSING_ERROR"
    assert failed.error_message == "tts exploded"
    assert get_job(conn, coded.job_id).error_code == "TTS_QUOTA"


def test_process_batch_claims_requested_job_first(conn):
    config = load_runtime_config(conn)
    _create_due_job(conn, "user-a", scheduled_in=timedelta(minutes=30))
    later = _create_due_job(conn, "user-b", scheduled_in=timedelta(days=2))
    order = []

    def generator(context):
        order.append(context.job.job_id)
        return {"audio_file_path": "x.mp3"}

    process_batch(conn, config, "worker-1", generator, job_id=later.job_id)

    assert order[0] == later.job_id


def test_content_types_for_snapshot():
    assert content_types_for({"include_news": True, "include_sports": True}) == ["news", "sports"]
    assert content_types_for({}) == []


def test_coerce_result_requires_audio_path():
    with pytest.raises(GenerationError):
        coerce_result({"transcript": "no audio"})
    result = coerce_result({"audio_file_path": "a.mp3", "total_cost": "0.12", "voice": "v1"})
    assert result.total_cost == 0.12
    assert result.extra == {"voice": "v1"}


def test_load_generator(monkeypatch):
    monkeypatch.delenv("DS_GENERATOR", raising=False)
    with pytest.raises(GenerationError) as excinfo:
        load_generator()
    assert excinfo.value.code == "GENERATOR_NOT_CONFIGURED"
    with pytest.raises(GenerationError):
        load_generator("no_colon_here")
    with pytest.raises(GenerationError):
        load_generator("daystart.utils:missing_callable")
    assert load_generator("daystart.utils:utc_now") is utc_now


def test_worker_parser_defaults():
    args = build_parser().parse_args(["--once", "--worker-id", "w9"])
    assert args.once is True
    assert args.worker_id == "w9"
    assert args.sleep == 60


def test_default_worker_id_is_unique_per_process(monkeypatch):
    monkeypatch.setenv("HOSTNAME", "box")
    first = build_parser().parse_args([]).worker_id
    second = default_worker_id()
    assert first.startswith("box-")
    assert first != second
