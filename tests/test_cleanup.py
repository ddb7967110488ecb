from datetime import timedelta

from conftest import NOW, create_job

from daystart.storage import cleanup_old_data, get_job, list_audio_files_to_cleanup
from daystart.utils import isoformat_utc


def _age(conn, job_id: str, status: str, days: int, audio: str | None = None) -> None:
    conn.execute(
        "UPDATE jobs SET status = ?, created_at = ?, audio_file_path = ? WHERE job_id = ?",
        (status, isoformat_utc(NOW - timedelta(days=days)), audio, job_id),
    )


def test_cleanup_deletes_old_finished_jobs_only(conn):
    old_ready = create_job(conn, "user-a")
    old_failed = create_job(conn, "user-b")
    old_queued = create_job(conn, "user-c")
    recent_ready = create_job(conn, "user-d")
    _age(conn, old_ready.job_id, "ready", 40, audio="user-a/old.mp3")
    _age(conn, old_failed.job_id, "failed", 40)
    _age(conn, old_queued.job_id, "queued", 40)
    _age(conn, recent_ready.job_id, "ready", 5, audio="user-d/new.mp3")

    result = cleanup_old_data(conn, 30, now=NOW)

    assert result == {"jobs_deleted": 2, "request_logs_deleted": 0}
    assert get_job(conn, old_ready.job_id) is None
    assert get_job(conn, old_failed.job_id) is None
    assert get_job(conn, old_queued.job_id).status == "queued"
    assert get_job(conn, recent_ready.job_id).audio_file_path == "user-d/new.mp3"


def test_audio_cleanup_lists_only_expired_ready_audio(conn):
    old = create_job(conn, "user-a")
    recent = create_job(conn, "user-b")
    _age(conn, old.job_id, "ready", 12, audio="user-a/old.mp3")
    _age(conn, recent.job_id, "ready", 2, audio="user-b/new.mp3")

    candidates = list_audio_files_to_cleanup(conn, 10, now=NOW)

    assert [item["job_id"] for item in candidates] == [old.job_id]
