import threading
from datetime import timedelta

from conftest import NOW, create_job, make_intake

from daystart.models import JobResult
from daystart.storage import (
    apply_intake,
    claim_next_job,
    complete_job,
    get_job,
    init_db,
    list_jobs_for_user,
)


def test_create_is_idempotent_per_user_and_date(conn):
    first = create_job(conn)
    second = create_job(conn, snapshot={"preferred_name": "Alex"})

    assert first.action == "created"
    assert second.action == "requeued"
    assert first.job_id == second.job_id
    jobs = list_jobs_for_user(conn, "user-1", "2025-03-01", "2025-03-31")
    assert len(jobs) == 1
    assert jobs[0].snapshot["preferred_name"] == "Alex"


def test_default_process_not_before_is_offset_from_schedule(conn):
    outcome = create_job(conn, not_before=None)
    job = get_job(conn, outcome.job_id)
    assert job.process_not_before.startswith("2025-03-10T13:15:00")
    assert job.status == "queued"
    assert job.priority == 75


def test_ready_job_is_not_regressed_without_force(conn):
    outcome = create_job(conn)
    claimed = claim_next_job(conn, "worker-1", now=NOW)
    assert claimed is not None
    assert complete_job(
        conn,
        claimed.job_id,
        "worker-1",
        JobResult(audio_file_path="a.mp3"),
        lease_token=claimed.lease_token,
        now=NOW,
    )

    again = create_job(conn, snapshot={"preferred_name": "Changed"})
    job = get_job(conn, outcome.job_id)

    assert again.action == "unchanged"
    assert job.status == "ready"
    assert job.audio_file_path == "a.mp3"
    assert job.snapshot["preferred_name"] == "Sam"


def test_processing_job_is_not_regressed_without_force(conn):
    create_job(conn)
    claimed = claim_next_job(conn, "worker-1", now=NOW)
    again = create_job(conn)
    assert again.action == "unchanged"
    assert get_job(conn, claimed.job_id).status == "processing"


def test_force_update_requeues_and_clears_results(conn):
    outcome = create_job(conn)
    claimed = claim_next_job(conn, "worker-1", now=NOW)
    complete_job(
        conn,
        claimed.job_id,
        "worker-1",
        JobResult(audio_file_path="a.mp3"),
        lease_token=claimed.lease_token,
        now=NOW,
    )

    forced = apply_intake(
        conn,
        make_intake(snapshot={"preferred_name": "New"}, force_update=True),
        now=NOW,
    )
    job = get_job(conn, outcome.job_id)

    assert forced.action == "requeued"
    assert job.status == "queued"
    assert job.attempt_count == 0
    assert job.audio_file_path is None
    assert job.worker_id is None
    assert job.lease_until is None
    assert job.snapshot["preferred_name"] == "New"


def test_welcome_upgrades_existing_job_in_place(conn):
    outcome = create_job(conn, scheduled_in=timedelta(days=2))
    claimed = claim_next_job(conn, "worker-1", now=NOW)
    complete_job(
        conn,
        claimed.job_id,
        "worker-1",
        JobResult(audio_file_path="a.mp3"),
        lease_token=claimed.lease_token,
        now=NOW,
    )

    upgraded = apply_intake(conn, make_intake(is_welcome=True), now=NOW)
    job = get_job(conn, outcome.job_id)

    assert upgraded.action == "welcome_upgraded"
    assert job.is_welcome is True
    assert job.priority == 100
    assert job.status == "ready"


def test_welcome_job_is_created_with_reserved_priority(conn):
    outcome = apply_intake(
        conn, make_intake(scheduled_in=timedelta(days=1), is_welcome=True), now=NOW
    )
    assert outcome.priority == 100
    assert outcome.is_welcome is True


def test_concurrent_intake_creates_one_row(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    init_db(db_path).close()
    outcomes = []
    errors = []

    def submit():
        local = init_db(db_path)
        try:
            outcomes.append(apply_intake(local, make_intake(), now=NOW))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            local.close()

    threads = [threading.Thread(target=submit) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert not errors
    assert len({outcome.job_id for outcome in outcomes}) == 1
    assert sum(1 for outcome in outcomes if outcome.action == "created") == 1
    conn = init_db(db_path)
    count = conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0]
    conn.close()
    assert count == 1


def test_welcome_flag_survives_later_ordinary_intake(conn):
    welcome = apply_intake(
        conn, make_intake(scheduled_in=timedelta(days=1), is_welcome=True), now=NOW
    )
    again = create_job(conn, scheduled_in=timedelta(days=1), snapshot={"preferred_name": "Alex"})
    job = get_job(conn, welcome.job_id)

    assert again.job_id == welcome.job_id
    assert again.is_welcome is True
    assert again.priority == 100
    assert job.is_welcome is True
    assert job.priority == 100
    assert job.snapshot["preferred_name"] == "Alex"


def test_intake_returns_cancelled_job_to_queue(conn):
    outcome = create_job(conn)
    conn.execute(
        "UPDATE jobs SET status = 'cancelled', error_code = 'X' WHERE job_id = ?",
        (outcome.job_id,),
    )

    again = create_job(conn, snapshot={"preferred_name": "Back"})
    job = get_job(conn, outcome.job_id)

    assert again.job_id == outcome.job_id
    assert again.status == "queued"
    assert job.status == "queued"
    assert job.error_code is None
    assert job.snapshot["preferred_name"] == "Back"
