from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from daystart.api import app
from daystart.services.jobs_service import sign_audio_path

USER = {"x-client-info": "user-api"}


def _job_body(**overrides):
    scheduled = datetime.now(tz=timezone.utc) + timedelta(hours=2)
    body = {
        "local_date": scheduled.date().isoformat(),
        "scheduled_at": scheduled.isoformat(),
        "timezone": "UTC",
        "preferred_name": "Sam",
        "include_news": True,
    }
    body.update(overrides)
    return body


def test_health():
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_create_job_and_get_status():
    client = TestClient(app)
    body = _job_body()

    created = client.post("/create_job", json=body, headers=USER)
    assert created.status_code == 200
    payload = created.json()
    assert payload["success"] is True
    assert payload["status"] == "queued"
    assert payload["request_id"]

    again = client.post("/create_job", json=body, headers=USER)
    assert again.json()["job_id"] == payload["job_id"]

    status = client.get("/get_audio_status", params={"date": body["local_date"]}, headers=USER)
    assert status.json()["status"] == "processing"
    assert status.json()["job_id"] == payload["job_id"]

    jobs = client.get(
        "/get_jobs",
        params={"start_date": body["local_date"], "end_date": body["local_date"]},
        headers=USER,
    )
    assert [job["job_id"] for job in jobs.json()["jobs"]] == [payload["job_id"]]


def test_user_errors_are_enveloped():
    client = TestClient(app)

    missing_user = client.post("/create_job", json=_job_body())
    assert missing_user.status_code == 200
    assert missing_user.json()["error_code"] == "MISSING_USER_ID"

    invalid_json = client.post(
        "/create_job",
        content=b"{not json",
        headers={**USER, "content-type": "application/json"},
    )
    assert invalid_json.status_code == 200
    assert invalid_json.json()["error_code"] == "INVALID_JSON"

    invalid = client.post("/create_job", json=_job_body(timezone=None), headers=USER)
    assert invalid.json()["error_code"] == "VALIDATION_ERROR"

    no_date = client.get("/get_audio_status", headers=USER)
    assert no_date.json()["error_code"] == "MISSING_PARAMETER"

    unknown = client.get("/get_audio_status", params={"date": "2020-01-01"}, headers=USER)
    assert unknown.json() == {
        "success": True,
        "status": "not_found",
        "request_id": unknown.json()["request_id"],
    }


def test_requests_are_logged(tmp_path):
    client = TestClient(app)
    client.post("/create_job", json=_job_body(), headers=USER)
    client.get("/get_audio_status", headers=USER)

    from daystart.storage import init_db

    conn = init_db(str(tmp_path / "data" / "state.sqlite3"))
    rows = conn.execute(
        "SELECT endpoint, user_id, error_code FROM request_logs ORDER BY id"
    ).fetchall()
    conn.close()
    assert rows == [
        ("/create_job", "user-api", None),
        ("/get_audio_status", "user-api", "MISSING_PARAMETER"),
    ]


def test_update_jobs_and_snapshots():
    client = TestClient(app)
    body = _job_body()
    job_id = client.post("/create_job", json=body, headers=USER).json()["job_id"]

    cancelled = client.post(
        "/update_jobs", json={"cancel_dates": [body["local_date"]]}, headers=USER
    )
    assert cancelled.json()["cancelled_count"] == 1

    snapshots = client.post(
        "/update_job_snapshots",
        json={"job_ids": [job_id], "weather_data": {"temp": 21}},
        headers=USER,
    )
    assert snapshots.json()["updated_count"] == 1

    empty = client.post("/update_job_snapshots", json={"job_ids": []}, headers=USER)
    assert empty.json()["error_code"] == "VALIDATION_ERROR"


def test_internal_worker_flow(monkeypatch):
    monkeypatch.setenv("DS_WORKER_TOKEN", "wtok")
    client = TestClient(app)
    worker = {"X-Worker-Token": "wtok"}
    body = _job_body(scheduled_at="NOW")
    job_id = client.post("/create_job", json=body, headers=USER).json()["job_id"]

    assert client.post("/internal/jobs/claim", json={"worker_id": "w1"}).status_code == 401

    claimed = client.post("/internal/jobs/claim", json={"worker_id": "w1"}, headers=worker)
    assert claimed.status_code == 200
    job = claimed.json()["job"]
    assert job["job_id"] == job_id
    assert job["status"] == "processing"
    token = job["lease_token"]
    assert token

    wrong = client.post(
        f"/internal/jobs/{job_id}/complete",
        json={"worker_id": "w2", "lease_token": token, "audio_file_path": "x.mp3"},
        headers=worker,
    )
    assert wrong.status_code == 409

    stale = client.post(
        f"/internal/jobs/{job_id}/fail",
        json={"worker_id": "w1", "lease_token": "not-the-lease", "error_code": "TTS_ERROR"},
        headers=worker,
    )
    assert stale.status_code == 409

    done = client.post(
        f"/internal/jobs/{job_id}/complete",
        json={
            "worker_id": "w1",
            "lease_token": token,
            "audio_file_path": "user-api/a.mp3",
            "audio_duration": 120,
        },
        headers=worker,
    )
    assert done.status_code == 200

    status = client.get("/get_audio_status", params={"date": body["local_date"]}, headers=USER)
    assert status.json()["status"] == "ready"
    assert status.json()["duration"] == 120

    empty = client.post("/internal/jobs/claim", json={"worker_id": "w1"}, headers=worker)
    assert empty.json() == {"job": None}
    assert client.post("/internal/jobs/reclaim", headers=worker).json() == {"released": 0}


def test_internal_content_endpoints():
    client = TestClient(app)
    fresh = client.get("/internal/content/fresh", params={"types": "news,stocks"})
    assert fresh.status_code == 200
    assert fresh.json() == {"content": {}}

    bad = client.get("/internal/content/fresh", params={"types": "weather"})
    assert bad.status_code == 400

    freshness = client.get("/internal/content/freshness")
    assert freshness.json()["overall_status"] == "warn"

    cleanup = client.post("/internal/maintenance/cleanup")
    assert cleanup.json()["jobs_deleted"] == 0


def test_signed_audio_download(tmp_path, monkeypatch):
    monkeypatch.setenv("DS_SIGNING_SECRET", "s3cret")
    audio_dir = tmp_path / "data" / "daystart-audio" / "user-api"
    audio_dir.mkdir(parents=True)
    (audio_dir / "a.mp3").write_bytes(b"ID3audio")
    client = TestClient(app)

    expires = int((datetime.now(tz=timezone.utc) + timedelta(minutes=5)).timestamp())
    signature = sign_audio_path("user-api/a.mp3", expires, "s3cret")

    ok = client.get(
        "/audio/user-api/a.mp3", params={"expires": expires, "signature": signature}
    )
    assert ok.status_code == 200
    assert ok.content == b"ID3audio"

    tampered = client.get(
        "/audio/user-api/b.mp3", params={"expires": expires, "signature": signature}
    )
    assert tampered.status_code == 403


def test_request_log_uses_forwarded_client_address(tmp_path):
    client = TestClient(app)
    client.get(
        "/get_audio_status",
        headers={**USER, "x-forwarded-for": "203.0.113.7"},
    )

    from daystart.storage import init_db

    conn = init_db(str(tmp_path / "data" / "state.sqlite3"))
    row = conn.execute("SELECT ip_address FROM request_logs").fetchone()
    conn.close()
    assert row == ("203.0.113.7",)
