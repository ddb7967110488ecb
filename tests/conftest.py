from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from daystart.storage import JobIntake, apply_intake, init_db

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _sqlite_state(tmp_path, monkeypatch):
    # Tests always run against a throwaway SQLite file, even when DS_DB_URL is exported.
    monkeypatch.delenv("DS_DB_URL", raising=False)
    monkeypatch.setenv("DS_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


def make_intake(
    user_id: str = "user-1",
    local_date: str = "2025-03-10",
    *,
    scheduled_in: timedelta = timedelta(hours=2),
    not_before: datetime | None = NOW - timedelta(minutes=1),
    snapshot: dict | None = None,
    **flags,
) -> JobIntake:
    return JobIntake(
        user_id=user_id,
        local_date=local_date,
        scheduled_at=NOW + scheduled_in,
        timezone="America/New_York",
        snapshot=snapshot if snapshot is not None else {"preferred_name": "Sam"},
        process_not_before=not_before,
        **flags,
    )


def create_job(conn, user_id: str = "user-1", local_date: str = "2025-03-10", *, now=NOW, **kwargs):
    return apply_intake(conn, make_intake(user_id, local_date, **kwargs), now=now)
