import sqlite3

from daystart.db import DBConn
from daystart.migrations import _get_migrations, apply_migrations
from daystart.storage import get_schema_version


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = DBConn(sqlite3.connect(str(db_path), isolation_level=None), "sqlite")
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))
    assert get_schema_version(conn) == max(expected)

    columns = {row[1] for row in conn.execute("PRAGMA table_info(jobs)").fetchall()}
    assert {"user_completed", "user_completed_at", "lease_until", "lease_token", "priority"} <= columns
    conn.close()


def test_jobs_enforce_one_row_per_user_and_day(tmp_path):
    conn = DBConn(sqlite3.connect(str(tmp_path / "s.sqlite3"), isolation_level=None), "sqlite")
    apply_migrations(conn)
    insert = """
        INSERT INTO jobs (job_id, user_id, local_date, scheduled_at, process_not_before,
                          timezone, snapshot_json, created_at, updated_at)
        VALUES (?, 'u', '2025-03-10', 't', 't', 'UTC', '{}', 't', 't')
    """
    conn.execute(insert, ("job_a",))
    try:
        conn.execute(insert, ("job_b",))
    except sqlite3.IntegrityError:
        pass
    else:
        raise AssertionError("Expected unique constraint violation")
    conn.close()
