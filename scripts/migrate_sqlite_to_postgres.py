from __future__ import annotations

import argparse
import os
import sqlite3
from typing import Iterable

from daystart.db import DBConn
from daystart.migrations_pg import apply_migrations_pg

# Copy order; tables with a serial id get their sequence bumped afterwards.
TABLES = ("settings", "jobs", "content_cache", "content_fetch_log", "request_logs")
SERIAL_TABLES = ("content_fetch_log", "request_logs")


def _parse_args() -> argparse.Namespace:
    data_dir = os.environ.get("DS_DATA_DIR", "/data")
    parser = argparse.ArgumentParser(description="Copy a DayStart SQLite state DB into PostgreSQL")
    parser.add_argument("--sqlite", default=os.path.join(data_dir, "state.sqlite3"))
    parser.add_argument("--pg-url", default=os.environ.get("DS_DB_URL", ""))
    return parser.parse_args()


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def _table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def _chunked(rows: Iterable[tuple], size: int = 500) -> Iterable[list[tuple]]:
    batch: list[tuple] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def main() -> int:
    args = _parse_args()
    if not args.pg_url:
        raise SystemExit("DS_DB_URL is required for Postgres migration")

    import psycopg

    sqlite_conn = sqlite3.connect(args.sqlite)
    pg_raw = psycopg.connect(args.pg_url, autocommit=True)
    pg_conn = DBConn(pg_raw, "postgres")
    apply_migrations_pg(pg_conn)

    for table in TABLES:
        if not _table_exists(sqlite_conn, table):
            continue
        columns = _table_columns(sqlite_conn, table)
        cols_sql = ", ".join(columns)
        placeholders = ", ".join(["?"] * len(columns))
        insert_sql = (
            f"INSERT INTO {table} ({cols_sql}) VALUES ({placeholders}) "
            "ON CONFLICT DO NOTHING"
        )
        copied = 0
        cursor = sqlite_conn.execute(f"SELECT {cols_sql} FROM {table}")
        for batch in _chunked(cursor, 500):
            with pg_conn.transaction():
                pg_conn.executemany(insert_sql, batch)
            copied += len(batch)
        if table in SERIAL_TABLES:
            pg_conn.execute(
                f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), "
                f"COALESCE((SELECT MAX(id) FROM {table}), 1))"
            )
        print(f"{table}: {copied} rows")

    sqlite_conn.close()
    pg_conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
