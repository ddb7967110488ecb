import copy

import pytest

from daystart.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from daystart.storage import init_db


def test_state_db_path_follows_data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("DS_DATA_DIR", str(tmp_path / "elsewhere"))
    assert get_state_db_path() == str(tmp_path / "elsewhere" / "state.sqlite3")


def test_bootstrap_creates_runtime_config(conn):
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["app"]["name"] = "Test"
    set_runtime_config(conn, custom)
    cfg = get_runtime_config(conn)
    assert cfg["app"]["name"] == "Test"


def test_load_runtime_config_builds_dataclasses(conn):
    config = load_runtime_config(conn)
    assert config.jobs.lease_minutes == 15
    assert config.jobs.max_attempts == 3
    assert config.jobs.process_not_before_offset_minutes == 45
    assert config.content.freshness.warn_hours == 12.0
    assert config.audio.signed_url_ttl_seconds == 1800


def test_set_runtime_config_rejects_invalid_shape(conn):
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, {"app": {"name": "Bad"}})
    assert "Invalid config.runtime" in str(excinfo.value)


def test_set_runtime_config_rejects_out_of_range(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["jobs"]["max_attempts"] = 0
    custom["content"]["freshness"]["warn_hours"] = 30.0
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, custom)
    message = str(excinfo.value)
    assert "jobs.max_attempts" in message
    assert "warn_hours" in message


def test_freshness_thresholds_accept_integers(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["content"]["freshness"]["fresh_hours"] = 2
    set_runtime_config(conn, custom)
    assert load_runtime_config(conn).content.freshness.fresh_hours == 2.0


def test_init_db_without_path_uses_data_dir(tmp_path):
    conn = init_db()
    conn.close()
    assert (tmp_path / "data" / "state.sqlite3").exists()
