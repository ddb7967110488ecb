from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str
    audio_prefix: str


@dataclass(frozen=True)
class JobsConfig:
    lease_minutes: int
    max_attempts: int
    process_not_before_offset_minutes: int
    max_jobs_per_run: int
    retention_days: int
    estimated_ready_seconds: int


@dataclass(frozen=True)
class FreshnessConfig:
    fresh_hours: float
    recent_hours: float
    stale_hours: float
    warn_hours: float
    fail_hours: float


@dataclass(frozen=True)
class ContentConfig:
    default_expires_hours: int
    compact_limit: int
    freshness: FreshnessConfig


@dataclass(frozen=True)
class AudioConfig:
    signed_url_ttl_seconds: int
    base_url: str
    cleanup_days: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    jobs: JobsConfig
    content: ContentConfig
    audio: AudioConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "DayStart",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
        "audio_prefix": "daystart-audio",
    },
    "jobs": {
        "lease_minutes": 15,
        "max_attempts": 3,
        "process_not_before_offset_minutes": 45,
        "max_jobs_per_run": 5,
        "retention_days": 30,
        "estimated_ready_seconds": 90,
    },
    "content": {
        "default_expires_hours": 12,
        "compact_limit": 200,
        "freshness": {
            "fresh_hours": 1.0,
            "recent_hours": 6.0,
            "stale_hours": 24.0,
            "warn_hours": 12.0,
            "fail_hours": 24.0,
        },
    },
    "audio": {
        "signed_url_ttl_seconds": 1800,
        "base_url": "http://localhost:8000/audio",
        "cleanup_days": 10,
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("DS_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    jobs = cfg["jobs"]
    for key in ("lease_minutes", "max_attempts", "max_jobs_per_run", "retention_days"):
        if jobs[key] < 1:
            errors.append(f"config.runtime.jobs.{key} must be >= 1")
    for key in ("process_not_before_offset_minutes", "estimated_ready_seconds"):
        if jobs[key] < 0:
            errors.append(f"config.runtime.jobs.{key} must be >= 0")
    content = cfg["content"]
    if content["default_expires_hours"] < 1:
        errors.append("config.runtime.content.default_expires_hours must be >= 1")
    if content["compact_limit"] < 1:
        errors.append("config.runtime.content.compact_limit must be >= 1")
    freshness = content["freshness"]
    if not freshness["fresh_hours"] <= freshness["recent_hours"] <= freshness["stale_hours"]:
        errors.append(
            "config.runtime.content.freshness thresholds must satisfy fresh <= recent <= stale"
        )
    if freshness["warn_hours"] > freshness["fail_hours"]:
        errors.append("config.runtime.content.freshness.warn_hours must be <= fail_hours")
    audio = cfg["audio"]
    if audio["signed_url_ttl_seconds"] < 1:
        errors.append("config.runtime.audio.signed_url_ttl_seconds must be >= 1")
    if audio["cleanup_days"] < 1:
        errors.append("config.runtime.audio.cleanup_days must be >= 1")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    jobs_cfg = cfg.get("jobs") or {}
    content_cfg = cfg.get("content") or {}
    audio_cfg = cfg.get("audio") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
        audio_prefix=str(paths_cfg.get("audio_prefix")),
    )

    jobs = JobsConfig(
        lease_minutes=int(jobs_cfg.get("lease_minutes")),
        max_attempts=int(jobs_cfg.get("max_attempts")),
        process_not_before_offset_minutes=int(jobs_cfg.get("process_not_before_offset_minutes")),
        max_jobs_per_run=int(jobs_cfg.get("max_jobs_per_run")),
        retention_days=int(jobs_cfg.get("retention_days")),
        estimated_ready_seconds=int(jobs_cfg.get("estimated_ready_seconds")),
    )

    freshness_cfg = content_cfg.get("freshness") or {}
    freshness = FreshnessConfig(
        fresh_hours=float(freshness_cfg.get("fresh_hours")),
        recent_hours=float(freshness_cfg.get("recent_hours")),
        stale_hours=float(freshness_cfg.get("stale_hours")),
        warn_hours=float(freshness_cfg.get("warn_hours")),
        fail_hours=float(freshness_cfg.get("fail_hours")),
    )

    content = ContentConfig(
        default_expires_hours=int(content_cfg.get("default_expires_hours")),
        compact_limit=int(content_cfg.get("compact_limit")),
        freshness=freshness,
    )

    audio = AudioConfig(
        signed_url_ttl_seconds=int(audio_cfg.get("signed_url_ttl_seconds")),
        base_url=str(audio_cfg.get("base_url")),
        cleanup_days=int(audio_cfg.get("cleanup_days")),
    )

    return Config(app=app, paths=paths, jobs=jobs, content=content, audio=audio)


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
