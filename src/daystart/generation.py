from __future__ import annotations

import importlib
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .models import ERROR_PROCESSING, Job, JobResult


class GenerationError(RuntimeError):
    """Raised by generators; ``code`` ends up in the job's ``error_code``."""

    def __init__(self, message: str, code: str = ERROR_PROCESSING) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class GenerationContext:
    job: Job
    content: dict[str, list[dict[str, object]]] = field(default_factory=dict)
    compact: dict[str, list[object]] = field(default_factory=dict)


Generator = Callable[[GenerationContext], Any]


def content_types_for(snapshot: Mapping[str, object]) -> list[str]:
    types = []
    if snapshot.get("include_news"):
        types.append("news")
    if snapshot.get("include_stocks"):
        types.append("stocks")
    if snapshot.get("include_sports"):
        types.append("sports")
    return types


def load_generator(dotted: str | None = None) -> Generator:
    dotted = dotted or os.environ.get("DS_GENERATOR", "").strip()
    if not dotted:
        raise GenerationError("DS_GENERATOR is not configured", code="GENERATOR_NOT_CONFIGURED")
    module_name, sep, attr = dotted.partition(":")
    if not sep or not module_name or not attr:
        raise GenerationError(
            f"generator must look like 'module:callable', got {dotted!r}",
            code="GENERATOR_NOT_CONFIGURED",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise GenerationError(
            f"cannot import generator module {module_name}: {exc}",
            code="GENERATOR_NOT_CONFIGURED",
        ) from exc
    target = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise GenerationError(
                f"generator {dotted} not found", code="GENERATOR_NOT_CONFIGURED"
            )
    if not callable(target):
        raise GenerationError(f"generator {dotted} is not callable", code="GENERATOR_NOT_CONFIGURED")
    return target


def coerce_result(value: Any) -> JobResult:
    if isinstance(value, JobResult):
        return value
    if isinstance(value, Mapping):
        path = value.get("audio_file_path")
        if not path:
            raise GenerationError("generator result is missing audio_file_path")
        known = {
            "audio_file_path",
            "audio_duration",
            "script_content",
            "transcript",
            "script_cost",
            "tts_cost",
            "total_cost",
        }
        return JobResult(
            audio_file_path=str(path),
            audio_duration=_optional_int(value.get("audio_duration")),
            script_content=value.get("script_content"),
            transcript=value.get("transcript"),
            script_cost=_optional_float(value.get("script_cost")),
            tts_cost=_optional_float(value.get("tts_cost")),
            total_cost=_optional_float(value.get("total_cost")),
            extra={key: item for key, item in value.items() if key not in known},
        )
    raise GenerationError(f"unsupported generator result type: {type(value).__name__}")


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _optional_float(value: Any) -> float | None:
    return float(value) if value is not None else None
