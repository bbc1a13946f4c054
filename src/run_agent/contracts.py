"""Typed encoding and decoding for index records and run artifacts."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from run_agent.models import (
    ContinuationFallbackReason,
    ContinuationMode,
    DerivedRun,
    FailureReason,
    FinalizeRecord,
    IndexRecord,
    RunStatus,
    StartRecord,
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class RecordDecodeError(ValueError):
    """Index line that cannot be decoded into a typed record."""


@dataclass(slots=True)
class RunParams:
    """Static invocation parameters persisted as `params.json`."""

    run_id: str
    model: str
    harness: str
    variant: str
    prompt: str
    cwd: str
    session_id: str
    command: list[str]
    prompt_delivery: str
    agent: str | None = None
    skills: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    tools: list[str] | None = None
    sandbox: str | None = None
    detail: str = "standard"
    reference_files: list[str] = field(default_factory=list)
    timeout_seconds: float | None = None
    explicit_session: bool = False
    requested_model: str | None = None
    continues: str | None = None
    continuation_mode: str | None = None
    retries: str | None = None


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp or date; naive values are treated as UTC."""

    text = value.strip()
    if not text:
        raise ValueError("Empty timestamp.")
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def record_to_dict(record: IndexRecord) -> dict[str, Any]:
    return {key: _plain(value) for key, value in asdict(record).items()}


def encode_record(record: IndexRecord) -> str:
    """Serialize one record to a single self-contained JSON line (no newline)."""

    return json.dumps(record_to_dict(record), ensure_ascii=False, separators=(",", ":"))


def decode_record(line: str) -> IndexRecord:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as error:
        raise RecordDecodeError(f"Invalid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise RecordDecodeError("Index line must be a JSON object.")
    return record_from_dict(payload)


def record_from_dict(payload: dict[str, Any]) -> IndexRecord:
    run_id = payload.get("run_id")
    if not isinstance(run_id, str) or not run_id:
        raise RecordDecodeError("Index line is missing run_id.")
    try:
        status = RunStatus(payload.get("status"))
    except ValueError as error:
        raise RecordDecodeError(f"Unknown record status: {payload.get('status')!r}") from error

    if status == RunStatus.RUNNING:
        return StartRecord(
            run_id=run_id,
            created_at_utc=_required_str(payload, "created_at_utc"),
            cwd=_optional_str(payload.get("cwd")) or "",
            session_id=_optional_str(payload.get("session_id")) or run_id,
            model=_optional_str(payload.get("model")) or "",
            harness=_optional_str(payload.get("harness")) or "",
            log_dir=_optional_str(payload.get("log_dir")) or "",
            agent=_optional_str(payload.get("agent")),
            skills=[str(item) for item in payload.get("skills") or []],
            labels={str(key): str(value) for key, value in (payload.get("labels") or {}).items()},
        )

    return FinalizeRecord(
        run_id=run_id,
        status=status,
        finished_at_utc=_required_str(payload, "finished_at_utc"),
        duration_seconds=float(payload.get("duration_seconds") or 0),
        exit_code=_required_int(payload, "exit_code"),
        failure_reason=_optional_enum(FailureReason, payload.get("failure_reason")),
        output_log=_optional_str(payload.get("output_log")) or "",
        report_path=_optional_str(payload.get("report_path")) or "",
        harness_session_id=_optional_str(payload.get("harness_session_id")),
        git_available=bool(payload.get("git_available", False)),
        in_git_repo=bool(payload.get("in_git_repo", False)),
        head_before=_optional_str(payload.get("head_before")),
        head_after=_optional_str(payload.get("head_after")),
        commit_count=int(payload.get("commit_count") or 0),
        input_tokens=_optional_int(payload.get("input_tokens")),
        output_tokens=_optional_int(payload.get("output_tokens")),
        continues=_optional_str(payload.get("continues")),
        continuation_mode=_optional_enum(ContinuationMode, payload.get("continuation_mode")),
        continuation_fallback_reason=_optional_enum(
            ContinuationFallbackReason,
            payload.get("continuation_fallback_reason"),
        ),
        retries=_optional_str(payload.get("retries")),
    )


def derived_run_to_dict(run: DerivedRun) -> dict[str, Any]:
    """Flat mapping of a derived run used by `show` and JSON output."""

    payload = record_to_dict(run.start)
    if run.finalize is not None:
        payload.update(record_to_dict(run.finalize))
    payload["effective_status"] = run.effective_status.value
    payload["started_at"] = run.started_at
    payload["finished_at"] = run.finished_at
    return payload


def write_params(path: Path, params: RunParams) -> None:
    write_json(path, asdict(params))


def read_params(path: Path) -> RunParams:
    payload = load_json(path)
    if not isinstance(payload, dict):
        raise ValueError(f"Params file must contain an object: {path}")
    known = set(RunParams.__dataclass_fields__)
    missing = {"run_id", "model", "harness"} - set(payload)
    if missing:
        raise ValueError(f"Params file {path} is missing fields: {', '.join(sorted(missing))}")
    payload.setdefault("variant", "high")
    payload.setdefault("prompt", "")
    payload.setdefault("cwd", "")
    payload.setdefault("session_id", payload["run_id"])
    payload.setdefault("command", [])
    payload.setdefault("prompt_delivery", "stdin")
    return RunParams(**{key: value for key, value in payload.items() if key in known})


def load_json(path: Path) -> Any:
    return json.loads(path.read_text("utf-8"))


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
        "utf-8",
    )


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise RecordDecodeError(f"Index line is missing {key}.")
    return value


def _required_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise RecordDecodeError(f"Index line has non-integer {key}: {value!r}")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_enum(enum_type: type[Enum], value: Any) -> Any:
    if value in (None, ""):
        return None
    try:
        return enum_type(value)
    except ValueError as error:
        raise RecordDecodeError(f"Unknown {enum_type.__name__} value: {value!r}") from error
