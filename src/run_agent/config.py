"""Runtime configuration for run-agent."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

STATE_DIR_NAME = ".orchestrate"


@dataclass(frozen=True, slots=True)
class RunContext:
    """Immutable paths and limits handed to every component of one command."""

    work_dir: Path
    state_dir: Path
    lock_timeout_seconds: float = 5.0

    @property
    def index_dir(self) -> Path:
        return self.state_dir / "index"

    @property
    def index_path(self) -> Path:
        return self.index_dir / "runs.jsonl"

    @property
    def lock_path(self) -> Path:
        return self.index_dir / "runs.lock"

    @property
    def lock_dir_path(self) -> Path:
        return self.index_dir / "runs.lockdir"

    @property
    def archive_dir(self) -> Path:
        return self.index_dir / "archive"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs" / "agent-runs"


@dataclass(slots=True)
class Settings:
    """Application settings resolved once per CLI command."""

    work_dir: Path
    state_dir: Path
    fallback_model: str | None = None
    fallback_harness: str | None = None
    default_variant: str = "high"
    timeout_minutes: float = 15.0
    grace_seconds: float = 5.0
    lock_timeout_seconds: float = 5.0
    archive_before_days: int = 90

    @classmethod
    def from_env(cls, work_dir: Path | None = None) -> Settings:
        """Load settings from environment, anchored at the repository root."""

        resolved_work_dir = (work_dir or Path.cwd()).resolve()
        anchor = _repository_root(resolved_work_dir) or resolved_work_dir
        state_raw = os.getenv("RUN_AGENT_STATE_DIR", "").strip()
        state_dir = Path(state_raw).expanduser() if state_raw else anchor / STATE_DIR_NAME
        if not state_dir.is_absolute():
            state_dir = anchor / state_dir

        settings = cls(
            work_dir=resolved_work_dir,
            state_dir=state_dir,
            fallback_model=_env_optional("RUN_AGENT_FALLBACK_MODEL"),
            fallback_harness=_env_optional("RUN_AGENT_FALLBACK_HARNESS"),
            default_variant=os.getenv("RUN_AGENT_DEFAULT_VARIANT", "high").strip() or "high",
            timeout_minutes=_env_float("RUN_AGENT_TIMEOUT_MINUTES", 15.0),
            grace_seconds=_env_float("RUN_AGENT_GRACE_SECONDS", 5.0),
            lock_timeout_seconds=_env_float("RUN_AGENT_LOCK_TIMEOUT_SECONDS", 5.0),
            archive_before_days=_env_int("RUN_AGENT_ARCHIVE_BEFORE_DAYS", 90),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if (self.fallback_model is None) != (self.fallback_harness is None):
            raise ValueError(
                "RUN_AGENT_FALLBACK_MODEL and RUN_AGENT_FALLBACK_HARNESS must be set together.",
            )
        if self.timeout_minutes < 0:
            raise ValueError(
                f"Invalid RUN_AGENT_TIMEOUT_MINUTES: {self.timeout_minutes!r} (must be >= 0)",
            )
        if self.grace_seconds < 0:
            raise ValueError(
                f"Invalid RUN_AGENT_GRACE_SECONDS: {self.grace_seconds!r} (must be >= 0)",
            )
        if self.lock_timeout_seconds <= 0:
            raise ValueError(
                "Invalid RUN_AGENT_LOCK_TIMEOUT_SECONDS: "
                f"{self.lock_timeout_seconds!r} (must be > 0)",
            )
        if self.archive_before_days < 0:
            raise ValueError(
                "Invalid RUN_AGENT_ARCHIVE_BEFORE_DAYS: "
                f"{self.archive_before_days!r} (must be >= 0)",
            )

    @property
    def timeout_seconds(self) -> float | None:
        if self.timeout_minutes <= 0:
            return None
        return self.timeout_minutes * 60

    def context(self) -> RunContext:
        return RunContext(
            work_dir=self.work_dir,
            state_dir=self.state_dir,
            lock_timeout_seconds=self.lock_timeout_seconds,
        )


def _repository_root(work_dir: Path) -> Path | None:
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
            cwd=work_dir,
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if completed.returncode != 0:
        return None
    root = completed.stdout.strip()
    return Path(root) if root else None


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
