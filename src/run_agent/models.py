"""Domain models for run records, derived views and exit classification."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

EXIT_SUCCESS = 0
EXIT_AGENT_ERROR = 1
EXIT_INFRA_ERROR = 2
EXIT_TIMEOUT = 3
EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143

TASK_TYPE_LABEL = "task-type"
DEFAULT_TASK_TYPE = "coding"


class RunStatus(str, Enum):
    """Status carried by index records and derived runs."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Closed failure classification written to finalize records."""

    AGENT_ERROR = "agent_error"
    INFRA_ERROR = "infra_error"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


class ContinuationMode(str, Enum):
    """How a follow-up run reaches the prior conversation."""

    FORK = "fork"
    IN_PLACE = "in-place"
    FALLBACK = "fallback"


class ContinuationFallbackReason(str, Enum):
    """Why a continuation was composed from artifacts instead of resumed natively."""

    MISSING_HARNESS_SESSION_ID = "missing_harness_session_id"
    UNSUPPORTED_HARNESS = "unsupported_harness"


class PromptDelivery(str, Enum):
    """Channel used to hand the composed prompt to a harness."""

    STDIN = "stdin"
    POSITIONAL = "positional"


@dataclass(slots=True)
class StartRecord:
    """Index line written before the harness process is launched."""

    run_id: str
    created_at_utc: str
    cwd: str
    session_id: str
    model: str
    harness: str
    log_dir: str
    agent: str | None = None
    skills: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING


@dataclass(slots=True)
class FinalizeRecord:
    """Index line written once the harness process has exited."""

    run_id: str
    status: RunStatus
    finished_at_utc: str
    duration_seconds: float
    exit_code: int
    failure_reason: FailureReason | None
    output_log: str
    report_path: str
    harness_session_id: str | None = None
    git_available: bool = False
    in_git_repo: bool = False
    head_before: str | None = None
    head_after: str | None = None
    commit_count: int = 0
    input_tokens: int | None = None
    output_tokens: int | None = None
    continues: str | None = None
    continuation_mode: ContinuationMode | None = None
    continuation_fallback_reason: ContinuationFallbackReason | None = None
    retries: str | None = None


IndexRecord = StartRecord | FinalizeRecord


@dataclass(slots=True)
class DerivedRun:
    """Start record merged with its finalize record, if one exists."""

    start: StartRecord
    finalize: FinalizeRecord | None = None
    position: int = 0

    @property
    def run_id(self) -> str:
        return self.start.run_id

    @property
    def started_at(self) -> str:
        return self.start.created_at_utc

    @property
    def finished_at(self) -> str | None:
        return self.finalize.finished_at_utc if self.finalize is not None else None

    @property
    def effective_status(self) -> RunStatus:
        if self.finalize is None:
            return RunStatus.RUNNING
        if self.finalize.exit_code == EXIT_SUCCESS:
            return RunStatus.COMPLETED
        return RunStatus.FAILED

    @property
    def is_finalized(self) -> bool:
        return self.finalize is not None

