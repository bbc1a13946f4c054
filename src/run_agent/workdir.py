"""Run identity and per-run artifact directories."""

from __future__ import annotations

import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from run_agent.config import RunContext
from run_agent.contracts import utc_now

RUN_ID_SEPARATOR = "__"
DEFAULT_RUN_LABEL = "run-agent"

_UNSAFE_CHARS = re.compile(r"[^a-z0-9.-]+")
_DASH_RUNS = re.compile(r"-{2,}")


def sanitize_component(value: str) -> str:
    """Lowercase, replace path separators, and keep `_` out of the component."""

    normalized = value.strip().lower().replace("/", "-").replace("\\", "-")
    normalized = _UNSAFE_CHARS.sub("-", normalized)
    normalized = _DASH_RUNS.sub("-", normalized).strip("-.")
    return normalized


def generate_run_id(
    *,
    model: str,
    label: str | None = None,
    now: datetime | None = None,
    pid: int | None = None,
    token: str | None = None,
) -> str:
    """Build `<UTC timestamp>__<label>__<model>__<pid>-<random hex>`."""

    timestamp = (now or utc_now()).strftime("%Y%m%dT%H%M%SZ")
    label_part = sanitize_component(label or "") or DEFAULT_RUN_LABEL
    model_part = sanitize_component(model) or "unknown-model"
    pid_part = f"{pid if pid is not None else os.getpid()}-{token or secrets.token_hex(2)}"
    return RUN_ID_SEPARATOR.join((timestamp, label_part, model_part, pid_part))


@dataclass(slots=True)
class RunArtifacts:
    """File layout of one run's artifact directory."""

    run_id: str
    log_dir: Path

    @property
    def params_path(self) -> Path:
        return self.log_dir / "params.json"

    @property
    def input_path(self) -> Path:
        return self.log_dir / "input.md"

    @property
    def output_path(self) -> Path:
        return self.log_dir / "output.jsonl"

    @property
    def stderr_path(self) -> Path:
        return self.log_dir / "stderr.log"

    @property
    def report_path(self) -> Path:
        return self.log_dir / "report.md"

    @property
    def files_nul_path(self) -> Path:
        return self.log_dir / "files-touched.nul"

    @property
    def files_txt_path(self) -> Path:
        return self.log_dir / "files-touched.txt"

    @property
    def post_run_state_path(self) -> Path:
        return self.log_dir / "post-run-state.json"


class RunWorkdirManager:
    """Create and locate run artifact directories under the state root."""

    def __init__(self, context: RunContext) -> None:
        self.context = context

    def plan(self, run_id: str) -> RunArtifacts:
        return RunArtifacts(run_id=run_id, log_dir=self.context.runs_dir / run_id)

    def materialize(self, run_id: str) -> RunArtifacts:
        self.ensure_state_dir()
        artifacts = self.plan(run_id)
        artifacts.log_dir.mkdir(parents=True, exist_ok=False)
        return artifacts

    def ensure_state_dir(self) -> None:
        self.context.state_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.context.state_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n", "utf-8")


def artifacts_for(run_id: str, log_dir: str | Path) -> RunArtifacts:
    return RunArtifacts(run_id=run_id, log_dir=Path(log_dir))
