"""Aggregate run statistics for the `stats` command."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

from run_agent.models import DerivedRun, RunStatus


@dataclass(slots=True)
class RunStats:
    """Counts by status, failure reasons, models and durations."""

    total_runs: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    fail_reasons: dict[str, int] = field(default_factory=dict)
    models: dict[str, int] = field(default_factory=dict)
    total_duration_seconds: float = 0.0
    avg_duration_seconds: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_runs": self.total_runs,
            "completed": self.completed,
            "failed": self.failed,
            "running": self.running,
            "fail_reasons": dict(self.fail_reasons),
            "models": dict(self.models),
            "total_duration_seconds": self.total_duration_seconds,
            "avg_duration_seconds": self.avg_duration_seconds,
        }


def build_run_stats(runs: Sequence[DerivedRun]) -> RunStats:
    statuses = Counter(run.effective_status for run in runs)
    fail_reasons: Counter[str] = Counter()
    for run in runs:
        if run.effective_status != RunStatus.FAILED or run.finalize is None:
            continue
        reason = run.finalize.failure_reason
        fail_reasons[reason.value if reason is not None else "unknown"] += 1

    durations = [run.finalize.duration_seconds for run in runs if run.finalize is not None]
    total_duration = round(sum(durations), 3)
    return RunStats(
        total_runs=len(runs),
        completed=statuses[RunStatus.COMPLETED],
        failed=statuses[RunStatus.FAILED],
        running=statuses[RunStatus.RUNNING],
        fail_reasons=dict(fail_reasons.most_common()),
        models=dict(Counter(run.start.model for run in runs).most_common()),
        total_duration_seconds=total_duration,
        avg_duration_seconds=int(total_duration // len(durations)) if durations else 0,
    )


def render_stats_lines(stats: RunStats, *, session_id: str | None = None) -> list[str]:
    lines = [f"Run stats{f' (session {session_id})' if session_id else ''}:"]
    lines.extend(
        [
            f"total_runs: {stats.total_runs}",
            f"completed: {stats.completed}",
            f"failed: {stats.failed}",
            f"running: {stats.running}",
            f"total_duration_seconds: {stats.total_duration_seconds:g}",
            f"avg_duration_seconds: {stats.avg_duration_seconds}",
        ],
    )
    if stats.fail_reasons:
        lines.append("fail_reasons:")
        lines.extend(f"  {reason}: {count}" for reason, count in stats.fail_reasons.items())
    if stats.models:
        lines.append("models:")
        lines.extend(f"  {model}: {count}" for model, count in stats.models.items())
    return lines
