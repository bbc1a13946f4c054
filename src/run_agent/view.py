"""Derived run view, run-reference resolution and list queries."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from run_agent.contracts import parse_timestamp
from run_agent.errors import CallerError
from run_agent.models import DerivedRun, FinalizeRecord, IndexRecord, RunStatus, StartRecord

logger = logging.getLogger(__name__)

MIN_PREFIX_LENGTH = 8
LATEST = "@latest"
LAST_FAILED = "@last-failed"
LAST_COMPLETED = "@last-completed"
LIST_HINT = "Run 'run-agent list' to see available runs."

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def build_derived_view(records: Iterable[IndexRecord]) -> list[DerivedRun]:
    """Pair start and finalize records by run id, newest start first."""

    starts: dict[str, tuple[int, StartRecord]] = {}
    finals: dict[str, FinalizeRecord] = {}
    for position, record in enumerate(records):
        if isinstance(record, StartRecord):
            if record.run_id in starts:
                logger.warning(
                    "Duplicate start record for run %s; keeping the latest",
                    record.run_id,
                )
            starts[record.run_id] = (position, record)
            continue
        if record.run_id in finals:
            logger.warning(
                "Duplicate finalize record for run %s; keeping the latest",
                record.run_id,
            )
        finals[record.run_id] = record

    for orphan in sorted(set(finals) - set(starts)):
        logger.warning("Finalize record without start record for run %s; ignored", orphan)

    runs = [
        DerivedRun(start=start, finalize=finals.get(run_id), position=position)
        for run_id, (position, start) in starts.items()
    ]
    runs.sort(key=lambda run: (_started_at(run), run.position), reverse=True)
    return runs


def _started_at(run: DerivedRun) -> datetime:
    try:
        return parse_timestamp(run.started_at)
    except ValueError:
        return _EPOCH


def resolve_run_reference(runs: list[DerivedRun], reference: str) -> DerivedRun:
    """Resolve an exact id, an 8+ char prefix, or a symbolic token."""

    ref = reference.strip()
    if not ref:
        raise CallerError("Run reference is required.", code="missing_reference", hint=LIST_HINT)

    symbolic = {
        LATEST: None,
        LAST_FAILED: RunStatus.FAILED,
        LAST_COMPLETED: RunStatus.COMPLETED,
    }
    if ref in symbolic:
        status = symbolic[ref]
        for run in runs:
            if status is None or run.effective_status == status:
                return run
        raise CallerError(f"No run matches {ref}.", code="not_found", hint=LIST_HINT)
    if ref.startswith("@"):
        raise CallerError(
            f"Unknown run reference token: {ref}",
            code="bad_reference",
            hint=f"Use {LATEST}, {LAST_FAILED} or {LAST_COMPLETED}.",
        )

    for run in runs:
        if run.run_id == ref:
            return run

    if len(ref) < MIN_PREFIX_LENGTH:
        raise CallerError(
            f"Run reference prefix must be at least {MIN_PREFIX_LENGTH} characters "
            f"(got {len(ref)}).",
            code="short_prefix",
            hint=f"Use a longer prefix or {LATEST}/{LAST_FAILED}.",
        )

    matches = [run for run in runs if run.run_id.startswith(ref)]
    if not matches:
        raise CallerError(f"No run matching {ref!r}.", code="not_found", hint=LIST_HINT)
    if len(matches) > 1:
        candidates = ", ".join(run.run_id for run in matches)
        raise CallerError(
            f"Ambiguous run reference {ref!r} matches {len(matches)} runs.",
            code="ambiguous",
            hint=f"Use a longer prefix. Candidates: {candidates}",
        )
    return matches[0]


@dataclass(slots=True)
class RunFilter:
    """Filters accepted by `list` and `stats`."""

    session_id: str | None = None
    model: str | None = None
    agent: str | None = None
    status: RunStatus | None = None
    labels: dict[str, str] = field(default_factory=dict)
    failed_only: bool = False
    since: datetime | None = None
    until: datetime | None = None

    def matches(self, run: DerivedRun) -> bool:  # noqa: PLR0911
        start = run.start
        if self.session_id is not None and start.session_id != self.session_id:
            return False
        if self.model is not None and start.model != self.model:
            return False
        if self.agent is not None and start.agent != self.agent:
            return False
        if self.status is not None and run.effective_status != self.status:
            return False
        if self.failed_only and run.effective_status != RunStatus.FAILED:
            return False
        if any(start.labels.get(key) != value for key, value in self.labels.items()):
            return False
        if self.since is not None or self.until is not None:
            started = _started_at(run)
            if self.since is not None and started < self.since:
                return False
            if self.until is not None and started > self.until:
                return False
        return True


@dataclass(slots=True)
class RunPage:
    """One page of a filtered run listing."""

    runs: list[DerivedRun]
    total: int
    limit: int
    has_next: bool
    next_cursor: str | None


def filter_runs(runs: Iterable[DerivedRun], run_filter: RunFilter) -> list[DerivedRun]:
    return [run for run in runs if run_filter.matches(run)]


def paginate_runs(runs: list[DerivedRun], *, limit: int, cursor: str | None = None) -> RunPage:
    """Cursor is the last run id of the previous page."""

    start_index = 0
    if cursor:
        positions = {run.run_id: index for index, run in enumerate(runs)}
        if cursor not in positions:
            raise CallerError(
                f"Unknown cursor: {cursor}",
                code="bad_cursor",
                hint="Pass the next_cursor value printed by the previous page.",
            )
        start_index = positions[cursor] + 1

    page = runs[start_index : start_index + limit]
    next_index = start_index + len(page)
    has_next = next_index < len(runs)
    return RunPage(
        runs=page,
        total=len(runs),
        limit=limit,
        has_next=has_next,
        next_cursor=page[-1].run_id if has_next and page else None,
    )


def parse_label_filters(values: Iterable[str]) -> dict[str, str]:
    labels: dict[str, str] = {}
    for value in values:
        key, separator, label_value = value.partition("=")
        if not separator or not key.strip():
            raise CallerError(
                f"Invalid label filter {value!r}. Expected KEY=VALUE.",
                code="bad_label",
            )
        labels[key.strip()] = label_value.strip()
    return labels
