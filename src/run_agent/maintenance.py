"""Index archiving: move old finalized runs out of the active log."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from run_agent.config import RunContext
from run_agent.contracts import format_timestamp, parse_timestamp, utc_now
from run_agent.errors import RunAgentError
from run_agent.index import IndexLine, index_lock, read_index_lines
from run_agent.models import FinalizeRecord, StartRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ArchiveSummary:
    """Outcome (or preview) of one archive pass."""

    dry_run: bool
    archive_count: int
    active_count: int
    cutoff: str
    archived_runs: int = 0
    archive_path: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "dry_run": self.dry_run,
            "archive_count": self.archive_count,
            "active_count": self.active_count,
            "archived_runs": self.archived_runs,
            "cutoff": self.cutoff,
            "archive_path": self.archive_path,
        }


def archive_runs(
    context: RunContext,
    *,
    before_days: int,
    dry_run: bool = False,
    now: datetime | None = None,
) -> ArchiveSummary:
    """Archive finalized runs started before `now - before_days`.

    Running or crashed runs (no finalize record) and malformed lines always stay
    in the active log. The rewrite happens under the exclusive index lock.
    """

    current = now or utc_now()
    cutoff = current - timedelta(days=before_days)
    cutoff_text = format_timestamp(cutoff)

    if not context.index_path.exists():
        return ArchiveSummary(
            dry_run=dry_run,
            archive_count=0,
            active_count=0,
            cutoff=cutoff_text,
        )

    with index_lock(context) as locked:
        if not locked:
            raise RunAgentError(
                "Index lock not acquired; refusing to rewrite the run index unlocked.",
                code="lock_timeout",
                hint="Retry once concurrent runs have finished appending.",
            )
        lines = read_index_lines(context.index_path)
        archivable = _archivable_run_ids(lines, cutoff=cutoff)
        to_archive = [
            line for line in lines if line.record is not None and line.record.run_id in archivable
        ]
        to_keep = [
            line for line in lines if line.record is None or line.record.run_id not in archivable
        ]
        summary = ArchiveSummary(
            dry_run=dry_run,
            archive_count=len(to_archive),
            active_count=len(to_keep),
            cutoff=cutoff_text,
            archived_runs=len(archivable),
        )
        if dry_run or not to_archive:
            return summary

        context.archive_dir.mkdir(parents=True, exist_ok=True)
        archive_path = context.archive_dir / f"runs-{current.strftime('%Y%m%d')}.jsonl"
        with archive_path.open("a", encoding="utf-8") as handle:
            handle.writelines(f"{line.raw}\n" for line in to_archive)
            handle.flush()
            os.fsync(handle.fileno())
        _rewrite_active_log(context, to_keep)
        summary.archive_path = str(archive_path)

    logger.info(
        "Archived %s index lines (%s runs) to %s; %s lines remain active",
        summary.archive_count,
        summary.archived_runs,
        summary.archive_path,
        summary.active_count,
    )
    return summary


def _archivable_run_ids(lines: list[IndexLine], *, cutoff: datetime) -> set[str]:
    started: dict[str, datetime | None] = {}
    finalized: set[str] = set()
    for line in lines:
        record = line.record
        if isinstance(record, StartRecord):
            started[record.run_id] = _parse_or_none(record.created_at_utc)
        elif isinstance(record, FinalizeRecord):
            finalized.add(record.run_id)
    return {
        run_id
        for run_id, started_at in started.items()
        if run_id in finalized and started_at is not None and started_at < cutoff
    }


def _parse_or_none(value: str) -> datetime | None:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def _rewrite_active_log(context: RunContext, lines: list[IndexLine]) -> None:
    descriptor, temp_name = tempfile.mkstemp(
        prefix="runs.",
        suffix=".tmp",
        dir=context.index_dir,
    )
    try:
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            handle.writelines(f"{line.raw}\n" for line in lines)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, context.index_path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
