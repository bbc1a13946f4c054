"""Controllers for run-agent CLI commands."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from run_agent.config import RunContext, Settings
from run_agent.contracts import derived_run_to_dict, parse_timestamp, read_params
from run_agent.errors import CallerError, RunAgentError
from run_agent.files_touched import (
    extract_files_touched,
    read_files_manifest,
    write_files_manifest,
)
from run_agent.harness.base import read_events, split_tools
from run_agent.index import RunIndex
from run_agent.launcher import LaunchRequest, LaunchResult, RunLauncher
from run_agent.log_inspect import (
    assistant_messages,
    error_messages,
    paginate_messages,
    search_log,
    stderr_errors,
    summarize_log,
    tool_usage,
)
from run_agent.maintenance import archive_runs
from run_agent.metrics import build_run_stats, render_stats_lines
from run_agent.models import DerivedRun, RunStatus
from run_agent.prompt import ReportDetail
from run_agent.retry import (
    apply_undo,
    build_retry_request,
    load_run_params,
    plan_undo,
    render_undo_preview,
)
from run_agent.view import (
    RunFilter,
    build_derived_view,
    filter_runs,
    paginate_runs,
    parse_label_filters,
    resolve_run_reference,
)
from run_agent.workdir import artifacts_for

logger = logging.getLogger(__name__)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

STATUS_ICONS = {
    RunStatus.COMPLETED: "✓",
    RunStatus.FAILED: "✗",
    RunStatus.RUNNING: "…",
}
LOG_MODES = ("summary", "tools", "errors", "search", "messages")

Confirm = Callable[[str], bool]


@dataclass(slots=True)
class RunCommand:
    """CLI input for launching a run."""

    work_dir: Path | None
    model: str
    prompt: str
    variant: str | None = None
    timeout_minutes: float | None = None
    agent: str | None = None
    skills: tuple[str, ...] = ()
    session_id: str | None = None
    labels: tuple[str, ...] = ()
    reference_files: tuple[Path, ...] = ()
    detail: str = ReportDetail.STANDARD.value
    tools: str | None = None
    sandbox: str | None = None
    continue_run: str | None = None
    fork: bool | None = None
    dry_run: bool = False


@dataclass(slots=True)
class ListRunsCommand:
    """CLI input for run listing."""

    work_dir: Path | None
    session_id: str | None = None
    model: str | None = None
    agent: str | None = None
    labels: tuple[str, ...] = ()
    status: str | None = None
    failed_only: bool = False
    since: str | None = None
    until: str | None = None
    include_archive: bool = False
    limit: int = 20
    cursor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class InspectRunCommand:
    """CLI input for single-run read commands (`show`, `report`, `files`)."""

    work_dir: Path | None
    reference: str
    as_json: bool = False


@dataclass(slots=True)
class LogsCommand:
    """CLI input for log inspection."""

    work_dir: Path | None
    reference: str
    mode: str = "summary"
    pattern: str | None = None
    limit: int = 20
    cursor: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class StatsCommand:
    """CLI input for aggregate stats."""

    work_dir: Path | None
    session_id: str | None = None
    model: str | None = None
    include_archive: bool = False
    as_json: bool = False


@dataclass(slots=True)
class ContinueCommand:
    """CLI input for a follow-up run."""

    work_dir: Path | None
    reference: str
    prompt: str
    model: str | None = None
    skills: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    fork: bool | None = None
    dry_run: bool = False


@dataclass(slots=True)
class RetryCommand:
    """CLI input for re-executing a run, optionally undoing it first."""

    work_dir: Path | None
    reference: str
    model: str | None = None
    variant: str | None = None
    prompt: str | None = None
    skills: tuple[str, ...] | None = None
    undo_first: bool = False
    dry_run: bool = False
    force: bool = False
    yes: bool = False
    confirm: Confirm | None = None


@dataclass(slots=True)
class MaintainCommand:
    """CLI input for index archiving."""

    work_dir: Path | None
    before_days: int | None = None
    dry_run: bool = False
    yes: bool = False
    confirm: Confirm | None = None
    as_json: bool = False


@dataclass(slots=True)
class RunCommandResult:
    """Lines for stdout, progress lines for stderr, and the process exit code."""

    lines: list[str]
    exit_code: int = 0
    notes: list[str] = field(default_factory=list)


class RunAgentCliController:
    """Coordinates launch, inspection and maintenance CLI operations."""

    def __init__(self, *, stderr_stream: Any = None) -> None:
        self.stderr_stream = stderr_stream

    def run(self, command: RunCommand) -> RunCommandResult:
        settings = _settings(command.work_dir)
        context = settings.context()
        continue_from = None
        if command.continue_run:
            continue_from = resolve_run_reference(
                _load_runs(context, include_archive=True),
                command.continue_run,
            )
        request = LaunchRequest(
            model=command.model,
            prompt=command.prompt,
            variant=command.variant or settings.default_variant,
            agent=command.agent,
            skills=command.skills,
            reference_files=command.reference_files,
            labels=parse_label_filters(command.labels),
            session_id=command.session_id,
            tools=split_tools(command.tools),
            sandbox=command.sandbox,
            detail=ReportDetail(command.detail),
            timeout_seconds=_timeout_seconds(settings, command.timeout_minutes),
            continue_from=continue_from,
            fork=command.fork,
            dry_run=command.dry_run,
        )
        return self._launch(settings, request)

    def list_runs(self, command: ListRunsCommand) -> list[str]:
        context = _settings(command.work_dir).context()
        runs = _load_runs(context, include_archive=command.include_archive)
        run_filter = RunFilter(
            session_id=command.session_id,
            model=command.model,
            agent=command.agent,
            status=RunStatus(command.status) if command.status else None,
            labels=parse_label_filters(command.labels),
            failed_only=command.failed_only,
            since=_parse_time(command.since, "--since"),
            until=_parse_time(command.until, "--until", end_of_day=True),
        )
        page = paginate_runs(
            filter_runs(runs, run_filter),
            limit=command.limit,
            cursor=command.cursor,
        )
        if command.as_json:
            return [
                render_envelope(
                    "list",
                    data=[_list_entry(run) for run in page.runs],
                    meta={
                        "total": page.total,
                        "limit": page.limit,
                        "next_cursor": page.next_cursor,
                        "has_next": page.has_next,
                    },
                ),
            ]
        if not page.runs:
            return ["No runs found."]
        lines = [_list_line(run) for run in page.runs]
        lines.append(f"Showing {len(page.runs)} of {page.total} runs.")
        if page.has_next:
            lines.append(f"Next page: --cursor {page.next_cursor}")
        return lines

    def show(self, command: InspectRunCommand) -> list[str]:
        run = self._resolve(command.work_dir, command.reference)
        if command.as_json:
            return [render_envelope("show", data=derived_run_to_dict(run))]
        return _show_lines(run)

    def report(self, command: InspectRunCommand) -> list[str]:
        run = self._resolve(command.work_dir, command.reference)
        artifacts = artifacts_for(run.run_id, run.start.log_dir)
        report_path = Path(run.finalize.report_path) if run.finalize else artifacts.report_path
        try:
            report = report_path.read_text("utf-8")
        except OSError as error:
            hint = "The run is still running." if not run.is_finalized else None
            raise CallerError(
                f"No report for run {run.run_id}.",
                code="no_report",
                hint=hint,
            ) from error
        if command.as_json:
            return [
                render_envelope(
                    "report",
                    data={"run_id": run.run_id, "report_path": str(report_path), "report": report},
                ),
            ]
        return [report.rstrip("\n")]

    def logs(self, command: LogsCommand) -> list[str]:  # noqa: C901
        run = self._resolve(command.work_dir, command.reference)
        artifacts = artifacts_for(run.run_id, run.start.log_dir)
        output_path = Path(run.finalize.output_log) if run.finalize else artifacts.output_path
        if not output_path.exists():
            raise CallerError(f"No output log for run {run.run_id}.", code="no_output")

        mode = command.mode
        if mode == "search" and not command.pattern:
            raise CallerError("--search requires a pattern.", code="missing_pattern")

        data: Any
        meta: dict[str, Any] | None = None
        if mode == "summary":
            summary = summarize_log(output_path)
            data = summary.to_dict()
            lines = [
                f"Format: {summary.output_format}",
                f"Harness: {summary.harness or 'unknown'}",
                f"Lines: {summary.lines}",
                f"Events: {summary.events}",
                f"Errors: {summary.errors}",
                "Event types:",
                *(f"  {name}: {count}" for name, count in summary.event_types.items()),
            ]
        elif mode == "tools":
            tally = tool_usage(read_events(output_path))
            data = dict(tally.most_common())
            lines = [f"{name}: {count}" for name, count in tally.most_common()] or [
                "No tool calls recorded.",
            ]
        elif mode == "errors":
            stream_errors = error_messages(read_events(output_path))
            diagnostics = stderr_errors(artifacts.stderr_path)
            data = {"stream": stream_errors, "stderr": diagnostics}
            lines = [f"stream: {message}" for message in stream_errors]
            lines.extend(f"stderr: {line}" for line in diagnostics)
            lines = lines or ["No errors found."]
        elif mode == "search":
            matches = search_log(output_path, command.pattern or "")
            data = [
                {"line_number": match.line_number, "line": match.line, "context": match.context}
                for match in matches
            ]
            lines = [f"{match.line_number}: {match.line}" for match in matches] or [
                "No matches.",
            ]
        else:
            page = paginate_messages(
                assistant_messages(read_events(output_path)),
                limit=command.limit,
                cursor=command.cursor,
            )
            data = page.messages
            meta = {
                "total": page.total,
                "limit": command.limit,
                "next_cursor": page.next_cursor,
                "has_next": page.has_next,
            }
            lines = [f"--- message ---\n{message}" for message in page.messages] or [
                "No assistant messages.",
            ]
            if page.has_next:
                lines.append(f"Next page: --cursor {page.next_cursor}")

        if command.as_json:
            return [render_envelope("logs", data=data, meta=meta)]
        return lines

    def touched_files(self, command: InspectRunCommand) -> list[str]:
        """Touched files, regenerating the manifests from the output log when missing."""

        run = self._resolve(command.work_dir, command.reference)
        artifacts = artifacts_for(run.run_id, run.start.log_dir)
        files = read_files_manifest(artifacts)
        if files is None:
            if not artifacts.output_path.exists():
                raise CallerError(
                    f"No files manifest or output log for run {run.run_id}.",
                    code="no_output",
                )
            files = extract_files_touched(artifacts.output_path, repo_root=Path(run.start.cwd))
            write_files_manifest(artifacts, files)
            logger.info("Regenerated files manifest for run %s", run.run_id)
        return files

    def stats(self, command: StatsCommand) -> list[str]:
        context = _settings(command.work_dir).context()
        runs = filter_runs(
            _load_runs(context, include_archive=command.include_archive),
            RunFilter(session_id=command.session_id, model=command.model),
        )
        stats = build_run_stats(runs)
        if command.as_json:
            return [render_envelope("stats", data=stats.to_dict())]
        return render_stats_lines(stats, session_id=command.session_id)

    def continue_run(self, command: ContinueCommand) -> RunCommandResult:
        settings = _settings(command.work_dir)
        context = settings.context()
        prior = resolve_run_reference(
            _load_runs(context, include_archive=True),
            command.reference,
        )
        variant = settings.default_variant
        params_path = artifacts_for(prior.run_id, prior.start.log_dir).params_path
        try:
            variant = read_params(params_path).variant
        except (OSError, ValueError):
            logger.debug("No readable params for %s; using default variant", prior.run_id)
        request = LaunchRequest(
            model=command.model or prior.start.model,
            prompt=command.prompt,
            variant=variant,
            agent=prior.start.agent,
            skills=command.skills,
            labels=parse_label_filters(command.labels),
            timeout_seconds=settings.timeout_seconds,
            continue_from=prior,
            fork=command.fork,
            dry_run=command.dry_run,
        )
        return self._launch(settings, request)

    def retry(self, command: RetryCommand) -> RunCommandResult:
        settings = _settings(command.work_dir)
        context = settings.context()
        runs = _load_runs(context, include_archive=True)
        run = resolve_run_reference(runs, command.reference)
        params = load_run_params(run)
        continue_from = _prior_for_retry(runs, params.continues)

        request = build_retry_request(
            run,
            params,
            model=command.model,
            variant=command.variant,
            prompt=command.prompt,
            skills=command.skills,
            continue_from=continue_from,
            dry_run=command.dry_run,
        )
        if request.timeout_seconds is None:
            request.timeout_seconds = settings.timeout_seconds

        notes: list[str] = []
        if command.undo_first:
            plan = plan_undo(run, work_dir=settings.work_dir)
            if command.dry_run:
                preview = self._launch(settings, request)
                return RunCommandResult(
                    lines=[*render_undo_preview(plan), "", *preview.lines],
                    exit_code=0,
                )
            if plan.dirty and not command.force:
                raise CallerError(
                    f"Refusing to undo run {run.run_id}: {len(plan.dirty)} files modified "
                    f"since the run: {', '.join(plan.dirty)}",
                    code="stale_files",
                    hint="Use --force to overwrite them.",
                )
            _require_confirmation(
                f"Undo {len(plan.files)} files from run {run.run_id}?",
                yes=command.yes,
                confirm=command.confirm,
            )
            notes.extend(apply_undo(plan, work_dir=settings.work_dir, force=command.force))

        result = self._launch(settings, request)
        result.notes[:0] = notes
        return result

    def maintain(self, command: MaintainCommand) -> list[str]:
        settings = _settings(command.work_dir)
        context = settings.context()
        before_days = (
            command.before_days
            if command.before_days is not None
            else settings.archive_before_days
        )
        preview = archive_runs(context, before_days=before_days, dry_run=True)
        if command.dry_run or preview.archive_count == 0:
            if command.as_json:
                return [render_envelope("maintain", data=preview.to_dict())]
            if preview.archive_count == 0:
                return ["Nothing to archive."]
            return [
                f"DRY RUN: Would archive {preview.archived_runs} finalized runs older than "
                f"{preview.cutoff} ({preview.archive_count} index lines).",
                f"Active lines remaining: {preview.active_count}",
            ]

        _require_confirmation(
            f"Archive {preview.archived_runs} finalized runs older than {preview.cutoff}?",
            yes=command.yes,
            confirm=command.confirm,
        )
        summary = archive_runs(context, before_days=before_days)
        if command.as_json:
            return [render_envelope("maintain", data=summary.to_dict())]
        return [
            f"Archived {summary.archive_count} index lines ({summary.archived_runs} runs) "
            f"to {summary.archive_path}.",
            f"Active lines remaining: {summary.active_count}",
        ]

    def _launch(self, settings: Settings, request: LaunchRequest) -> RunCommandResult:
        launcher = RunLauncher(
            context=settings.context(),
            fallback_model=settings.fallback_model,
            fallback_harness=settings.fallback_harness,
            grace_seconds=settings.grace_seconds,
            stderr_stream=self.stderr_stream,
        )
        result = launcher.launch(request)
        if request.dry_run:
            return RunCommandResult(lines=result.lines, exit_code=0)
        return RunCommandResult(
            lines=[result.report.rstrip("\n")],
            exit_code=result.exit_code,
            notes=[_finish_note(result)],
        )

    def _resolve(self, work_dir: Path | None, reference: str) -> DerivedRun:
        context = _settings(work_dir).context()
        return resolve_run_reference(_load_runs(context, include_archive=True), reference)


def render_envelope(
    command: str,
    *,
    data: Any = None,
    error: RunAgentError | None = None,
    meta: dict[str, Any] | None = None,
) -> str:
    return json.dumps(
        {
            "ok": error is None,
            "command": command,
            "data": data,
            "error": error.to_dict() if error is not None else None,
            "meta": meta or {},
        },
        ensure_ascii=False,
    )


def _settings(work_dir: Path | None) -> Settings:
    try:
        return Settings.from_env(work_dir=work_dir)
    except ValueError as error:
        raise RunAgentError(str(error), code="config_error") from error


def _load_runs(context: RunContext, *, include_archive: bool) -> list[DerivedRun]:
    return build_derived_view(RunIndex(context).read_records(include_archive=include_archive))


def _timeout_seconds(settings: Settings, timeout_minutes: float | None) -> float | None:
    if timeout_minutes is None:
        return settings.timeout_seconds
    if timeout_minutes <= 0:
        return None
    return timeout_minutes * 60


def _parse_time(value: str | None, option: str, *, end_of_day: bool = False) -> datetime | None:
    """Parse a filter bound; a bare date as an upper bound covers that whole day."""

    if not value:
        return None
    try:
        parsed = parse_timestamp(value)
    except ValueError as error:
        raise CallerError(
            f"Invalid {option} value {value!r}.",
            code="bad_time",
            hint="Use an ISO-8601 date or timestamp, e.g. 2025-01-31 or 2025-01-31T12:00:00Z.",
        ) from error
    if end_of_day and _DATE_ONLY.match(value.strip()):
        return parsed + timedelta(days=1, microseconds=-1)
    return parsed


def _prior_for_retry(runs: list[DerivedRun], continues: str | None) -> DerivedRun | None:
    if not continues:
        return None
    for run in runs:
        if run.run_id == continues:
            return run
    logger.warning("Continued run %s not found; retrying as a fresh run", continues)
    return None


def _require_confirmation(question: str, *, yes: bool, confirm: Confirm | None) -> None:
    if yes:
        return
    if confirm is None:
        raise CallerError(
            "Refusing to modify files without confirmation in a non-interactive context.",
            code="confirmation_required",
            hint="Pass --yes to proceed.",
        )
    if not confirm(question):
        raise CallerError("Aborted.", code="aborted")


def _duration_text(run: DerivedRun) -> str:
    if run.finalize is None:
        return "-"
    return f"{run.finalize.duration_seconds:.0f}s"


def _list_line(run: DerivedRun) -> str:
    status = run.effective_status
    return (
        f"{STATUS_ICONS[status]} {run.run_id}  {run.start.model}  "
        f"{_duration_text(run)}  {status.value}"
    )


def _list_entry(run: DerivedRun) -> dict[str, Any]:
    finalize = run.finalize
    return {
        "run_id": run.run_id,
        "model": run.start.model,
        "effective_status": run.effective_status.value,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "duration_seconds": finalize.duration_seconds if finalize else None,
        "exit_code": finalize.exit_code if finalize else None,
        "session_id": run.start.session_id,
        "labels": dict(run.start.labels),
    }


def _show_lines(run: DerivedRun) -> list[str]:
    start = run.start
    finalize = run.finalize
    lines = [
        f"Run: {run.run_id}",
        f"Status: {run.effective_status.value}",
        f"Agent: {start.agent or '-'}",
        f"Model: {start.model}",
        f"Harness: {start.harness}",
        f"Started: {run.started_at}",
        f"Finished: {run.finished_at or '-'}",
        f"Duration: {_duration_text(run)}",
    ]
    if finalize is not None:
        lines.append(f"Exit code: {finalize.exit_code}")
        if finalize.failure_reason is not None:
            lines.append(f"Failure reason: {finalize.failure_reason.value}")
    lines.append(f"Session: {start.session_id}")
    lines.append(f"Skills: {', '.join(start.skills) or '-'}")
    labels = ", ".join(f"{key}={value}" for key, value in sorted(start.labels.items()))
    lines.append(f"Labels: {labels or '-'}")
    if finalize is not None:
        lines.append(f"Harness session: {finalize.harness_session_id or '-'}")
        if finalize.in_git_repo:
            lines.append(
                f"Git: {finalize.head_before or '-'} -> {finalize.head_after or '-'} "
                f"({finalize.commit_count} commits)",
            )
        else:
            lines.append("Git: not a git work tree")
        tokens_in = finalize.input_tokens if finalize.input_tokens is not None else "-"
        tokens_out = finalize.output_tokens if finalize.output_tokens is not None else "-"
        lines.append(f"Tokens: input={tokens_in} output={tokens_out}")
        if finalize.continues:
            mode = finalize.continuation_mode.value if finalize.continuation_mode else "-"
            reason = finalize.continuation_fallback_reason
            suffix = f", {reason.value}" if reason is not None else ""
            lines.append(f"Continues: {finalize.continues} ({mode}{suffix})")
        if finalize.retries:
            lines.append(f"Retries: {finalize.retries}")
    lines.append(f"Log dir: {start.log_dir}")
    return lines


def _finish_note(result: LaunchResult) -> str:
    finalize = result.finalize
    status = finalize.status.value if finalize is not None else "unknown"
    return (
        f"run-agent: {result.run_id} {status} (exit {result.exit_code}); "
        f"logs: {result.log_dir}"
    )
