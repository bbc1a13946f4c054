"""CLI entrypoint for run-agent."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from run_agent import __version__
from run_agent.controllers import (
    LOG_MODES,
    Confirm,
    ContinueCommand,
    InspectRunCommand,
    ListRunsCommand,
    LogsCommand,
    MaintainCommand,
    RetryCommand,
    RunAgentCliController,
    RunCommand,
    RunCommandResult,
    StatsCommand,
    render_envelope,
)
from run_agent.errors import RunAgentError
from run_agent.harness.codex import SANDBOX_POLICIES
from run_agent.models import RunStatus
from run_agent.prompt import ReportDetail

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RunAgentCliController()

_WORK_DIR_TYPE = click.Path(path_type=Path, file_okay=False, exists=True)


@click.group()
@click.version_option(version=__version__, prog_name="run-agent")
@click.option(
    "-C",
    "--work-dir",
    type=_WORK_DIR_TYPE,
    default=None,
    help="Working directory; the state root is anchored at its git top level.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def run_agent(ctx: click.Context, work_dir: Path | None, verbose: bool) -> None:
    """Run AI coding-agent CLIs (claude, codex, opencode) and keep provenance of every run."""

    ctx.ensure_object(dict)
    ctx.obj["work_dir"] = work_dir
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@run_agent.command("run")
@click.option("-m", "--model", required=True, help="Model name; selects the harness.")
@click.option("-V", "--variant", default=None, help="Reasoning effort (default: high).")
@click.option(
    "--timeout",
    "timeout_minutes",
    type=click.FloatRange(min=0),
    default=None,
    help="Wall-clock timeout in minutes; 0 disables.",
)
@click.option("--agent", default=None, help="Harness agent profile name.")
@click.option("-s", "--skill", "skills", multiple=True, help="Skill to apply. Can be repeated.")
@click.option("-p", "--prompt", default=None, help="Prompt text; read from stdin when omitted.")
@click.option("--session", "session_id", default=None, help="Session label for grouping runs.")
@click.option("--label", "labels", multiple=True, help="KEY=VALUE label. Can be repeated.")
@click.option(
    "-f",
    "--file",
    "reference_files",
    type=click.Path(path_type=Path),
    multiple=True,
    help="Reference file the agent should read first. Can be repeated.",
)
@click.option(
    "-D",
    "--detail",
    type=click.Choice([detail.value for detail in ReportDetail]),
    default=ReportDetail.STANDARD.value,
    show_default=True,
    help="Report detail level.",
)
@click.option("--tools", default=None, help="Comma-separated tool allow-list.")
@click.option(
    "--sandbox",
    type=click.Choice(SANDBOX_POLICIES),
    default=None,
    help="Explicit codex sandbox policy.",
)
@click.option("--continue-run", default=None, help="Run reference to continue from.")
@click.option(
    "--fork/--in-place",
    "fork",
    default=None,
    help="Fork the prior conversation or resume it in place.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Print the plan without running.")
@click.option("-C", "--work-dir", "run_work_dir", type=_WORK_DIR_TYPE, default=None)
@click.pass_context
def run_command(  # noqa: PLR0913
    ctx: click.Context,
    model: str,
    variant: str | None,
    timeout_minutes: float | None,
    agent: str | None,
    skills: tuple[str, ...],
    prompt: str | None,
    session_id: str | None,
    labels: tuple[str, ...],
    reference_files: tuple[Path, ...],
    detail: str,
    tools: str | None,
    sandbox: str | None,
    continue_run: str | None,
    fork: bool | None,
    dry_run: bool,
    run_work_dir: Path | None,
) -> None:
    """Launch one agent run and print its report."""

    with _caller_errors("run"):
        result = CONTROLLER.run(
            RunCommand(
                work_dir=run_work_dir or _work_dir(ctx),
                model=model,
                prompt=_read_prompt(prompt),
                variant=variant,
                timeout_minutes=timeout_minutes,
                agent=agent,
                skills=skills,
                session_id=session_id,
                labels=labels,
                reference_files=reference_files,
                detail=detail,
                tools=tools,
                sandbox=sandbox,
                continue_run=continue_run,
                fork=fork,
                dry_run=dry_run,
            ),
        )
    _emit_run_result(ctx, result)


@run_agent.command("list")
@click.option("--session", "session_id", default=None, help="Only runs of this session.")
@click.option("--model", default=None, help="Only runs of this model.")
@click.option("--agent", default=None, help="Only runs of this agent.")
@click.option("--label", "labels", multiple=True, help="KEY=VALUE label filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in RunStatus]),
    default=None,
    help="Only runs with this effective status.",
)
@click.option("--failed", "failed_only", is_flag=True, default=False, help="Only failed runs.")
@click.option("--since", default=None, help="Started at or after (ISO-8601).")
@click.option("--until", default=None, help="Started at or before (ISO-8601).")
@click.option("--include-archive", is_flag=True, default=False, help="Include archived runs.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Page size.",
)
@click.option("--cursor", default=None, help="Continue after this run id.")
@click.option("--json", "as_json", is_flag=True, default=False, help="JSON envelope output.")
@click.pass_context
def list_command(  # noqa: PLR0913
    ctx: click.Context,
    session_id: str | None,
    model: str | None,
    agent: str | None,
    labels: tuple[str, ...],
    status: str | None,
    failed_only: bool,
    since: str | None,
    until: str | None,
    include_archive: bool,
    limit: int,
    cursor: str | None,
    as_json: bool,
) -> None:
    """List runs, newest first."""

    with _caller_errors("list", as_json=as_json):
        lines = CONTROLLER.list_runs(
            ListRunsCommand(
                work_dir=_work_dir(ctx),
                session_id=session_id,
                model=model,
                agent=agent,
                labels=labels,
                status=status,
                failed_only=failed_only,
                since=since,
                until=until,
                include_archive=include_archive,
                limit=limit,
                cursor=cursor,
                as_json=as_json,
            ),
        )
    _emit_lines(lines)


@run_agent.command("show")
@click.argument("reference")
@click.option("--json", "as_json", is_flag=True, default=False, help="JSON envelope output.")
@click.pass_context
def show_command(ctx: click.Context, reference: str, as_json: bool) -> None:
    """Show metadata of one run (id, 8+ char prefix, @latest, @last-failed, @last-completed)."""

    with _caller_errors("show", as_json=as_json):
        lines = CONTROLLER.show(
            InspectRunCommand(work_dir=_work_dir(ctx), reference=reference, as_json=as_json),
        )
    _emit_lines(lines)


@run_agent.command("report")
@click.argument("reference")
@click.option("--json", "as_json", is_flag=True, default=False, help="JSON envelope output.")
@click.pass_context
def report_command(ctx: click.Context, reference: str, as_json: bool) -> None:
    """Print a run's report verbatim."""

    with _caller_errors("report", as_json=as_json):
        lines = CONTROLLER.report(
            InspectRunCommand(work_dir=_work_dir(ctx), reference=reference, as_json=as_json),
        )
    _emit_lines(lines)


@run_agent.command("logs")
@click.argument("reference")
@click.option("--summary", "mode", flag_value="summary", help="Log overview.")
@click.option("--tools", "mode", flag_value="tools", help="Tool call tally.")
@click.option("--errors", "mode", flag_value="errors", help="Error events and stderr errors.")
@click.option("--messages", "mode", flag_value="messages", help="Assistant messages.")
@click.option("--search", "pattern", default=None, help="Regex search in the output log.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Messages per page.",
)
@click.option("--cursor", default=None, help="Messages page cursor.")
@click.option("--json", "as_json", is_flag=True, default=False, help="JSON envelope output.")
@click.pass_context
def logs_command(  # noqa: PLR0913
    ctx: click.Context,
    reference: str,
    mode: str | None,
    pattern: str | None,
    limit: int,
    cursor: str | None,
    as_json: bool,
) -> None:
    """Inspect a run's raw output log."""

    resolved_mode = "search" if pattern is not None else mode or "summary"
    if resolved_mode not in LOG_MODES:
        raise click.BadParameter(f"Unknown logs mode: {resolved_mode}")
    with _caller_errors("logs", as_json=as_json):
        lines = CONTROLLER.logs(
            LogsCommand(
                work_dir=_work_dir(ctx),
                reference=reference,
                mode=resolved_mode,
                pattern=pattern,
                limit=limit,
                cursor=cursor,
                as_json=as_json,
            ),
        )
    _emit_lines(lines)


@run_agent.command("files")
@click.argument("reference")
@click.option("--nul", is_flag=True, default=False, help="NUL-delimited output.")
@click.option("--json", "as_json", is_flag=True, default=False, help="JSON envelope output.")
@click.pass_context
def files_command(ctx: click.Context, reference: str, nul: bool, as_json: bool) -> None:
    """List files touched by a run."""

    with _caller_errors("files", as_json=as_json):
        files = CONTROLLER.touched_files(
            InspectRunCommand(work_dir=_work_dir(ctx), reference=reference, as_json=as_json),
        )
    if as_json:
        click.echo(render_envelope("files", data={"files": files, "count": len(files)}))
    elif nul:
        click.echo("".join(f"{path}\0" for path in files), nl=False)
    else:
        _emit_lines(files)


@run_agent.command("stats")
@click.option("--session", "session_id", default=None, help="Only runs of this session.")
@click.option("--model", default=None, help="Only runs of this model.")
@click.option("--include-archive", is_flag=True, default=False, help="Include archived runs.")
@click.option("--json", "as_json", is_flag=True, default=False, help="JSON envelope output.")
@click.pass_context
def stats_command(
    ctx: click.Context,
    session_id: str | None,
    model: str | None,
    include_archive: bool,
    as_json: bool,
) -> None:
    """Aggregate counts, failure reasons, models and durations."""

    with _caller_errors("stats", as_json=as_json):
        lines = CONTROLLER.stats(
            StatsCommand(
                work_dir=_work_dir(ctx),
                session_id=session_id,
                model=model,
                include_archive=include_archive,
                as_json=as_json,
            ),
        )
    _emit_lines(lines)


@run_agent.command("continue")
@click.argument("reference")
@click.option("-p", "--prompt", default=None, help="Follow-up prompt; read from stdin if omitted.")
@click.option("-m", "--model", default=None, help="Model override (same harness only).")
@click.option("-s", "--skill", "skills", multiple=True, help="Skill to apply. Can be repeated.")
@click.option("--label", "labels", multiple=True, help="KEY=VALUE label. Can be repeated.")
@click.option("--fork/--in-place", "fork", default=None, help="Fork or resume in place.")
@click.option("--dry-run", is_flag=True, default=False, help="Print the plan without running.")
@click.pass_context
def continue_command(  # noqa: PLR0913
    ctx: click.Context,
    reference: str,
    prompt: str | None,
    model: str | None,
    skills: tuple[str, ...],
    labels: tuple[str, ...],
    fork: bool | None,
    dry_run: bool,
) -> None:
    """Send a follow-up into a prior run's conversation."""

    with _caller_errors("continue"):
        result = CONTROLLER.continue_run(
            ContinueCommand(
                work_dir=_work_dir(ctx),
                reference=reference,
                prompt=_read_prompt(prompt),
                model=model,
                skills=skills,
                labels=labels,
                fork=fork,
                dry_run=dry_run,
            ),
        )
    _emit_run_result(ctx, result)


@run_agent.command("retry")
@click.argument("reference")
@click.option("-m", "--model", default=None, help="Model override.")
@click.option("-V", "--variant", default=None, help="Variant override.")
@click.option("-p", "--prompt", default=None, help="Prompt override.")
@click.option("-s", "--skill", "skills", multiple=True, help="Skills override. Can be repeated.")
@click.option(
    "--undo-first",
    is_flag=True,
    default=False,
    help="Revert the files the run touched before re-running.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Preview without changing anything.")
@click.option("--force", is_flag=True, default=False, help="Overwrite files edited since the run.")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_context
def retry_command(  # noqa: PLR0913
    ctx: click.Context,
    reference: str,
    model: str | None,
    variant: str | None,
    prompt: str | None,
    skills: tuple[str, ...],
    undo_first: bool,
    dry_run: bool,
    force: bool,
    yes: bool,
) -> None:
    """Re-execute a run with its original parameters."""

    with _caller_errors("retry"):
        result = CONTROLLER.retry(
            RetryCommand(
                work_dir=_work_dir(ctx),
                reference=reference,
                model=model,
                variant=variant,
                prompt=prompt,
                skills=skills or None,
                undo_first=undo_first,
                dry_run=dry_run,
                force=force,
                yes=yes,
                confirm=_interactive_confirm(),
            ),
        )
    _emit_run_result(ctx, result)


@run_agent.command("maintain")
@click.option(
    "--before-days",
    type=click.IntRange(min=0),
    default=None,
    help="Archive finalized runs older than this many days (default: 90).",
)
@click.option("--dry-run", is_flag=True, default=False, help="Report counts only.")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.option("--json", "as_json", is_flag=True, default=False, help="JSON envelope output.")
@click.pass_context
def maintain_command(
    ctx: click.Context,
    before_days: int | None,
    dry_run: bool,
    yes: bool,
    as_json: bool,
) -> None:
    """Archive old finalized runs out of the active index."""

    with _caller_errors("maintain", as_json=as_json):
        lines = CONTROLLER.maintain(
            MaintainCommand(
                work_dir=_work_dir(ctx),
                before_days=before_days,
                dry_run=dry_run,
                yes=yes,
                confirm=_interactive_confirm(),
                as_json=as_json,
            ),
        )
    _emit_lines(lines)


@contextmanager
def _caller_errors(command: str, *, as_json: bool = False) -> Iterator[None]:
    try:
        yield
    except RunAgentError as error:
        if as_json:
            click.echo(render_envelope(command, error=error))
            raise click.exceptions.Exit(1) from error
        message = f"{error.message}\nHint: {error.hint}" if error.hint else error.message
        raise click.ClickException(message) from error


def _work_dir(ctx: click.Context) -> Path | None:
    return (ctx.obj or {}).get("work_dir")


def _read_prompt(prompt: str | None) -> str:
    if prompt is not None:
        return prompt
    stream = click.get_text_stream("stdin")
    if stream.isatty():
        return ""
    return stream.read()


def _interactive_confirm() -> Confirm | None:
    if not sys.stdin.isatty():
        return None
    return lambda question: click.confirm(question, default=False)


def _emit_run_result(ctx: click.Context, result: RunCommandResult) -> None:
    for note in result.notes:
        click.echo(note, err=True)
    _emit_lines(result.lines)
    ctx.exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    run_agent()
