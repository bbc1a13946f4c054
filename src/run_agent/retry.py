"""Retry planning and surgical undo of a prior run's touched files."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from run_agent.contracts import RunParams, read_params
from run_agent.errors import CallerError
from run_agent.files_touched import fingerprint_file, read_files_manifest, read_post_run_state
from run_agent.launcher import LaunchRequest
from run_agent.models import ContinuationMode, DerivedRun
from run_agent.prompt import ReportDetail, strip_report_instruction
from run_agent.vcs import capture_git_state, checkout_file, diff_is_clean, file_exists_at
from run_agent.workdir import artifacts_for

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UndoPlan:
    """Files a surgical undo would restore or delete, plus those edited since the run."""

    run_id: str
    head_before: str
    restore: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    dirty: list[str] = field(default_factory=list)

    @property
    def files(self) -> list[str]:
        return sorted([*self.restore, *self.created])


def plan_undo(run: DerivedRun, *, work_dir: Path) -> UndoPlan:
    """Check preconditions and classify every touched file of `run`."""

    finalize = run.finalize
    git_state = capture_git_state(work_dir)
    if not git_state.git_available or not git_state.in_git_repo:
        raise CallerError(
            "Cannot undo: git is unavailable or the working directory is not a git work tree.",
            code="no_git",
        )
    if finalize is None or not finalize.head_before:
        raise CallerError(
            f"Cannot undo run {run.run_id}: no head_before recorded.",
            code="no_head",
            hint="Only finalized runs launched inside a git work tree can be undone.",
        )

    artifacts = artifacts_for(run.run_id, run.start.log_dir)
    files = read_files_manifest(artifacts)
    if not files:
        raise CallerError(
            f"Cannot undo run {run.run_id}: no touched files recorded.",
            code="no_files",
            hint="Nothing to revert; retry without --undo-first.",
        )

    plan = UndoPlan(run_id=run.run_id, head_before=finalize.head_before)
    post_run_state = read_post_run_state(artifacts)
    for path in files:
        if file_exists_at(work_dir, finalize.head_before, path):
            plan.restore.append(path)
        else:
            plan.created.append(path)
        if _is_dirty(
            path,
            work_dir=work_dir,
            post_run_state=post_run_state,
            head_after=finalize.head_after,
        ):
            plan.dirty.append(path)
    return plan


def _is_dirty(
    path: str,
    *,
    work_dir: Path,
    post_run_state: dict[str, str | None] | None,
    head_after: str | None,
) -> bool:
    if post_run_state is not None and path in post_run_state:
        return fingerprint_file(work_dir / path) != post_run_state[path]
    if head_after:
        return not diff_is_clean(work_dir, head_after, path)
    return True


def apply_undo(plan: UndoPlan, *, work_dir: Path, force: bool = False) -> list[str]:
    """Restore pre-run content; files the run created are deleted only with `force`."""

    lines: list[str] = []
    for path in plan.restore:
        checkout_file(work_dir, plan.head_before, path)
        lines.append(f"Restored {path} from {plan.head_before[:12]}")
    for path in plan.created:
        if force:
            (work_dir / path).unlink(missing_ok=True)
            lines.append(f"Deleted {path} (created by run {plan.run_id})")
        else:
            lines.append(f"Kept {path}: created by the run; pass --force to delete it")
    logger.info(
        "Undo applied: run_id=%s restored=%s created=%s force=%s",
        plan.run_id,
        len(plan.restore),
        len(plan.created),
        force,
    )
    return lines


def render_undo_preview(plan: UndoPlan) -> list[str]:
    lines = [
        f"DRY RUN: Would undo {len(plan.files)} files from run {plan.run_id}",
        f"head_before: {plan.head_before}",
        "Files:",
    ]
    for path in plan.files:
        markers = []
        if path in plan.created:
            markers.append("created")
        if path in plan.dirty:
            markers.append("modified since run")
        suffix = f" ({', '.join(markers)})" if markers else ""
        lines.append(f"  {path}{suffix}")
    return lines


def load_run_params(run: DerivedRun) -> RunParams:
    artifacts = artifacts_for(run.run_id, run.start.log_dir)
    try:
        return read_params(artifacts.params_path)
    except (OSError, ValueError) as error:
        raise CallerError(
            f"Cannot retry run {run.run_id}: params.json unreadable ({error}).",
            code="no_params",
        ) from error


def original_prompt(run: DerivedRun, params: RunParams) -> str:
    """Raw request of a run; input.md minus the report instruction when params lack it."""

    if params.prompt.strip():
        return params.prompt
    artifacts = artifacts_for(run.run_id, run.start.log_dir)
    try:
        return strip_report_instruction(artifacts.input_path.read_text("utf-8"))
    except OSError as error:
        raise CallerError(
            f"Cannot retry run {run.run_id}: original prompt unavailable.",
            code="missing_prompt",
            hint="Pass -p/--prompt to supply a prompt.",
        ) from error


def build_retry_request(  # noqa: PLR0913
    run: DerivedRun,
    params: RunParams,
    *,
    model: str | None = None,
    variant: str | None = None,
    prompt: str | None = None,
    skills: Sequence[str] | None = None,
    continue_from: DerivedRun | None = None,
    dry_run: bool = False,
) -> LaunchRequest:
    """Original invocation with caller overrides applied."""

    return LaunchRequest(
        model=model or params.model,
        prompt=prompt if prompt is not None else original_prompt(run, params),
        variant=variant or params.variant,
        agent=params.agent,
        skills=tuple(skills) if skills is not None else tuple(params.skills),
        reference_files=tuple(Path(path) for path in params.reference_files),
        labels=dict(params.labels),
        session_id=params.session_id if params.explicit_session else None,
        tools=tuple(params.tools) if params.tools is not None else None,
        sandbox=params.sandbox,
        detail=ReportDetail(params.detail),
        timeout_seconds=params.timeout_seconds,
        continue_from=continue_from,
        fork=_fork_flag(params.continuation_mode) if continue_from is not None else None,
        retries=run.run_id,
        dry_run=dry_run,
    )


def _fork_flag(mode: str | None) -> bool | None:
    if mode == ContinuationMode.FORK.value:
        return True
    if mode == ContinuationMode.IN_PLACE.value:
        return False
    return None
