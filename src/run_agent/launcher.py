"""Run launcher: one harness process from start record to finalize record."""

from __future__ import annotations

import logging
import os
import re
import shlex
import signal
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from run_agent.config import RunContext
from run_agent.continuation import ContinuationPlan, plan_continuation
from run_agent.contracts import RunParams, format_timestamp, utc_now, write_params
from run_agent.errors import CallerError
from run_agent.failure_classifier import (
    classify_exit,
    normalize_exit_code,
    signal_exit_code,
)
from run_agent.files_touched import (
    extract_files_touched,
    write_files_manifest,
    write_post_run_state,
)
from run_agent.harness import (
    BackendRunError,
    CliHarnessBackend,
    CommandRequest,
    HarnessAdapter,
    HarnessCommand,
    ProcessOutcome,
    ProcessRequest,
    get_adapter,
    read_events,
)
from run_agent.index import RunIndex
from run_agent.models import (
    DEFAULT_TASK_TYPE,
    EXIT_AGENT_ERROR,
    EXIT_INFRA_ERROR,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    TASK_TYPE_LABEL,
    ContinuationMode,
    DerivedRun,
    FailureReason,
    FinalizeRecord,
    PromptDelivery,
    StartRecord,
)
from run_agent.output_fallback import diagnostic_report, synthesize_report
from run_agent.prompt import ReportDetail, compose_prompt
from run_agent.routing import ModelRoute, resolve_model_route
from run_agent.usage import extract_usage
from run_agent.vcs import GitState, capture_git_state, commit_count_between
from run_agent.workdir import RunArtifacts, RunWorkdirManager, generate_run_id

logger = logging.getLogger(__name__)

LABEL_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass(slots=True)
class LaunchRequest:
    """Everything the caller decided about one run."""

    model: str
    prompt: str
    variant: str = "high"
    agent: str | None = None
    skills: tuple[str, ...] = ()
    reference_files: tuple[Path, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None
    tools: tuple[str, ...] | None = None
    sandbox: str | None = None
    detail: ReportDetail = ReportDetail.STANDARD
    timeout_seconds: float | None = None
    continue_from: DerivedRun | None = None
    fork: bool | None = None
    retries: str | None = None
    dry_run: bool = False


@dataclass(slots=True)
class LaunchResult:
    """Outcome of a launch; `finalize` is None for dry runs."""

    run_id: str
    exit_code: int
    report: str
    log_dir: Path
    finalize: FinalizeRecord | None = None
    lines: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _FailFast:
    exit_code: int
    headline: str


def validate_labels(labels: Mapping[str, str]) -> dict[str, str]:
    """Check label keys and values; `task-type` defaults to `coding`."""

    validated: dict[str, str] = {}
    for key, value in labels.items():
        if not LABEL_KEY_PATTERN.match(key):
            raise CallerError(
                f"Invalid label key {key!r}.",
                code="bad_label",
                hint="Label keys may contain letters, digits, '.', '_' and '-'.",
            )
        if not value.strip():
            raise CallerError(f"Label {key!r} has an empty value.", code="bad_label")
        validated[key] = value.strip()
    validated.setdefault(TASK_TYPE_LABEL, DEFAULT_TASK_TYPE)
    return validated


class RunLauncher:
    """Launch one harness run and record its provenance."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        context: RunContext,
        fallback_model: str | None = None,
        fallback_harness: str | None = None,
        grace_seconds: float = 5.0,
        stderr_stream: IO[str] | None = None,
        backend: CliHarnessBackend | None = None,
    ) -> None:
        self.context = context
        self.fallback_model = fallback_model
        self.fallback_harness = fallback_harness
        self.grace_seconds = grace_seconds
        self.stderr_stream = stderr_stream
        self.backend = backend or CliHarnessBackend()
        self.index = RunIndex(context)
        self.workdirs = RunWorkdirManager(context)
        self._stop_signal_name: str | None = None

    def launch(self, request: LaunchRequest) -> LaunchResult:  # noqa: C901, PLR0915
        if not request.prompt.strip():
            raise CallerError(
                "Prompt is required.",
                code="missing_prompt",
                hint="Pass -p/--prompt or pipe the prompt on stdin.",
            )
        labels = validate_labels(request.labels)
        route = resolve_model_route(
            request.model,
            fallback_model=self.fallback_model,
            fallback_harness=self.fallback_harness,
        )
        adapter = get_adapter(route.harness)

        plan: ContinuationPlan | None = None
        if request.continue_from is not None:
            plan = plan_continuation(
                prior=request.continue_from,
                target_harness=route.harness,
                follow_up=request.prompt,
                fork=request.fork,
            )
        body = plan.prompt if plan is not None else request.prompt

        run_id = generate_run_id(model=route.model, label=request.agent)
        artifacts = self.workdirs.plan(run_id)
        composed = compose_prompt(
            prompt=body,
            report_path=artifacts.report_path,
            detail=request.detail,
            skills=request.skills,
            reference_files=request.reference_files,
        )
        command = adapter.build_command(
            CommandRequest(
                model=route.model,
                variant=request.variant,
                prompt=composed,
                agent=request.agent,
                tools=request.tools,
                sandbox=request.sandbox,
                resume_session_id=plan.harness_session_id if plan and plan.native else None,
                fork=plan is not None and plan.mode == ContinuationMode.FORK,
            ),
        )

        if request.dry_run:
            return LaunchResult(
                run_id=run_id,
                exit_code=EXIT_SUCCESS,
                report="",
                log_dir=artifacts.log_dir,
                lines=_dry_run_lines(route=route, command=command, composed=composed, plan=plan),
            )

        session_id = request.session_id or (
            request.continue_from.start.session_id if request.continue_from else run_id
        )
        artifacts = self.workdirs.materialize(run_id)
        artifacts.input_path.write_text(composed, "utf-8")
        write_params(
            artifacts.params_path,
            RunParams(
                run_id=run_id,
                model=route.model,
                harness=route.harness,
                variant=request.variant,
                prompt=request.prompt,
                cwd=str(self.context.work_dir),
                session_id=session_id,
                command=_redacted_command(command, composed),
                prompt_delivery=command.prompt_delivery.value,
                agent=request.agent,
                skills=list(request.skills),
                labels=labels,
                tools=list(request.tools) if request.tools is not None else None,
                sandbox=request.sandbox,
                detail=request.detail.value,
                reference_files=[str(path) for path in request.reference_files],
                timeout_seconds=request.timeout_seconds,
                explicit_session=request.session_id is not None,
                requested_model=route.requested_model,
                continues=plan.continues if plan else None,
                continuation_mode=plan.mode.value if plan else None,
                retries=request.retries,
            ),
        )

        git_before = capture_git_state(self.context.work_dir)
        self._stop_signal_name = None
        with self._signal_handlers():
            return self._run_and_finalize(
                request=request,
                route=route,
                adapter=adapter,
                plan=plan,
                command=command,
                artifacts=artifacts,
                run_id=run_id,
                session_id=session_id,
                labels=labels,
                git_before=git_before,
            )

    def _run_and_finalize(  # noqa: PLR0913, PLR0915
        self,
        *,
        request: LaunchRequest,
        route: ModelRoute,
        adapter: HarnessAdapter,
        plan: ContinuationPlan | None,
        command: HarnessCommand,
        artifacts: RunArtifacts,
        run_id: str,
        session_id: str,
        labels: dict[str, str],
        git_before: GitState,
    ) -> LaunchResult:
        """Start record to finalize record; runs with stop signals trapped."""

        self.index.append(
            StartRecord(
                run_id=run_id,
                created_at_utc=format_timestamp(utc_now()),
                cwd=str(self.context.work_dir),
                session_id=session_id,
                model=route.model,
                harness=route.harness,
                log_dir=str(artifacts.log_dir),
                agent=request.agent,
                skills=list(request.skills),
                labels=labels,
            ),
        )
        logger.info(
            "Run started: run_id=%s model=%s harness=%s",
            run_id,
            route.model,
            route.harness,
        )

        outcome, fail_fast = self._execute(
            command=command,
            artifacts=artifacts,
            run_id=run_id,
            timeout_seconds=request.timeout_seconds,
        )
        events = read_events(artifacts.output_path)
        if fail_fast is None:
            exit_code = _exit_code_for(outcome)
            if outcome is not None and outcome.timed_out:
                fail_fast = _FailFast(
                    EXIT_TIMEOUT,
                    f"Timed out after {request.timeout_seconds:g} seconds",
                )
            elif exit_code == EXIT_SUCCESS:
                fail_fast = _check_successful_output(adapter, events, artifacts)
        if fail_fast is not None:
            exit_code = fail_fast.exit_code
        classification = classify_exit(exit_code)

        files = extract_files_touched(artifacts.output_path, repo_root=self.context.work_dir)
        write_files_manifest(artifacts, files)
        write_post_run_state(artifacts, work_dir=self.context.work_dir, files=files)

        report = _read_report(artifacts.report_path)
        if report is None:
            if fail_fast is not None:
                report = diagnostic_report(
                    exit_code=exit_code,
                    output_path=artifacts.output_path,
                    stderr_path=artifacts.stderr_path,
                    headline=fail_fast.headline,
                )
            else:
                report = synthesize_report(
                    adapter=adapter,
                    events=events,
                    exit_code=exit_code,
                    output_path=artifacts.output_path,
                    stderr_path=artifacts.stderr_path,
                )
            artifacts.report_path.write_text(report, "utf-8")

        usage = extract_usage(
            adapter=adapter,
            events=events,
            stderr=_read_text(artifacts.stderr_path),
        )
        harness_session_id = adapter.extract_session_id(events)
        if harness_session_id is None and plan is not None and plan.native:
            harness_session_id = plan.harness_session_id

        git_after = capture_git_state(self.context.work_dir)
        if (
            self._stop_signal_name is not None
            and classification.failure_reason != FailureReason.INTERRUPTED
        ):
            # Stop arrived after the harness exited; the run still ends interrupted.
            exit_code = signal_exit_code(self._stop_signal_name)
            classification = classify_exit(exit_code)
            logger.warning(
                "Stop requested during post-processing: run_id=%s signal=%s",
                run_id,
                self._stop_signal_name,
            )
        finalize = FinalizeRecord(
            run_id=run_id,
            status=classification.status,
            finished_at_utc=format_timestamp(utc_now()),
            duration_seconds=round(outcome.duration_seconds if outcome else 0.0, 3),
            exit_code=exit_code,
            failure_reason=classification.failure_reason,
            output_log=str(artifacts.output_path),
            report_path=str(artifacts.report_path),
            harness_session_id=harness_session_id,
            git_available=git_before.git_available,
            in_git_repo=git_before.in_git_repo,
            head_before=git_before.head,
            head_after=git_after.head,
            commit_count=commit_count_between(
                self.context.work_dir,
                git_before.head,
                git_after.head,
            ),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            continues=plan.continues if plan else None,
            continuation_mode=plan.mode if plan else None,
            continuation_fallback_reason=plan.fallback_reason if plan else None,
            retries=request.retries,
        )
        self.index.append(finalize)
        logger.info(
            "Run finished: run_id=%s exit_code=%s status=%s",
            run_id,
            exit_code,
            classification.status.value,
        )
        return LaunchResult(
            run_id=run_id,
            exit_code=exit_code,
            report=report,
            log_dir=artifacts.log_dir,
            finalize=finalize,
        )

    def _execute(
        self,
        *,
        command: HarnessCommand,
        artifacts: RunArtifacts,
        run_id: str,
        timeout_seconds: float | None,
    ) -> tuple[ProcessOutcome | None, _FailFast | None]:
        env = dict(os.environ)
        env.update(command.env_overrides)
        env["RUN_AGENT_RUN_ID"] = run_id
        env["RUN_AGENT_LOG_DIR"] = str(artifacts.log_dir)
        process_request = ProcessRequest(
            argv=command.argv,
            cwd=self.context.work_dir,
            env=env,
            stdout_path=artifacts.output_path,
            stderr_path=artifacts.stderr_path,
            stdin_path=(
                artifacts.input_path
                if command.prompt_delivery == PromptDelivery.STDIN
                else None
            ),
            timeout_seconds=timeout_seconds,
            grace_seconds=self.grace_seconds,
            stop_requested=lambda: self._stop_signal_name,
            stderr_echo=self.stderr_stream if self.stderr_stream is not None else sys.stderr,
        )
        try:
            return self.backend.run(process_request), None
        except BackendRunError as error:
            logger.error("Harness launch failed: run_id=%s error=%s", run_id, error)
            artifacts.output_path.touch(exist_ok=True)
            artifacts.stderr_path.touch(exist_ok=True)
            return None, _FailFast(EXIT_INFRA_ERROR, str(error))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _exit_code_for(outcome: ProcessOutcome | None) -> int:
    if outcome is None:
        return EXIT_INFRA_ERROR
    if outcome.stop_signal is not None:
        return signal_exit_code(outcome.stop_signal)
    return normalize_exit_code(outcome.returncode)


def _check_successful_output(
    adapter: HarnessAdapter,
    events: list[dict[str, object]],
    artifacts: RunArtifacts,
) -> _FailFast | None:
    if not _read_text(artifacts.output_path).strip():
        return _FailFast(EXIT_INFRA_ERROR, "No harness output captured")
    error_message = adapter.find_error_event(events)
    if error_message is not None:
        return _FailFast(EXIT_AGENT_ERROR, f"Harness reported an error: {error_message}")
    return None


def _read_report(path: Path) -> str | None:
    text = _read_text(path)
    return text if text.strip() else None


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return ""


def _redacted_command(command: HarnessCommand, composed: str) -> list[str]:
    return ["<prompt>" if arg == composed else arg for arg in command.argv]


def _dry_run_lines(
    *,
    route: ModelRoute,
    command: HarnessCommand,
    composed: str,
    plan: ContinuationPlan | None,
) -> list[str]:
    lines = [
        "DRY RUN: nothing was launched.",
        f"Model: {route.model} (harness: {route.harness})",
    ]
    if route.used_fallback:
        lines.append(f"Requested model: {route.requested_model} (fallback applied)")
    if plan is not None:
        reason = f" ({plan.fallback_reason.value})" if plan.fallback_reason else ""
        lines.append(f"Continues: {plan.continues} mode={plan.mode.value}{reason}")
    lines.append(f"Prompt delivery: {command.prompt_delivery.value}")
    lines.append(f"Command: {shlex.join(_redacted_command(command, composed))}")
    lines.extend(["", "--- prompt ---", composed.rstrip()])
    return lines
