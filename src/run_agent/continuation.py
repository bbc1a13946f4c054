"""Continuation resolver: native resume or artifact-composed fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from run_agent.errors import CallerError
from run_agent.harness import HARNESS_ADAPTERS
from run_agent.models import ContinuationFallbackReason, ContinuationMode, DerivedRun
from run_agent.prompt import build_continuation_prompt, strip_report_instruction
from run_agent.workdir import artifacts_for

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ContinuationPlan:
    """How a follow-up run reaches the prior conversation."""

    continues: str
    mode: ContinuationMode
    prompt: str
    harness_session_id: str | None = None
    fallback_reason: ContinuationFallbackReason | None = None

    @property
    def native(self) -> bool:
        return self.mode != ContinuationMode.FALLBACK


def plan_continuation(
    *,
    prior: DerivedRun,
    target_harness: str,
    follow_up: str,
    fork: bool | None = None,
) -> ContinuationPlan:
    """Decide native resume vs fallback for a follow-up on `prior`.

    `fork=None` means the harness default: claude and opencode fork, codex
    resumes in place.
    """

    if prior.finalize is None:
        raise CallerError(
            f"Cannot continue run {prior.run_id}: still running or crashed "
            "(no finalize record)",
            code="still_running",
            hint="Wait for the run to finish, or use 'run-agent retry' for a crashed run.",
        )

    session_id = prior.finalize.harness_session_id
    if not session_id:
        return _fallback_plan(
            prior,
            follow_up=follow_up,
            reason=ContinuationFallbackReason.MISSING_HARNESS_SESSION_ID,
        )

    prior_harness = prior.start.harness
    if prior_harness != target_harness:
        raise CallerError(
            f"Cannot continue {prior_harness} run {prior.run_id} with harness {target_harness}.",
            code="harness_mismatch",
            hint=f"Use a model served by {prior_harness}, or omit --model.",
        )

    adapter = HARNESS_ADAPTERS.get(target_harness)
    if adapter is None or not adapter.supports_continuation:
        return _fallback_plan(
            prior,
            follow_up=follow_up,
            reason=ContinuationFallbackReason.UNSUPPORTED_HARNESS,
        )

    if adapter.always_in_place:
        if fork:
            raise CallerError(
                f"{target_harness} continuation does not support forking.",
                code="fork_unsupported",
                hint="Use --in-place or omit --fork.",
            )
        mode = ContinuationMode.IN_PLACE
    else:
        mode = ContinuationMode.IN_PLACE if fork is False else ContinuationMode.FORK

    return ContinuationPlan(
        continues=prior.run_id,
        mode=mode,
        prompt=follow_up,
        harness_session_id=session_id,
    )


def _fallback_plan(
    prior: DerivedRun,
    *,
    follow_up: str,
    reason: ContinuationFallbackReason,
) -> ContinuationPlan:
    artifacts = artifacts_for(prior.run_id, prior.start.log_dir)
    try:
        original_request = strip_report_instruction(artifacts.input_path.read_text("utf-8"))
        original_report = artifacts.report_path.read_text("utf-8")
    except OSError as error:
        raise CallerError(
            f"Cannot continue run {prior.run_id}: artifacts unreadable ({error}).",
            code="fallback_unavailable",
            hint="Fallback continuation needs input.md and report.md in the run directory.",
        ) from error

    logger.info("Continuing run %s via fallback prompt (%s)", prior.run_id, reason.value)
    return ContinuationPlan(
        continues=prior.run_id,
        mode=ContinuationMode.FALLBACK,
        prompt=build_continuation_prompt(
            original_request=original_request,
            original_report=original_report,
            follow_up=follow_up,
        ),
        fallback_reason=reason,
    )
