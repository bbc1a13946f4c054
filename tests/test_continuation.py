from __future__ import annotations

from pathlib import Path

import allure
import pytest

from run_agent import continuation
from run_agent.continuation import plan_continuation
from run_agent.errors import CallerError
from run_agent.harness.opencode import OpenCodeAdapter
from run_agent.models import (
    ContinuationFallbackReason,
    ContinuationMode,
    DerivedRun,
    FinalizeRecord,
    RunStatus,
    StartRecord,
)
from run_agent.prompt import ReportDetail, compose_prompt

pytestmark = [
    allure.epic("Continuation"),
    allure.feature("Native Resume and Fallback"),
]


def _prior(
    tmp_path: Path,
    *,
    harness: str = "claude",
    session: str | None = "sess-1",
    finalized: bool = True,
) -> DerivedRun:
    log_dir = tmp_path / "prior"
    log_dir.mkdir(exist_ok=True)
    start = StartRecord(
        run_id="prior-run",
        created_at_utc="2025-01-01T00:00:00.000000Z",
        cwd=str(tmp_path),
        session_id="prior-run",
        model="opus",
        harness=harness,
        log_dir=str(log_dir),
    )
    finalize = None
    if finalized:
        finalize = FinalizeRecord(
            run_id="prior-run",
            status=RunStatus.COMPLETED,
            finished_at_utc="2025-01-01T00:01:00.000000Z",
            duration_seconds=60.0,
            exit_code=0,
            failure_reason=None,
            output_log=str(log_dir / "output.jsonl"),
            report_path=str(log_dir / "report.md"),
            harness_session_id=session,
        )
    return DerivedRun(start=start, finalize=finalize)


def test_unfinalized_prior_is_refused_with_run_id(tmp_path: Path) -> None:
    prior = _prior(tmp_path, finalized=False)

    with pytest.raises(CallerError, match="prior-run: still running or crashed") as excinfo:
        plan_continuation(prior=prior, target_harness="claude", follow_up="more")
    assert excinfo.value.code == "still_running"


@pytest.mark.parametrize(
    ("harness", "fork", "mode"),
    [
        ("claude", None, ContinuationMode.FORK),
        ("claude", False, ContinuationMode.IN_PLACE),
        ("opencode", True, ContinuationMode.FORK),
        ("codex", None, ContinuationMode.IN_PLACE),
        ("codex", False, ContinuationMode.IN_PLACE),
    ],
)
def test_native_modes(tmp_path: Path, harness, fork, mode) -> None:
    plan = plan_continuation(
        prior=_prior(tmp_path, harness=harness),
        target_harness=harness,
        follow_up="  next step ",
        fork=fork,
    )

    assert plan.mode == mode
    assert plan.native is True
    assert plan.harness_session_id == "sess-1"
    assert plan.prompt == "  next step "
    assert plan.continues == "prior-run"


def test_codex_fork_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(CallerError) as excinfo:
        plan_continuation(
            prior=_prior(tmp_path, harness="codex"),
            target_harness="codex",
            follow_up="x",
            fork=True,
        )
    assert excinfo.value.code == "fork_unsupported"


def test_cross_harness_continuation_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(CallerError, match="Cannot continue claude run") as excinfo:
        plan_continuation(prior=_prior(tmp_path), target_harness="codex", follow_up="x")
    assert excinfo.value.code == "harness_mismatch"


def test_missing_session_falls_back_to_artifact_prompt(tmp_path: Path) -> None:
    prior = _prior(tmp_path, session=None)
    log_dir = Path(prior.start.log_dir)
    (log_dir / "input.md").write_text(
        compose_prompt(
            prompt="Fix the parser",
            report_path=log_dir / "report.md",
            detail=ReportDetail.BRIEF,
        ),
        encoding="utf-8",
    )
    (log_dir / "report.md").write_text("Parser fixed.\n", encoding="utf-8")

    plan = plan_continuation(prior=prior, target_harness="codex", follow_up="Add tests")

    assert plan.mode == ContinuationMode.FALLBACK
    assert plan.native is False
    assert plan.fallback_reason == ContinuationFallbackReason.MISSING_HARNESS_SESSION_ID
    assert plan.harness_session_id is None
    assert "## Original Request\n\nFix the parser\n" in plan.prompt
    assert "write a report of your work" not in plan.prompt
    assert "## Original Report\n\nParser fixed.\n" in plan.prompt
    assert plan.prompt.endswith("## Follow-up Request\n\nAdd tests")


def test_fallback_without_artifacts_is_caller_error(tmp_path: Path) -> None:
    with pytest.raises(CallerError) as excinfo:
        plan_continuation(
            prior=_prior(tmp_path, session=None),
            target_harness="claude",
            follow_up="x",
        )
    assert excinfo.value.code == "fallback_unavailable"


def test_harness_without_resume_support_falls_back(tmp_path: Path, monkeypatch) -> None:
    class _NoResume(OpenCodeAdapter):
        supports_continuation = False

    monkeypatch.setitem(continuation.HARNESS_ADAPTERS, "opencode", _NoResume())
    prior = _prior(tmp_path, harness="opencode")
    log_dir = Path(prior.start.log_dir)
    (log_dir / "input.md").write_text("Original task", encoding="utf-8")
    (log_dir / "report.md").write_text("Done.", encoding="utf-8")

    plan = plan_continuation(prior=prior, target_harness="opencode", follow_up="again")

    assert plan.mode == ContinuationMode.FALLBACK
    assert plan.fallback_reason == ContinuationFallbackReason.UNSUPPORTED_HARNESS
