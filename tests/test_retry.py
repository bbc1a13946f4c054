from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from run_agent.contracts import RunParams, write_params
from run_agent.errors import CallerError
from run_agent.files_touched import write_files_manifest, write_post_run_state
from run_agent.models import DerivedRun, FinalizeRecord, RunStatus, StartRecord
from run_agent.prompt import ReportDetail
from run_agent.retry import (
    apply_undo,
    build_retry_request,
    original_prompt,
    plan_undo,
    render_undo_preview,
)
from run_agent.workdir import artifacts_for

pytestmark = [
    allure.epic("Retry"),
    allure.feature("Retry and Surgical Undo"),
]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout.strip()


def _run(tmp_path: Path, *, head_before: str | None, head_after: str | None = None) -> DerivedRun:
    log_dir = tmp_path / "logs" / "run-1"
    log_dir.mkdir(parents=True, exist_ok=True)
    start = StartRecord(
        run_id="run-1",
        created_at_utc="2025-01-01T00:00:00Z",
        cwd=str(tmp_path / "repo"),
        session_id="run-1",
        model="opus",
        harness="claude",
        log_dir=str(log_dir),
    )
    finalize = FinalizeRecord(
        run_id="run-1",
        status=RunStatus.COMPLETED,
        finished_at_utc="2025-01-01T00:01:00Z",
        duration_seconds=60.0,
        exit_code=0,
        failure_reason=None,
        output_log=str(log_dir / "output.jsonl"),
        report_path=str(log_dir / "report.md"),
        git_available=True,
        in_git_repo=True,
        head_before=head_before,
        head_after=head_after,
    )
    return DerivedRun(start=start, finalize=finalize)


@pytest.fixture()
def repo_with_run(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    (repo / "app.py").write_text("version = 1\n", encoding="utf-8")
    _git(repo, "add", "app.py")
    _git(repo, "commit", "-q", "-m", "initial")
    head = _git(repo, "rev-parse", "HEAD")

    (repo / "app.py").write_text("version = 2\n", encoding="utf-8")
    (repo / "new_module.py").write_text("created = True\n", encoding="utf-8")
    run = _run(tmp_path, head_before=head, head_after=head)
    artifacts = artifacts_for(run.run_id, run.start.log_dir)
    write_files_manifest(artifacts, ["app.py", "new_module.py"])
    write_post_run_state(artifacts, work_dir=repo, files=["app.py", "new_module.py"])
    return repo, run


@requires_git
def test_undo_restores_modified_and_keeps_created_without_force(repo_with_run) -> None:
    repo, run = repo_with_run

    plan = plan_undo(run, work_dir=repo)

    assert plan.restore == ["app.py"]
    assert plan.created == ["new_module.py"]
    assert plan.dirty == []
    preview = render_undo_preview(plan)
    assert preview[0] == "DRY RUN: Would undo 2 files from run run-1"
    assert "  new_module.py (created)" in preview

    lines = apply_undo(plan, work_dir=repo)

    assert (repo / "app.py").read_text("utf-8") == "version = 1\n"
    assert (repo / "new_module.py").exists()
    assert lines[0].startswith("Restored app.py from ")
    assert lines[1] == "Kept new_module.py: created by the run; pass --force to delete it"


@requires_git
def test_undo_with_force_deletes_created_files(repo_with_run) -> None:
    repo, run = repo_with_run

    lines = apply_undo(plan_undo(run, work_dir=repo), work_dir=repo, force=True)

    assert not (repo / "new_module.py").exists()
    assert "Deleted new_module.py (created by run run-1)" in lines


@requires_git
def test_undo_from_subdirectory_restores_tracked_file(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    package = repo / "pkg"
    package.mkdir(parents=True)
    _git(repo, "init", "-q")
    (package / "app.py").write_text("version = 1\n", encoding="utf-8")
    _git(repo, "add", "pkg/app.py")
    _git(repo, "commit", "-q", "-m", "initial")
    head = _git(repo, "rev-parse", "HEAD")

    (package / "app.py").write_text("version = 2\n", encoding="utf-8")
    run = _run(tmp_path, head_before=head, head_after=head)
    artifacts = artifacts_for(run.run_id, run.start.log_dir)
    write_files_manifest(artifacts, ["app.py"])
    write_post_run_state(artifacts, work_dir=package, files=["app.py"])

    plan = plan_undo(run, work_dir=package)

    assert plan.restore == ["app.py"]
    assert plan.created == []
    assert plan.dirty == []

    lines = apply_undo(plan, work_dir=package, force=True)

    assert lines == [f"Restored app.py from {head[:12]}"]
    assert (package / "app.py").read_text("utf-8") == "version = 1\n"


@requires_git
def test_edits_after_the_run_are_reported_dirty(repo_with_run) -> None:
    repo, run = repo_with_run
    (repo / "app.py").write_text("version = 3\n", encoding="utf-8")

    plan = plan_undo(run, work_dir=repo)

    assert plan.dirty == ["app.py"]
    assert "  app.py (modified since run)" in render_undo_preview(plan)


@requires_git
def test_dirty_check_falls_back_to_head_after_diff(repo_with_run, tmp_path: Path) -> None:
    repo, run = repo_with_run
    artifacts_for(run.run_id, run.start.log_dir).post_run_state_path.unlink()
    _git(repo, "add", "app.py", "new_module.py")
    _git(repo, "commit", "-q", "-m", "agent work")
    committed = _run(
        tmp_path,
        head_before=run.finalize.head_before,
        head_after=_git(repo, "rev-parse", "HEAD"),
    )
    (repo / "app.py").write_text("version = 3\n", encoding="utf-8")

    plan = plan_undo(committed, work_dir=repo)

    assert plan.dirty == ["app.py"]
    assert plan.created == ["new_module.py"]


@requires_git
def test_undo_requires_head_before(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")

    with pytest.raises(CallerError) as excinfo:
        plan_undo(_run(tmp_path, head_before=None), work_dir=repo)
    assert excinfo.value.code == "no_head"


def test_undo_outside_git_repo_is_refused(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr("run_agent.vcs.git_available", lambda: False)

    with pytest.raises(CallerError) as excinfo:
        plan_undo(_run(tmp_path, head_before="abc"), work_dir=tmp_path)
    assert excinfo.value.code == "no_git"


def _params(**overrides) -> RunParams:
    values = {
        "run_id": "run-1",
        "model": "opus",
        "harness": "claude",
        "variant": "low",
        "prompt": "Fix the flaky test",
        "cwd": "/w",
        "session_id": "custom-session",
        "command": ["claude", "-p"],
        "prompt_delivery": "stdin",
        "skills": ["tdd"],
        "labels": {"task-type": "bugfix"},
        "tools": ["Read"],
        "detail": "brief",
    }
    values.update(overrides)
    return RunParams(**values)


def test_retry_request_reuses_invocation_with_overrides(tmp_path: Path) -> None:
    run = _run(tmp_path, head_before=None)

    request = build_retry_request(run, _params(explicit_session=True), model="sonnet")

    assert request.model == "sonnet"
    assert request.variant == "low"
    assert request.prompt == "Fix the flaky test"
    assert request.skills == ("tdd",)
    assert request.labels == {"task-type": "bugfix"}
    assert request.tools == ("Read",)
    assert request.detail == ReportDetail.BRIEF
    assert request.session_id == "custom-session"
    assert request.retries == "run-1"
    assert request.fork is None


def test_retry_request_gets_fresh_session_and_keeps_continuation_mode(tmp_path: Path) -> None:
    run = _run(tmp_path, head_before=None)
    prior = _run(tmp_path, head_before=None)

    request = build_retry_request(
        run,
        _params(continuation_mode="in-place", continues="run-0"),
        prompt="Try again",
        continue_from=prior,
    )

    assert request.session_id is None
    assert request.prompt == "Try again"
    assert request.fork is False
    assert request.continue_from is prior


def test_original_prompt_falls_back_to_input_file(tmp_path: Path) -> None:
    run = _run(tmp_path, head_before=None)
    artifacts = artifacts_for(run.run_id, run.start.log_dir)
    artifacts.input_path.write_text("Saved request", encoding="utf-8")
    write_params(artifacts.params_path, _params(prompt=""))

    assert original_prompt(run, _params(prompt="")) == "Saved request"
