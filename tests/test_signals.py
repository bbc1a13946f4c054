from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from run_agent import launcher
from run_agent.config import Settings
from run_agent.index import RunIndex
from run_agent.main import run_agent
from run_agent.models import FailureReason, FinalizeRecord, StartRecord

pytestmark = [
    allure.epic("Run Launch"),
    allure.feature("Interruption Handling"),
    pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only"),
]


def _wait_for_harness(state_dir: Path, *, timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        for stderr_log in state_dir.glob("runs/agent-runs/*/stderr.log"):
            if "echo-agent:" in stderr_log.read_text("utf-8", errors="replace"):
                return
        time.sleep(0.1)
    raise AssertionError("harness never started")


@pytest.mark.parametrize(
    ("signum", "exit_code"),
    [(signal.SIGTERM, 143), (signal.SIGINT, 130)],
)
def test_signal_stops_harness_and_finalizes_run(
    workspace: Path,
    tmp_path: Path,
    monkeypatch,
    signum,
    exit_code,
) -> None:
    monkeypatch.setenv("RUN_AGENT_ECHO_MODE", "sleep")
    monkeypatch.setenv("RUN_AGENT_GRACE_SECONDS", "2")
    state_dir = tmp_path / "state"

    process = subprocess.Popen(
        [sys.executable, "-m", "run_agent.main", "run", "-m", "opus", "-p", "Wait"],
        cwd=workspace,
        env=dict(os.environ),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        _wait_for_harness(state_dir)
        process.send_signal(signum)
        stdout, _ = process.communicate(timeout=30)
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()

    assert process.returncode == exit_code
    assert "# Run Report (auto-generated)" in stdout
    records = RunIndex(Settings.from_env(work_dir=workspace).context()).read_records()
    finalize = records[-1]
    assert isinstance(finalize, FinalizeRecord)
    assert finalize.exit_code == exit_code
    assert finalize.failure_reason == FailureReason.INTERRUPTED


@pytest.mark.parametrize(
    ("signum", "exit_code"),
    [(signal.SIGTERM, 143), (signal.SIGINT, 130)],
)
def test_signal_after_harness_exit_still_finalizes(
    workspace: Path,
    monkeypatch,
    signum,
    exit_code,
) -> None:
    original_extract = launcher.extract_files_touched

    def _extract_then_signal(*args, **kwargs):
        os.kill(os.getpid(), signum)
        return original_extract(*args, **kwargs)

    monkeypatch.setattr(launcher, "extract_files_touched", _extract_then_signal)
    handler_before = signal.getsignal(signum)

    result = CliRunner().invoke(run_agent, ["run", "-m", "opus", "-p", "Finish up"])

    assert result.exit_code == exit_code, result.output
    records = RunIndex(Settings.from_env(work_dir=workspace).context()).read_records()
    assert [type(record) for record in records] == [StartRecord, FinalizeRecord]
    finalize = records[-1]
    assert finalize.exit_code == exit_code
    assert finalize.failure_reason == FailureReason.INTERRUPTED
    assert signal.getsignal(signum) == handler_before
