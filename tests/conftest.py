"""Shared test fixtures."""

from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

HARNESS_NAMES = ("claude", "codex", "opencode")
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture()
def echo_harnesses(tmp_path, monkeypatch):
    """Put fake claude/codex/opencode executables backed by the echo agent first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name in HARNESS_NAMES:
        script = bin_dir / name
        script.write_text(
            "#!/bin/sh\n"
            f'exec "{sys.executable}" -m run_agent.harness.echo_agent --harness {name} "$@"\n',
            encoding="utf-8",
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    python_path = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{SRC_DIR}{os.pathsep}{python_path}" if python_path else str(SRC_DIR),
    )
    return bin_dir


@pytest.fixture()
def workspace(tmp_path, monkeypatch, echo_harnesses):
    """Isolated working directory and state root with echo harnesses available."""
    for name in list(os.environ):
        if name.startswith("RUN_AGENT_"):
            monkeypatch.delenv(name, raising=False)
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    monkeypatch.chdir(work_dir)
    monkeypatch.setenv("RUN_AGENT_STATE_DIR", str(tmp_path / "state"))
    return work_dir
