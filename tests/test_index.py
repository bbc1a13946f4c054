from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import allure

from run_agent.config import RunContext, Settings
from run_agent.contracts import decode_record, encode_record
from run_agent.index import RunIndex, directory_lock, index_lock, read_index_lines
from run_agent.models import FailureReason, FinalizeRecord, RunStatus, StartRecord

pytestmark = [
    allure.epic("Provenance"),
    allure.feature("Run Index"),
]


def _context(tmp_path: Path, *, lock_timeout: float = 5.0) -> RunContext:
    return RunContext(
        work_dir=tmp_path,
        state_dir=tmp_path / "state",
        lock_timeout_seconds=lock_timeout,
    )


def _start(run_id: str) -> StartRecord:
    return StartRecord(
        run_id=run_id,
        created_at_utc="2025-01-01T00:00:00.000000Z",
        cwd="/work",
        session_id=run_id,
        model="opus",
        harness="claude",
        log_dir=f"/state/runs/agent-runs/{run_id}",
        labels={"task-type": "coding"},
    )


def test_records_round_trip_through_one_line() -> None:
    finalize = FinalizeRecord(
        run_id="r1",
        status=RunStatus.FAILED,
        finished_at_utc="2025-01-01T00:01:00.000000Z",
        duration_seconds=60.5,
        exit_code=3,
        failure_reason=FailureReason.TIMEOUT,
        output_log="/x/output.jsonl",
        report_path="/x/report.md",
    )

    line = encode_record(finalize)

    assert "\n" not in line
    assert json.loads(line)["failure_reason"] == "timeout"
    assert decode_record(line) == finalize
    assert decode_record(encode_record(_start("r2"))) == _start("r2")


def test_append_and_read_skip_malformed_lines(tmp_path: Path, caplog) -> None:
    context = _context(tmp_path)
    index = RunIndex(context)
    index.append(_start("r1"))
    with context.index_path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")
        handle.write('{"run_id": "r9", "status": "paused"}\n')
    index.append(_start("r2"))

    with caplog.at_level(logging.WARNING, logger="run_agent.index"):
        records = index.read_records()

    assert [record.run_id for record in records] == ["r1", "r2"]
    assert "Skipping malformed index line" in caplog.text
    lines = read_index_lines(context.index_path)
    assert [line.record is None for line in lines] == [False, True, True, False]


def test_read_records_without_index_is_empty(tmp_path: Path) -> None:
    assert RunIndex(_context(tmp_path)).read_records(include_archive=True) == []


def test_concurrent_appends_never_interleave(tmp_path: Path) -> None:
    index = RunIndex(_context(tmp_path))

    def _append(worker: int) -> None:
        for number in range(25):
            index.append(_start(f"w{worker}-{number}"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_append, range(8)))

    lines = read_index_lines(_context(tmp_path).index_path)
    assert len(lines) == 200
    assert all(line.record is not None for line in lines)
    assert len({line.record.run_id for line in lines if line.record}) == 200


def test_parallel_cli_runs_write_complete_pairs(workspace: Path) -> None:
    runs = 6
    processes = [
        subprocess.Popen(
            [sys.executable, "-m", "run_agent.main", "run", "-m", "opus", "-p", f"Job {number}"],
            cwd=workspace,
            env=dict(os.environ),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        for number in range(runs)
    ]
    for process in processes:
        assert process.wait(timeout=120) == 0

    index_path = Settings.from_env(work_dir=workspace).context().index_path
    records = [decode_record(line) for line in index_path.read_text("utf-8").splitlines()]
    starts = {record.run_id for record in records if isinstance(record, StartRecord)}
    finalized = {record.run_id for record in records if isinstance(record, FinalizeRecord)}
    assert len(records) == runs * 2
    assert len(starts) == runs
    assert finalized == starts


def test_directory_lock_is_exclusive_and_released(tmp_path: Path) -> None:
    context = _context(tmp_path, lock_timeout=0.2)
    context.index_dir.mkdir(parents=True)

    with directory_lock(context) as locked:
        assert locked is True
        assert context.lock_dir_path.is_dir()
        with directory_lock(context) as nested:
            assert nested is False

    assert not context.lock_dir_path.exists()


def test_directory_lock_timeout_proceeds_unlocked(tmp_path: Path, caplog) -> None:
    context = _context(tmp_path, lock_timeout=0.1)
    context.lock_dir_path.mkdir(parents=True)

    with caplog.at_level(logging.WARNING, logger="run_agent.index"):
        with directory_lock(context) as locked:
            assert locked is False

    assert "proceeding unlocked" in caplog.text
    assert context.lock_dir_path.is_dir()


def test_index_lock_timeout_logs_and_still_appends(tmp_path: Path, caplog) -> None:
    context = _context(tmp_path, lock_timeout=0.2)
    index = RunIndex(context)

    with index_lock(context) as held:
        assert held is True
        with caplog.at_level(logging.WARNING, logger="run_agent.index"):
            index.append(_start("late"))

    assert "proceeding unlocked" in caplog.text
    assert [record.run_id for record in index.read_records()] == ["late"]
