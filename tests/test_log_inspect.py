from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from run_agent.errors import CallerError
from run_agent.harness.base import read_events
from run_agent.log_inspect import (
    assistant_messages,
    error_messages,
    paginate_messages,
    search_log,
    stderr_errors,
    summarize_log,
    tool_usage,
)
from run_agent.metrics import build_run_stats, render_stats_lines
from run_agent.models import DerivedRun, FailureReason, FinalizeRecord, RunStatus, StartRecord

pytestmark = [
    allure.epic("Provenance"),
    allure.feature("Log Inspection and Stats"),
]

CLAUDE_EVENTS = [
    {"type": "system", "subtype": "init", "session_id": "s-1"},
    {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Looking around"},
                {"type": "tool_use", "name": "Read", "input": {"file_path": "a.py"}},
            ],
        },
    },
    {
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "name": "Read", "input": {}}]},
    },
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "All done"}]}},
    {"type": "result", "is_error": True, "result": "Budget exceeded"},
]


def _write(path: Path, events: list[dict]) -> Path:
    path.write_text("".join(json.dumps(event) + "\n" for event in events), encoding="utf-8")
    return path


def test_summary_of_claude_stream(tmp_path: Path) -> None:
    summary = summarize_log(_write(tmp_path / "output.jsonl", CLAUDE_EVENTS))

    assert summary.to_dict() == {
        "format": "jsonl",
        "harness": "claude",
        "lines": 5,
        "events": 5,
        "errors": 1,
        "event_types": {"assistant": 3, "system": 1, "result": 1},
    }


def test_summary_of_plain_text_output(tmp_path: Path) -> None:
    output = tmp_path / "output.jsonl"
    output.write_text("hello\nworld\n", encoding="utf-8")

    summary = summarize_log(output)

    assert summary.output_format == "text"
    assert summary.harness is None
    assert summary.lines == 2


def test_tool_usage_across_harnesses() -> None:
    events = [
        *CLAUDE_EVENTS,
        {"type": "item.completed", "item": {"type": "command_execution", "command": "ls"}},
        {"type": "item.completed", "item": {"type": "agent_message", "text": "hi"}},
        {"type": "tool_use", "part": {"tool": "bash"}},
    ]

    assert tool_usage(events) == {"Read": 2, "command_execution": 1, "bash": 1}


def test_errors_and_messages(tmp_path: Path) -> None:
    events = [
        *CLAUDE_EVENTS,
        {"type": "turn.failed", "error": {"message": "stream disconnected"}},
        {"type": "text", "part": {"text": " opencode says hi "}},
    ]
    stderr = tmp_path / "stderr.log"
    stderr.write_text("starting\nFATAL: boom\nTraceback (most recent call last):\n", "utf-8")

    assert error_messages(events) == ["Budget exceeded", "stream disconnected"]
    assert assistant_messages(events) == ["Looking around", "All done", "opencode says hi"]
    assert stderr_errors(stderr) == ["FATAL: boom", "Traceback (most recent call last):"]


def test_search_with_context(tmp_path: Path) -> None:
    output = _write(tmp_path / "output.jsonl", CLAUDE_EVENTS)

    matches = search_log(output, "all DONE", context=1)

    assert len(matches) == 1
    assert matches[0].line_number == 4
    assert len(matches[0].context) == 3

    with pytest.raises(CallerError) as excinfo:
        search_log(output, "([")
    assert excinfo.value.code == "bad_pattern"


def test_message_pagination_uses_offset_cursor(tmp_path: Path) -> None:
    messages = assistant_messages(read_events(_write(tmp_path / "o.jsonl", CLAUDE_EVENTS)))

    first = paginate_messages(messages, limit=1, cursor=None)
    second = paginate_messages(messages, limit=1, cursor=first.next_cursor)

    assert first.messages == ["Looking around"]
    assert first.has_next is True
    assert second.messages == ["All done"]
    assert second.has_next is False
    with pytest.raises(CallerError):
        paginate_messages(messages, limit=1, cursor="abc")


def _run(run_id: str, model: str, exit_code: int | None, duration: float = 0.0) -> DerivedRun:
    start = StartRecord(
        run_id=run_id,
        created_at_utc="2025-01-01T00:00:00Z",
        cwd="/w",
        session_id="s",
        model=model,
        harness="claude",
        log_dir="/l",
    )
    if exit_code is None:
        return DerivedRun(start=start)
    finalize = FinalizeRecord(
        run_id=run_id,
        status=RunStatus.COMPLETED if exit_code == 0 else RunStatus.FAILED,
        finished_at_utc="2025-01-01T00:01:00Z",
        duration_seconds=duration,
        exit_code=exit_code,
        failure_reason=None if exit_code == 0 else FailureReason.TIMEOUT,
        output_log="",
        report_path="",
    )
    return DerivedRun(start=start, finalize=finalize)


def test_run_stats() -> None:
    stats = build_run_stats(
        [
            _run("a", "opus", 0, 10.0),
            _run("b", "opus", 3, 5.5),
            _run("c", "gpt-5", None),
        ],
    )

    assert stats.to_dict() == {
        "total_runs": 3,
        "completed": 1,
        "failed": 1,
        "running": 1,
        "fail_reasons": {"timeout": 1},
        "models": {"opus": 2, "gpt-5": 1},
        "total_duration_seconds": 15.5,
        "avg_duration_seconds": 7,
    }
    lines = render_stats_lines(stats, session_id="s")
    assert lines[:2] == ["Run stats (session s):", "total_runs: 3"]
    assert "  timeout: 1" in lines


def test_empty_stats() -> None:
    stats = build_run_stats([])

    assert stats.total_runs == 0
    assert stats.avg_duration_seconds == 0
    assert render_stats_lines(stats)[0] == "Run stats:"
