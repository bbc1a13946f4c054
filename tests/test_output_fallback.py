from __future__ import annotations

import json
from pathlib import Path

import allure

from run_agent.harness import get_adapter
from run_agent.harness.base import read_events
from run_agent.output_fallback import diagnostic_report, synthesize_report
from run_agent.usage import extract_usage

pytestmark = [
    allure.epic("Run Launch"),
    allure.feature("Report Fallback and Usage"),
]


def _write_stream(path: Path, events: list[dict]) -> None:
    path.write_text(
        "".join(json.dumps(event) + "\n" for event in events) + "not json\n",
        encoding="utf-8",
    )


def test_synthesized_report_uses_last_assistant_message(tmp_path: Path) -> None:
    output = tmp_path / "output.jsonl"
    _write_stream(
        output,
        [
            {"type": "system", "subtype": "init", "session_id": "s-1"},
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "First draft"}]},
            },
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "Final answer   \nDone"}]},
            },
        ],
    )

    report = synthesize_report(
        adapter=get_adapter("claude"),
        events=read_events(output),
        exit_code=0,
        output_path=output,
        stderr_path=tmp_path / "stderr.log",
    )

    assert report == "Final answer\nDone\n"


def test_diagnostic_report_names_likely_cause_and_stderr_tail(tmp_path: Path) -> None:
    output = tmp_path / "output.jsonl"
    output.write_text("line one\nline two\n", encoding="utf-8")
    stderr = tmp_path / "stderr.log"
    stderr.write_text("boot\nretrying\n\nwarn\nError: rate limit reached\n", encoding="utf-8")

    report = diagnostic_report(exit_code=1, output_path=output, stderr_path=stderr)

    assert report.startswith("# Run Report (auto-generated)\n")
    assert "**Status**: failed (exit 1)" in report
    assert "**Output**: 2 lines, 18 bytes" in report
    assert "**Likely cause**: rate_limited (matched 'rate limit')" in report
    assert "```\nretrying\nwarn\nError: rate limit reached\n```\n" in report


def test_diagnostic_report_for_success_skips_cause(tmp_path: Path) -> None:
    stderr = tmp_path / "stderr.log"
    stderr.write_text("quota warning\n", encoding="utf-8")

    report = diagnostic_report(
        exit_code=0,
        output_path=tmp_path / "missing.jsonl",
        stderr_path=stderr,
        headline="No assistant message captured",
    )

    assert "No assistant message captured\n" in report
    assert "**Status**: completed" in report
    assert "**Output**: 0 lines, 0 bytes" in report
    assert "Likely cause" not in report


def test_usage_prefers_stream_then_stderr(tmp_path: Path) -> None:
    events = [
        {"type": "turn.completed", "usage": {"input_tokens": 100, "output_tokens": 7}},
        {"type": "turn.completed", "usage": {"input_tokens": 50, "output_tokens": 3}},
    ]
    codex = get_adapter("codex")

    from_stream = extract_usage(adapter=codex, events=events, stderr="input_tokens: 1")
    from_stderr = extract_usage(
        adapter=codex,
        events=[],
        stderr="usage: input_tokens=1,234 completion tokens: 56",
    )
    missing = extract_usage(adapter=codex, events=[], stderr="")

    assert (from_stream.input_tokens, from_stream.output_tokens) == (150, 10)
    assert (from_stderr.input_tokens, from_stderr.output_tokens) == (1234, 56)
    assert (missing.input_tokens, missing.output_tokens) == (None, None)


def test_session_ids_per_harness() -> None:
    claude = [
        {"type": "system", "subtype": "hook_started", "session_id": "hook"},
        {"type": "system", "subtype": "init", "session_id": "claude-sess"},
    ]
    codex = [{"type": "thread.started", "thread_id": "thread-9"}]
    opencode = [{"type": "step_start", "sessionID": "ses_abc"}]

    assert get_adapter("claude").extract_session_id(claude) == "claude-sess"
    assert get_adapter("codex").extract_session_id(codex) == "thread-9"
    assert get_adapter("opencode").extract_session_id(opencode) == "ses_abc"


def test_error_events_per_harness() -> None:
    claude = [{"type": "result", "is_error": True, "result": "Credit balance is too low"}]
    codex = [{"type": "turn.failed", "error": {"message": "stream disconnected"}}]
    opencode = [{"type": "error", "error": {"name": "APIError", "data": {"message": "denied"}}}]

    assert get_adapter("claude").find_error_event(claude) == "Credit balance is too low"
    assert get_adapter("codex").find_error_event(codex) == "stream disconnected"
    assert get_adapter("opencode").find_error_event(opencode) == "denied"
    assert get_adapter("claude").find_error_event([{"type": "result", "result": "ok"}]) is None
