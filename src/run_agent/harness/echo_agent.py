"""Deterministic stand-in for harness CLIs, used by integration tests.

Invoke as `python -m run_agent.harness.echo_agent --harness <name> <harness argv...>`.
Behaviour is selected with environment variables:

- `RUN_AGENT_ECHO_MODE`: `ok` (default), `silent`, `error`, `fail`, `sleep`, `noreport`.
- `RUN_AGENT_ECHO_EXIT`: exit code used by `fail` mode.
- `RUN_AGENT_ECHO_SLEEP`: seconds to sleep in `sleep` mode.
- `RUN_AGENT_ECHO_WRITE`: relative path the agent appends a line to and reports as touched.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import time
import uuid
from pathlib import Path
from typing import Any

_REPORT_PATH = re.compile(r"write a report of your work to: `([^`]+)`")


def main(argv: list[str] | None = None) -> int:
    """Emit harness-shaped JSONL for the prompt received."""

    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--harness", required=True, choices=("claude", "codex", "opencode"))
    args, harness_argv = parser.parse_known_args(argv)

    prompt = harness_argv[-1] if args.harness == "opencode" and harness_argv else sys.stdin.read()
    mode = os.getenv("RUN_AGENT_ECHO_MODE", "ok").strip().lower()
    session_id = _session_id(args.harness, harness_argv)
    sys.stderr.write(f"echo-agent: harness={args.harness} mode={mode}\n")
    sys.stderr.flush()

    if mode == "sleep":
        time.sleep(float(os.getenv("RUN_AGENT_ECHO_SLEEP", "30")))
    if mode == "silent":
        return 0
    if mode == "fail":
        return int(os.getenv("RUN_AGENT_ECHO_EXIT", "1"))

    first_line = next((line.strip() for line in prompt.splitlines() if line.strip()), "")
    answer = f"echo: {first_line}"
    touched = _write_touched_file()
    for event in _events(args.harness, session_id, answer, touched, len(prompt.split())):
        sys.stdout.write(json.dumps(event) + "\n")
    if mode == "error":
        sys.stdout.write(json.dumps(_error_event(args.harness, session_id)) + "\n")
    sys.stdout.flush()

    if mode not in {"noreport", "error"}:
        match = _REPORT_PATH.search(prompt)
        if match:
            report_path = Path(match.group(1))
            report_path.parent.mkdir(parents=True, exist_ok=True)
            report_path.write_text(f"# Echo report\n\n{answer}\n", "utf-8")
    return 0


def _session_id(harness: str, argv: list[str]) -> str:
    resume_id: str | None = None
    fork = False
    if harness == "claude":
        resume_id = _flag_value(argv, "--resume")
        fork = "--fork-session" in argv
    elif harness == "codex":
        if len(argv) >= 3 and argv[0] == "exec" and argv[1] == "resume":
            resume_id = argv[2]
    else:
        resume_id = _flag_value(argv, "--session")
        fork = "--fork" in argv
    if resume_id and not fork:
        return resume_id
    return f"sess-{uuid.uuid4().hex[:12]}"


def _flag_value(argv: list[str], flag: str) -> str | None:
    if flag in argv:
        index = argv.index(flag)
        if index + 1 < len(argv):
            return argv[index + 1]
    return None


def _write_touched_file() -> str | None:
    relative = os.getenv("RUN_AGENT_ECHO_WRITE", "").strip()
    if not relative:
        return None
    target = Path.cwd() / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write("edited by echo agent\n")
    return relative


def _events(
    harness: str,
    session_id: str,
    answer: str,
    touched: str | None,
    prompt_words: int,
) -> list[dict[str, Any]]:
    if harness == "claude":
        events: list[dict[str, Any]] = [
            {"type": "system", "subtype": "init", "session_id": session_id},
        ]
        if touched:
            events.append(
                {
                    "type": "assistant",
                    "session_id": session_id,
                    "message": {
                        "content": [
                            {"type": "tool_use", "name": "Write", "input": {"file_path": touched}},
                        ],
                    },
                },
            )
        events.append(
            {
                "type": "assistant",
                "session_id": session_id,
                "message": {"content": [{"type": "text", "text": answer}]},
            },
        )
        events.append(
            {
                "type": "result",
                "subtype": "success",
                "is_error": False,
                "result": answer,
                "session_id": session_id,
                "usage": {"input_tokens": prompt_words, "output_tokens": 5},
            },
        )
        return events

    if harness == "codex":
        events = [{"type": "thread.started", "thread_id": session_id}, {"type": "turn.started"}]
        if touched:
            events.append(
                {
                    "type": "item.completed",
                    "item": {
                        "id": "item_0",
                        "type": "file_change",
                        "changes": [{"path": str(Path.cwd() / touched), "kind": "update"}],
                    },
                },
            )
        events.append(
            {
                "type": "item.completed",
                "item": {"id": "item_1", "type": "agent_message", "text": answer},
            },
        )
        events.append(
            {
                "type": "turn.completed",
                "usage": {"input_tokens": prompt_words, "output_tokens": 5},
            },
        )
        return events

    events = [{"type": "step_start", "sessionID": session_id, "part": {"type": "step-start"}}]
    if touched:
        events.append(
            {
                "type": "tool_use",
                "sessionID": session_id,
                "part": {"tool": "write", "state": {"input": {"filePath": touched}}},
            },
        )
    events.append(
        {"type": "text", "sessionID": session_id, "part": {"type": "text", "text": answer}},
    )
    events.append(
        {
            "type": "step_finish",
            "sessionID": session_id,
            "part": {"tokens": {"input": prompt_words, "output": 5}},
        },
    )
    return events


def _error_event(harness: str, session_id: str) -> dict[str, Any]:
    if harness == "claude":
        return {
            "type": "result",
            "subtype": "error_during_execution",
            "is_error": True,
            "result": "echo agent simulated failure",
            "session_id": session_id,
        }
    if harness == "codex":
        return {"type": "turn.failed", "error": {"message": "echo agent simulated failure"}}
    return {
        "type": "error",
        "sessionID": session_id,
        "error": {"name": "UnknownError", "data": {"message": "echo agent simulated failure"}},
    }


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
