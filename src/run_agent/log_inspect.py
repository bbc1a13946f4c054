"""Read-only views over a run's raw output and diagnostic logs."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from run_agent.errors import CallerError
from run_agent.harness.base import read_events


@dataclass(slots=True)
class LogSummary:
    """Shape of one output log."""

    output_format: str
    harness: str | None
    lines: int
    events: int
    errors: int
    event_types: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "format": self.output_format,
            "harness": self.harness,
            "lines": self.lines,
            "events": self.events,
            "errors": self.errors,
            "event_types": dict(self.event_types),
        }


@dataclass(slots=True)
class SearchMatch:
    line_number: int
    line: str
    context: list[str]


@dataclass(slots=True)
class MessagePage:
    """Slice of assistant messages; `next_cursor` is an offset."""

    messages: list[str]
    total: int
    next_cursor: str | None

    @property
    def has_next(self) -> bool:
        return self.next_cursor is not None


def detect_harness(events: Sequence[dict[str, Any]]) -> str | None:
    for event in events:
        if "thread_id" in event or isinstance(event.get("item"), dict):
            return "codex"
        if "sessionID" in event or isinstance(event.get("part"), dict):
            return "opencode"
        if event.get("type") in {"system", "assistant", "result", "user"}:
            return "claude"
    return None


def summarize_log(output_path: Path) -> LogSummary:
    text = _read_text(output_path)
    events = read_events(output_path)
    tally = Counter(str(event.get("type", "unknown")) for event in events)
    return LogSummary(
        output_format="jsonl" if events else "text",
        harness=detect_harness(events),
        lines=len(text.splitlines()),
        events=len(events),
        errors=len(error_messages(events)),
        event_types=dict(tally.most_common()),
    )


def tool_usage(events: Sequence[dict[str, Any]]) -> Counter[str]:
    """Tally of tool invocations across claude, codex and opencode streams."""

    tally: Counter[str] = Counter()
    for event in events:
        message = event.get("message")
        if event.get("type") == "assistant" and isinstance(message, dict):
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "tool_use":
                    tally[str(block.get("name") or "unknown")] += 1
            continue
        item = event.get("item")
        if event.get("type") == "item.completed" and isinstance(item, dict):
            item_type = str(item.get("type") or "")
            if item_type not in {"agent_message", "reasoning", "message"}:
                tally[str(item.get("tool") or item_type or "unknown")] += 1
            continue
        part = event.get("part")
        if isinstance(part, dict) and part.get("tool"):
            tally[str(part["tool"])] += 1
    return tally


def error_messages(events: Sequence[dict[str, Any]]) -> list[str]:
    messages: list[str] = []
    for event in events:
        event_type = event.get("type")
        error = event.get("error")
        if event_type == "result" and event.get("is_error"):
            messages.append(str(event.get("result") or event.get("subtype") or "error"))
        elif event_type in {"error", "turn.failed"}:
            messages.append(_error_text(error) or str(event.get("message") or event_type))
        elif isinstance(error, dict | str) and error:
            messages.append(_error_text(error) or "error")
    return messages


def _error_text(error: Any) -> str | None:
    if isinstance(error, str):
        return error
    if not isinstance(error, dict):
        return None
    data = error.get("data")
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    if error.get("message"):
        return str(error["message"])
    return None


def stderr_errors(stderr_path: Path) -> list[str]:
    return [
        line
        for line in _read_text(stderr_path).splitlines()
        if re.search(r"error|fatal|exception|traceback", line, re.IGNORECASE)
    ]


def search_log(path: Path, pattern: str, *, context: int = 1) -> list[SearchMatch]:
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error as error:
        raise CallerError(
            f"Invalid search pattern {pattern!r}: {error}",
            code="bad_pattern",
        ) from error
    lines = _read_text(path).splitlines()
    matches: list[SearchMatch] = []
    for index, line in enumerate(lines):
        if compiled.search(line):
            start = max(0, index - context)
            matches.append(
                SearchMatch(
                    line_number=index + 1,
                    line=line,
                    context=lines[start : index + context + 1],
                ),
            )
    return matches


def assistant_messages(events: Sequence[dict[str, Any]]) -> list[str]:
    messages: list[str] = []
    for event in events:
        message = event.get("message")
        if event.get("type") == "assistant" and isinstance(message, dict):
            texts = [
                str(block.get("text") or "")
                for block in message.get("content") or []
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            joined = "\n".join(text for text in texts if text).strip()
            if joined:
                messages.append(joined)
            continue
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message" and item.get("text"):
            messages.append(str(item["text"]).strip())
            continue
        part = event.get("part")
        if event.get("type") == "text" and isinstance(part, dict) and part.get("text"):
            messages.append(str(part["text"]).strip())
    return messages


def paginate_messages(messages: list[str], *, limit: int, cursor: str | None) -> MessagePage:
    offset = 0
    if cursor:
        if not cursor.isdigit():
            raise CallerError(f"Invalid messages cursor: {cursor}", code="bad_cursor")
        offset = int(cursor)
    page = messages[offset : offset + limit]
    next_offset = offset + len(page)
    return MessagePage(
        messages=page,
        total=len(messages),
        next_cursor=str(next_offset) if next_offset < len(messages) and page else None,
    )


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return ""
