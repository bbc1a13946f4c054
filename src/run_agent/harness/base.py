"""Harness adapter contracts."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from run_agent.models import PromptDelivery

NETWORK_TOOLS = frozenset({"websearch", "webfetch"})
WRITE_TOOLS = frozenset({"write", "edit", "multiedit", "bash", "notebookedit"})


@dataclass(slots=True)
class CommandRequest:
    """Harness-neutral description of one invocation."""

    model: str
    variant: str
    prompt: str
    agent: str | None = None
    tools: tuple[str, ...] | None = None
    sandbox: str | None = None
    resume_session_id: str | None = None
    fork: bool = False


@dataclass(slots=True)
class HarnessCommand:
    """Argument vector plus how the prompt reaches the process."""

    argv: list[str]
    prompt_delivery: PromptDelivery
    env_overrides: dict[str, str] = field(default_factory=dict)

    @property
    def executable(self) -> str:
        return self.argv[0]


class HarnessAdapter(Protocol):
    """Per-harness command construction and output-stream parsing."""

    name: str
    executable: str
    prompt_delivery: PromptDelivery
    supports_continuation: bool
    always_in_place: bool

    def build_command(self, request: CommandRequest) -> HarnessCommand:
        """Translate a neutral request into this harness's argument vector."""

    def infer_sandbox(self, tools: Sequence[str] | None) -> str | None:
        """Return the sandbox policy implied by a tool list, if the harness has one."""

    def extract_session_id(self, events: Sequence[dict[str, Any]]) -> str | None:
        """Return the harness-native conversation id recorded in the stream."""

    def find_error_event(self, events: Sequence[dict[str, Any]]) -> str | None:
        """Return the message of an in-stream error event, if any."""

    def last_message(self, events: Sequence[dict[str, Any]]) -> str | None:
        """Return the final assistant message text."""

    def extract_token_usage(
        self,
        events: Sequence[dict[str, Any]],
    ) -> tuple[int | None, int | None]:
        """Return (input_tokens, output_tokens) reported by the stream."""


def read_events(path: Path) -> list[dict[str, Any]]:
    """Parse JSON objects from a harness output stream, skipping other lines."""

    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return []
    events: list[dict[str, Any]] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            events.append(payload)
    if events:
        return events
    # A single pretty-printed JSON document.
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return []
    return [payload] if isinstance(payload, dict) else []


def tool_key(tool: str) -> str:
    base = tool.strip().split("(", 1)[0]
    return base.replace("_", "").replace("-", "").lower()


def split_tools(raw: str | Sequence[str] | None) -> tuple[str, ...] | None:
    """Split a comma-separated tool list; None means no list was requested."""

    if raw is None:
        return None
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    tokens = tuple(item.strip() for item in items if item.strip())
    return tokens


def as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None
