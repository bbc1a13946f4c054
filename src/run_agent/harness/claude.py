"""Claude Code CLI adapter."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from run_agent.harness.base import CommandRequest, HarnessCommand, as_int, tool_key
from run_agent.models import PromptDelivery

_CLAUDE_TOOL_NAMES = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "multiedit": "MultiEdit",
    "bash": "Bash",
    "glob": "Glob",
    "grep": "Grep",
    "ls": "LS",
    "websearch": "WebSearch",
    "webfetch": "WebFetch",
    "task": "Task",
    "todowrite": "TodoWrite",
    "notebookedit": "NotebookEdit",
}

_EFFORT_SPELLING = {"xhigh": "max"}


def normalize_claude_tool(token: str) -> str:
    """Map loose tool spellings (`websearch`, `read`) to Claude's names."""

    stripped = token.strip()
    base, separator, rest = stripped.partition("(")
    name = _CLAUDE_TOOL_NAMES.get(tool_key(base), base.strip())
    return f"{name}{separator}{rest}"


class ClaudeAdapter:
    """`claude -p` with stream-json output; prompt on stdin."""

    name = "claude"
    executable = "claude"
    prompt_delivery = PromptDelivery.STDIN
    supports_continuation = True
    always_in_place = False

    def build_command(self, request: CommandRequest) -> HarnessCommand:
        effort = _EFFORT_SPELLING.get(request.variant, request.variant)
        argv = [
            self.executable,
            "-p",
            "--model",
            request.model,
            "--effort",
            effort,
            "--verbose",
            "--output-format",
            "stream-json",
        ]
        if request.tools:
            normalized = ",".join(normalize_claude_tool(tool) for tool in request.tools)
            argv.extend(["--allowedTools", normalized])
        argv.append("--dangerously-skip-permissions")
        if request.agent:
            argv.extend(["--agent", request.agent])
        if request.resume_session_id:
            argv.extend(["--resume", request.resume_session_id])
            if request.fork:
                argv.append("--fork-session")
        # Nested invocations refuse to start while this marker is set.
        return HarnessCommand(
            argv=argv,
            prompt_delivery=self.prompt_delivery,
            env_overrides={"CLAUDECODE": ""},
        )

    def infer_sandbox(self, tools: Sequence[str] | None) -> str | None:
        return None

    def extract_session_id(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in events:
            if event.get("type") == "result" and isinstance(event.get("session_id"), str):
                return event["session_id"]
        for event in events:
            if event.get("type") != "system":
                continue
            subtype = str(event.get("subtype") or "")
            if subtype.startswith("hook"):
                continue
            if isinstance(event.get("session_id"), str):
                return event["session_id"]
        return None

    def find_error_event(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in events:
            if event.get("type") == "result" and event.get("is_error") is True:
                result = event.get("result")
                if isinstance(result, str) and result.strip():
                    return result.strip()
                return str(event.get("subtype") or "error_during_execution")
        return None

    def last_message(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in reversed(events):
            if event.get("type") == "result":
                result = event.get("result")
                if isinstance(result, str) and result.strip():
                    return result.strip()
        for event in reversed(events):
            if event.get("type") != "assistant":
                continue
            text = _message_text(event.get("message"))
            if text:
                return text
        return None

    def extract_token_usage(
        self,
        events: Sequence[dict[str, Any]],
    ) -> tuple[int | None, int | None]:
        for event in reversed(events):
            if event.get("type") != "result":
                continue
            usage = event.get("usage")
            if isinstance(usage, dict):
                return as_int(usage.get("input_tokens")), as_int(usage.get("output_tokens"))
        return None, None


def _message_text(message: Any) -> str | None:
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content.strip() or None
    if not isinstance(content, list):
        return None
    parts = [
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    joined = "\n".join(parts).strip()
    return joined or None
