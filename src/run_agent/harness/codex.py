"""Codex CLI adapter."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from run_agent.harness.base import (
    NETWORK_TOOLS,
    WRITE_TOOLS,
    CommandRequest,
    HarnessCommand,
    as_int,
    tool_key,
)
from run_agent.models import PromptDelivery

SANDBOX_READ_ONLY = "read-only"
SANDBOX_WORKSPACE_WRITE = "workspace-write"
SANDBOX_FULL_ACCESS = "danger-full-access"
SANDBOX_POLICIES = (SANDBOX_READ_ONLY, SANDBOX_WORKSPACE_WRITE, SANDBOX_FULL_ACCESS)

_EFFORT_SPELLING = {"max": "xhigh"}


class CodexAdapter:
    """`codex exec --json -`; prompt on stdin, resumes in place only."""

    name = "codex"
    executable = "codex"
    prompt_delivery = PromptDelivery.STDIN
    supports_continuation = True
    always_in_place = True

    def build_command(self, request: CommandRequest) -> HarnessCommand:
        effort = _EFFORT_SPELLING.get(request.variant, request.variant)
        argv = [self.executable, "exec"]
        if request.resume_session_id:
            argv.extend(["resume", request.resume_session_id])
        argv.extend(["-m", request.model, "-c", f"model_reasoning_effort={effort}"])

        sandbox = request.sandbox or self.infer_sandbox(request.tools)
        if sandbox is None:
            argv.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            argv.extend(["--sandbox", sandbox])
        argv.extend(["--json", "-"])
        return HarnessCommand(argv=argv, prompt_delivery=self.prompt_delivery)

    def infer_sandbox(self, tools: Sequence[str] | None) -> str | None:
        """Coarse three-tier policy; no tool list means no sandbox at all."""

        if tools is None or not tools:
            return None
        keys = {tool_key(tool) for tool in tools}
        if keys & NETWORK_TOOLS:
            return SANDBOX_FULL_ACCESS
        if keys & WRITE_TOOLS:
            return SANDBOX_WORKSPACE_WRITE
        return SANDBOX_READ_ONLY

    def extract_session_id(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in events:
            thread_id = event.get("thread_id")
            if isinstance(thread_id, str) and thread_id:
                return thread_id
        return None

    def find_error_event(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in events:
            event_type = event.get("type")
            if event_type == "error":
                return str(event.get("message") or "error")
            if event_type == "turn.failed":
                error = event.get("error")
                if isinstance(error, dict) and error.get("message"):
                    return str(error["message"])
                return "turn.failed"
        return None

    def last_message(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in reversed(events):
            item = event.get("item")
            if not isinstance(item, dict):
                continue
            if item.get("type") == "agent_message":
                text = item.get("text")
                if isinstance(text, str) and text.strip():
                    return text.strip()
            elif item.get("type") == "message" and item.get("role") == "assistant":
                text = _content_text(item.get("content"))
                if text:
                    return text
        return None

    def extract_token_usage(
        self,
        events: Sequence[dict[str, Any]],
    ) -> tuple[int | None, int | None]:
        input_total: int | None = None
        output_total: int | None = None
        for event in events:
            if event.get("type") != "turn.completed":
                continue
            usage = event.get("usage")
            if not isinstance(usage, dict):
                continue
            input_tokens = as_int(usage.get("input_tokens"))
            output_tokens = as_int(usage.get("output_tokens"))
            if input_tokens is not None:
                input_total = (input_total or 0) + input_tokens
            if output_tokens is not None:
                output_total = (output_total or 0) + output_tokens
        return input_total, output_total


def _content_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content.strip() or None
    if not isinstance(content, list):
        return None
    parts = [
        str(block.get("text") or block.get("output_text") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") in {"text", "output_text"}
    ]
    joined = "\n".join(part for part in parts if part).strip()
    return joined or None
