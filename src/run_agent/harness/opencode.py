"""OpenCode CLI adapter."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from run_agent.harness.base import CommandRequest, HarnessCommand, as_int
from run_agent.models import PromptDelivery

MODEL_PREFIX = "opencode-"


def strip_model_prefix(model: str) -> str:
    if model.startswith(MODEL_PREFIX):
        return model[len(MODEL_PREFIX) :]
    return model


class OpenCodeAdapter:
    """`opencode run --format json`; prompt as trailing positional argument."""

    name = "opencode"
    executable = "opencode"
    prompt_delivery = PromptDelivery.POSITIONAL
    supports_continuation = True
    always_in_place = False

    def build_command(self, request: CommandRequest) -> HarnessCommand:
        argv = [
            self.executable,
            "run",
            "--model",
            strip_model_prefix(request.model),
            "--format",
            "json",
            "--print-logs",
            "--variant",
            request.variant,
        ]
        if request.agent:
            argv.extend(["--agent", request.agent])
        if request.resume_session_id:
            argv.extend(["--session", request.resume_session_id])
            if request.fork:
                argv.append("--fork")
        argv.append(request.prompt)
        return HarnessCommand(argv=argv, prompt_delivery=self.prompt_delivery)

    def infer_sandbox(self, tools: Sequence[str] | None) -> str | None:
        return None

    def extract_session_id(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in events:
            session_id = event.get("sessionID")
            if isinstance(session_id, str) and session_id:
                return session_id
        return None

    def find_error_event(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in events:
            if event.get("type") != "error":
                continue
            error = event.get("error")
            if isinstance(error, dict):
                data = error.get("data")
                if isinstance(data, dict) and data.get("message"):
                    return str(data["message"])
                if error.get("message"):
                    return str(error["message"])
                if error.get("name"):
                    return str(error["name"])
            return str(event.get("message") or "error")
        return None

    def last_message(self, events: Sequence[dict[str, Any]]) -> str | None:
        for event in reversed(events):
            if event.get("type") != "text":
                continue
            part = event.get("part")
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                text = part["text"].strip()
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
            if event.get("type") != "step_finish":
                continue
            part = event.get("part")
            tokens = part.get("tokens") if isinstance(part, dict) else None
            if not isinstance(tokens, dict):
                continue
            input_tokens = as_int(tokens.get("input"))
            output_tokens = as_int(tokens.get("output"))
            if input_tokens is not None:
                input_total = (input_total or 0) + input_tokens
            if output_tokens is not None:
                output_total = (output_total or 0) + output_tokens
        return input_total, output_total
