"""Harness adapters and process runner."""

from run_agent.errors import CallerError
from run_agent.harness.base import CommandRequest, HarnessAdapter, HarnessCommand, read_events
from run_agent.harness.claude import ClaudeAdapter
from run_agent.harness.cli_backend import (
    BackendRunError,
    CliHarnessBackend,
    ProcessOutcome,
    ProcessRequest,
)
from run_agent.harness.codex import CodexAdapter
from run_agent.harness.opencode import OpenCodeAdapter

HARNESS_ADAPTERS: dict[str, HarnessAdapter] = {
    "claude": ClaudeAdapter(),
    "codex": CodexAdapter(),
    "opencode": OpenCodeAdapter(),
}


def get_adapter(harness: str) -> HarnessAdapter:
    try:
        return HARNESS_ADAPTERS[harness]
    except KeyError as error:
        supported = ", ".join(sorted(HARNESS_ADAPTERS))
        raise CallerError(
            f"Unsupported harness {harness!r}. Supported: {supported}.",
            code="unsupported_harness",
        ) from error


__all__ = [
    "HARNESS_ADAPTERS",
    "BackendRunError",
    "CliHarnessBackend",
    "CommandRequest",
    "HarnessAdapter",
    "HarnessCommand",
    "ProcessOutcome",
    "ProcessRequest",
    "get_adapter",
    "read_events",
]
