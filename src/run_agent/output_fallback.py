"""Synthesized reports for runs whose harness did not write one."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

from run_agent.failure_classifier import diagnose_failure
from run_agent.harness.base import HarnessAdapter

_STDERR_TAIL_LINES = 3


def synthesize_report(
    *,
    adapter: HarnessAdapter,
    events: Sequence[dict[str, Any]],
    exit_code: int,
    output_path: Path,
    stderr_path: Path,
) -> str:
    """Last assistant message when one exists, else a compact diagnostic."""

    message = adapter.last_message(events)
    if message:
        plain = _normalize_plain_text(message)
        if plain:
            return plain + "\n"
    return diagnostic_report(
        exit_code=exit_code,
        output_path=output_path,
        stderr_path=stderr_path,
    )


def diagnostic_report(
    *,
    exit_code: int,
    output_path: Path,
    stderr_path: Path,
    headline: str | None = None,
) -> str:
    status = "completed" if exit_code == 0 else f"failed (exit {exit_code})"
    lines = ["# Run Report (auto-generated)", ""]
    if headline:
        lines.extend([headline, ""])
    lines.append(f"**Status**: {status}")

    output_text = _read_text(output_path)
    output_lines = len(output_text.splitlines())
    lines.append(f"**Output**: {output_lines} lines, {len(output_text.encode('utf-8'))} bytes")

    stderr_text = _read_text(stderr_path)
    diagnosis = diagnose_failure(stdout=output_text, stderr=stderr_text) if exit_code else None
    if diagnosis is not None:
        lines.append(
            f"**Likely cause**: {diagnosis.matched_rule} (matched {diagnosis.matched_pattern!r})",
        )

    tail = [line for line in stderr_text.splitlines() if line.strip()][-_STDERR_TAIL_LINES:]
    if tail:
        lines.extend(["", "**Last error**:", "```", *tail, "```"])
    return "\n".join(lines) + "\n"


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return ""


def _normalize_plain_text(text: str) -> str:
    lines = [line.rstrip() for line in text.splitlines()]
    return "\n".join(lines).strip()
