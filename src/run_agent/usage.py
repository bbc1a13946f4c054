"""Token usage extraction from harness output streams."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from run_agent.harness.base import HarnessAdapter

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True)
class UsageExtraction:
    """Best-effort token usage extraction result."""

    input_tokens: int | None
    output_tokens: int | None


def extract_usage(
    *,
    adapter: HarnessAdapter,
    events: Sequence[dict[str, Any]],
    stderr: str,
) -> UsageExtraction:
    """Prefer structured stream usage, then textual markers in stderr."""

    input_tokens, output_tokens = adapter.extract_token_usage(events)
    if input_tokens is not None or output_tokens is not None:
        return UsageExtraction(input_tokens=input_tokens, output_tokens=output_tokens)

    input_tokens = _extract_int(_INPUT_TOKENS, stderr)
    output_tokens = _extract_int(_OUTPUT_TOKENS, stderr)
    if input_tokens is not None or output_tokens is not None:
        return UsageExtraction(input_tokens=input_tokens, output_tokens=output_tokens)
    return UsageExtraction(input_tokens=None, output_tokens=None)


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
