"""Exit-code taxonomy and failure diagnosis for harness runs."""

from __future__ import annotations

import signal
from dataclasses import dataclass

from run_agent.models import (
    EXIT_AGENT_ERROR,
    EXIT_INFRA_ERROR,
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    EXIT_TERMINATED,
    EXIT_TIMEOUT,
    FailureReason,
    RunStatus,
)

PASSTHROUGH_EXIT_CODES = frozenset(
    {
        EXIT_SUCCESS,
        EXIT_AGENT_ERROR,
        EXIT_INFRA_ERROR,
        EXIT_TIMEOUT,
        EXIT_INTERRUPTED,
        EXIT_TERMINATED,
    },
)
SIGNAL_EXIT_CODES = {"SIGINT": EXIT_INTERRUPTED, "SIGTERM": EXIT_TERMINATED}

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out while connecting",
)

_DIAGNOSIS_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
    ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
    ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
    ("rate_limited", _RATE_LIMIT_PATTERNS),
    ("network", _NETWORK_PATTERNS),
)


@dataclass(slots=True)
class ExitClassification:
    """Final exit code with the status and failure reason it implies."""

    exit_code: int
    status: RunStatus
    failure_reason: FailureReason | None


@dataclass(slots=True)
class FailureDiagnosis:
    """Likely cause of a failed run, matched from harness output."""

    matched_rule: str
    matched_pattern: str


def normalize_exit_code(returncode: int | None) -> int:
    """Collapse a raw child status into the stable taxonomy."""

    if returncode is None:
        return EXIT_AGENT_ERROR
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            return EXIT_AGENT_ERROR
        return SIGNAL_EXIT_CODES.get(name, EXIT_AGENT_ERROR)
    if returncode in PASSTHROUGH_EXIT_CODES:
        return returncode
    return EXIT_AGENT_ERROR


def classify_exit(exit_code: int) -> ExitClassification:
    if exit_code == EXIT_SUCCESS:
        return ExitClassification(exit_code, RunStatus.COMPLETED, None)
    reason = {
        EXIT_INFRA_ERROR: FailureReason.INFRA_ERROR,
        EXIT_TIMEOUT: FailureReason.TIMEOUT,
        EXIT_INTERRUPTED: FailureReason.INTERRUPTED,
        EXIT_TERMINATED: FailureReason.INTERRUPTED,
    }.get(exit_code, FailureReason.AGENT_ERROR)
    return ExitClassification(exit_code, RunStatus.FAILED, reason)


def signal_exit_code(signal_name: str) -> int:
    return SIGNAL_EXIT_CODES.get(signal_name, EXIT_TERMINATED)


def diagnose_failure(*, stdout: str, stderr: str) -> FailureDiagnosis | None:
    """Match well-known provider failure messages in harness output."""

    haystack = f"{stderr}\n{stdout}".lower()
    for rule, patterns in _DIAGNOSIS_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureDiagnosis(matched_rule=rule, matched_pattern=pattern)
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
