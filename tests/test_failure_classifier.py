from __future__ import annotations

import allure
import pytest

from run_agent.failure_classifier import (
    classify_exit,
    diagnose_failure,
    normalize_exit_code,
    signal_exit_code,
)
from run_agent.models import FailureReason, RunStatus

pytestmark = [
    allure.epic("Run Launch"),
    allure.feature("Exit Taxonomy and Failure Diagnosis"),
]


@pytest.mark.parametrize(
    ("returncode", "expected"),
    [
        (0, 0),
        (1, 1),
        (2, 2),
        (3, 3),
        (130, 130),
        (143, 143),
        (137, 1),
        (42, 1),
        (None, 1),
        (-2, 130),
        (-15, 143),
        (-9, 1),
        (-999, 1),
    ],
)
def test_normalize_exit_code(returncode, expected) -> None:
    assert normalize_exit_code(returncode) == expected


@pytest.mark.parametrize(
    ("exit_code", "status", "reason"),
    [
        (0, RunStatus.COMPLETED, None),
        (1, RunStatus.FAILED, FailureReason.AGENT_ERROR),
        (2, RunStatus.FAILED, FailureReason.INFRA_ERROR),
        (3, RunStatus.FAILED, FailureReason.TIMEOUT),
        (130, RunStatus.FAILED, FailureReason.INTERRUPTED),
        (143, RunStatus.FAILED, FailureReason.INTERRUPTED),
    ],
)
def test_classify_exit(exit_code, status, reason) -> None:
    classified = classify_exit(exit_code)

    assert classified.exit_code == exit_code
    assert classified.status == status
    assert classified.failure_reason == reason


def test_signal_exit_code_defaults_to_terminated() -> None:
    assert signal_exit_code("SIGINT") == 130
    assert signal_exit_code("SIGTERM") == 143
    assert signal_exit_code("SIGHUP") == 143


def test_diagnosis_prefers_billing_over_rate_limit() -> None:
    diagnosis = diagnose_failure(
        stdout="HTTP 429",
        stderr="Quota exceeded for this project",
    )

    assert diagnosis is not None
    assert diagnosis.matched_rule == "billing_or_quota"
    assert diagnosis.matched_pattern == "quota"


@pytest.mark.parametrize(
    ("stderr", "rule"),
    [
        ("Invalid model requested", "model_not_available"),
        ("Error: Not logged in. Please run /login", "access_or_auth"),
        ("API is overloaded, try again later", "rate_limited"),
        ("curl: could not resolve host api.example.com", "network"),
    ],
)
def test_diagnosis_rules(stderr, rule) -> None:
    diagnosis = diagnose_failure(stdout="", stderr=stderr)

    assert diagnosis is not None
    assert diagnosis.matched_rule == rule


def test_diagnosis_without_known_pattern() -> None:
    assert diagnose_failure(stdout="all good", stderr="segfault in plugin") is None
