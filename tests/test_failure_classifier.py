from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from testpilot.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_error_text,
    is_retriable_error,
    retry_transient_only,
)
from testpilot.orchestrator.models import ExecutionAttempt, FailureKind

pytestmark = [
    allure.epic("Retries"),
    allure.feature("Failure Classification"),
]


def _attempt(error: str | None, kind: FailureKind | None = None) -> ExecutionAttempt:
    return ExecutionAttempt(
        identity="a",
        worker_id="w",
        attempt_no=1,
        passed=False,
        started_at=datetime(2026, 10, 18, tzinfo=UTC),
        duration_seconds=0.1,
        error=error,
        failure_kind=kind,
    )


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("error", "pattern"),
    [
        ("Connection reset by peer", "connection"),
        ("device not responding", "not responding"),
        ("Operation TIMED OUT", "timed out"),
        ("known flaky: golden mismatch", "flaky"),
    ],
)
def test_transient_patterns_match_case_insensitively(error: str, pattern: str) -> None:
    classified = classify_error_text(error)

    assert classified.failure_kind == FailureKind.TRANSIENT
    assert classified.matched_rule == "transient"
    assert classified.matched_pattern == pattern
    assert classified.retriable


def test_non_retryable_wins_over_transient() -> None:
    classified = classify_error_text("flutter: command not found (network drive)")

    assert classified.failure_kind == FailureKind.NON_RETRYABLE
    assert classified.matched_pattern == "command not found"
    assert not classified.retriable


def test_unknown_text_falls_back_to_execution_failure() -> None:
    classified = classify_error_text("Expected: 2, Actual: 3")

    assert classified.failure_kind == FailureKind.EXECUTION_FAILURE
    assert classified.matched_rule == "fallback_execution_failure"
    assert classified.matched_pattern is None


def test_empty_error_is_retriable() -> None:
    assert is_retriable_error(None)
    assert is_retriable_error("")
    assert not is_retriable_error("assertion failed")


def test_retry_transient_only_predicate() -> None:
    assert retry_transient_only(_attempt("whatever", FailureKind.TIMEOUT))
    assert retry_transient_only(_attempt("network hiccup", FailureKind.EXECUTION_FAILURE))
    assert not retry_transient_only(_attempt("network", FailureKind.NON_RETRYABLE))
    assert not retry_transient_only(_attempt("assertion failed", FailureKind.EXECUTION_FAILURE))
