"""Failure classification for retry decisions.

Executors that report a structured ``FailureKind`` are trusted as-is. Legacy
executors that only return free-text errors go through the substring
fallback below.
"""

from __future__ import annotations

from dataclasses import dataclass

from testpilot.orchestrator.models import ExecutionAttempt, FailureKind

FAILURE_CLASSIFIER_VERSION = 1

RETRIABLE_ERROR_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "unavailable",
    "not responding",
    "flaky",
    "intermittent",
)
_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "command not found",
    "no such file or directory",
    "permission denied",
    "syntax error",
    "compilation failed",
)
_RETRIABLE_KINDS = frozenset({FailureKind.TIMEOUT, FailureKind.TRANSIENT})


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_kind: FailureKind
    matched_rule: str
    matched_pattern: str | None

    @property
    def retriable(self) -> bool:
        return self.failure_kind in _RETRIABLE_KINDS


def classify_error_text(error: str | None) -> FailureClassification:
    """Classify a free-text executor error into a deterministic failure kind."""

    haystack = (error or "").lower()

    pattern = _first_match(haystack, _NON_RETRYABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_kind=FailureKind.NON_RETRYABLE,
            matched_rule="non_retryable",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, RETRIABLE_ERROR_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_kind=FailureKind.TRANSIENT,
            matched_rule="transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_kind=FailureKind.EXECUTION_FAILURE,
        matched_rule="fallback_execution_failure",
        matched_pattern=None,
    )


def is_retriable_error(error: str | None) -> bool:
    """Substring check used by the legacy retry predicate.

    An empty error is considered retriable: the executor failed without
    saying why, so another attempt is the only way to learn more.
    """

    if not error:
        return True
    return _first_match(error.lower(), RETRIABLE_ERROR_PATTERNS) is not None


def retry_transient_only(attempt: ExecutionAttempt) -> bool:
    """Retry predicate that short-circuits failures not known to be transient."""

    if attempt.failure_kind in _RETRIABLE_KINDS:
        return True
    if attempt.failure_kind == FailureKind.NON_RETRYABLE:
        return False
    return is_retriable_error(attempt.error)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
