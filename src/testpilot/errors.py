"""Error taxonomy shared by cache, retry, scheduler and discovery layers."""

from __future__ import annotations

from testpilot.orchestrator.models import FailureKind


class PilotError(RuntimeError):
    """Base class for testpilot errors."""


class ConfigurationError(PilotError, ValueError):
    """Fatal pre-dispatch configuration problem; aborts the run before any job starts."""


class ExecutionFailure(PilotError):
    """One attempt failed; recoverable and retried per policy."""

    def __init__(self, message: str, *, kind: FailureKind = FailureKind.EXECUTION_FAILURE) -> None:
        super().__init__(message)
        self.kind = kind


class AttemptTimeoutError(ExecutionFailure):
    """One attempt exceeded its time budget."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=FailureKind.TIMEOUT)


class CacheError(PilotError):
    """Result cache I/O failure. Never escapes the cache facade."""
