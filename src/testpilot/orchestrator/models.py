"""Domain models for job scheduling, retries and run aggregation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

JobIdentity = str
Fingerprint = str


class FailureKind(str, Enum):
    """Structured failure kinds carried on attempts and results."""

    EXECUTION_FAILURE = "execution_failure"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    RETRY_EXHAUSTED = "retry_exhausted"
    CANCELLED = "cancelled"
    CONFIGURATION = "configuration"


class JobStatus(str, Enum):
    """Progress statuses reported to scheduler observers."""

    RUNNING = "running"
    RETRYING = "retrying"
    PASSED = "passed"
    FAILED = "failed"
    CACHED = "cached"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Worker:
    """One execution slot, for example a connected device."""

    worker_id: str
    current_job: JobIdentity | None = None


@dataclass(slots=True)
class ExecutorOutcome:
    """Normalized result of one executor invocation."""

    passed: bool
    duration_seconds: float = 0.0
    error: str | None = None
    error_kind: FailureKind | None = None


@dataclass(slots=True)
class ExecutionAttempt:
    """Telemetry for one attempt of one job."""

    identity: JobIdentity
    worker_id: str | None
    attempt_no: int
    passed: bool
    started_at: datetime
    duration_seconds: float
    error: str | None = None
    failure_kind: FailureKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "worker_id": self.worker_id,
            "attempt_no": self.attempt_no,
            "passed": self.passed,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
        }


@dataclass(slots=True)
class RunResult:
    """Final outcome of one job within a run.

    ``passed``/``error``/``failure_kind`` mirror the last attempt, except when
    every permitted attempt failed: then ``failure_kind`` is
    ``RETRY_EXHAUSTED`` and ``error`` carries the last failure message.
    """

    identity: JobIdentity
    passed: bool
    attempts: list[ExecutionAttempt] = field(default_factory=list)
    failure_kind: FailureKind | None = None
    error: str | None = None
    total_duration_seconds: float = 0.0
    from_cache: bool = False
    cached: CachedResult | None = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def worker_id(self) -> str | None:
        if not self.attempts:
            return None
        return self.attempts[-1].worker_id

    @property
    def execution_seconds(self) -> float:
        """Time spent inside the executor, excluding backoff sleeps."""

        return sum(attempt.duration_seconds for attempt in self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "passed": self.passed,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "error": self.error,
            "total_duration_seconds": self.total_duration_seconds,
            "from_cache": self.from_cache,
            "cached": self.cached.to_dict() if self.cached else None,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


@dataclass(slots=True)
class RetryPolicy:
    """Bounded exponential backoff policy for one job."""

    max_retries: int = 3
    initial_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 120.0
    retriable_error_predicate: Callable[[ExecutionAttempt], bool] | None = None
    attempt_timeout_seconds: float | None = None
    jitter_ratio: float = 0.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass(slots=True)
class CachedResult:
    """Newest cache row for an (identity, fingerprint) pair."""

    identity: JobIdentity
    fingerprint: Fingerprint
    passed: bool
    duration_ms: int
    timestamp: datetime
    diagnostic: str | None = None
    worker_id: str | None = None

    def is_stale(self, max_age: timedelta, *, now: datetime) -> bool:
        return now - self.timestamp > max_age

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "fingerprint": self.fingerprint,
            "passed": self.passed,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
            "diagnostic": self.diagnostic,
            "worker_id": self.worker_id,
        }


@dataclass(slots=True)
class WorkerStats:
    """Per-worker counters for one run."""

    worker_id: str
    started: int = 0
    passed: int = 0
    failed: int = 0
    busy_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.started == 0:
            return 0.0
        return self.passed / self.started


@dataclass(slots=True)
class RunStats:
    """Aggregate counters for one scheduled run."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    cached: int = 0
    retried: int = 0
    cancelled: int = 0
    wall_clock_seconds: float = 0.0
    sum_job_seconds: float = 0.0
    per_worker: dict[str, WorkerStats] = field(default_factory=dict)

    @property
    def speedup(self) -> float:
        """Sum of individual job durations over wall clock; observability only."""

        if self.wall_clock_seconds <= 0:
            return 0.0
        return self.sum_job_seconds / self.wall_clock_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "cached": self.cached,
            "retried": self.retried,
            "cancelled": self.cancelled,
            "wall_clock_seconds": self.wall_clock_seconds,
            "sum_job_seconds": self.sum_job_seconds,
            "speedup": self.speedup,
            "per_worker": {
                worker_id: {
                    "started": stats.started,
                    "passed": stats.passed,
                    "failed": stats.failed,
                    "busy_seconds": stats.busy_seconds,
                }
                for worker_id, stats in self.per_worker.items()
            },
        }


@dataclass(slots=True)
class CacheStats:
    """Aggregate cache counters for observability."""

    total: int
    passed: int
    failed: int
    average_duration_ms: float
    size_bytes: int
    db_path: str

    @property
    def pass_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.passed / self.total
