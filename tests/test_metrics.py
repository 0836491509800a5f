from __future__ import annotations

from datetime import UTC, datetime

import allure

from testpilot.orchestrator.metrics import build_run_stats, render_cache_lines, render_run_lines
from testpilot.orchestrator.models import (
    CacheStats,
    ExecutionAttempt,
    FailureKind,
    RunResult,
)

pytestmark = [
    allure.epic("Parallel Execution"),
    allure.feature("Run Metrics"),
]

_STARTED = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def _attempt(identity: str, worker: str, attempt_no: int, *, passed: bool, seconds: float):
    return ExecutionAttempt(
        identity=identity,
        worker_id=worker,
        attempt_no=attempt_no,
        passed=passed,
        started_at=_STARTED,
        duration_seconds=seconds,
        error=None if passed else "connection reset",
        failure_kind=None if passed else FailureKind.TRANSIENT,
    )


def _results() -> list[RunResult]:
    return [
        RunResult(
            identity="a",
            passed=True,
            attempts=[_attempt("a", "d1", 1, passed=True, seconds=4.0)],
        ),
        RunResult(
            identity="b",
            passed=True,
            attempts=[
                _attempt("b", "d1", 1, passed=False, seconds=1.0),
                _attempt("b", "d2", 2, passed=True, seconds=2.0),
            ],
        ),
        RunResult(
            identity="c",
            passed=False,
            attempts=[_attempt("c", "d2", 1, passed=False, seconds=3.0)],
            failure_kind=FailureKind.RETRY_EXHAUSTED,
            error="connection reset\nstack trace",
        ),
        RunResult(identity="d", passed=True, from_cache=True),
        RunResult(
            identity="e",
            passed=False,
            failure_kind=FailureKind.CANCELLED,
            error="Run canceled before the job was dispatched.",
        ),
    ]


def test_build_run_stats_counts_attempts_per_worker() -> None:
    stats = build_run_stats(_results(), wall_clock_seconds=5.0, worker_ids=["d1", "d2", "d3"])

    assert stats.total == 5
    assert stats.passed == 3
    assert stats.failed == 2
    assert stats.cached == 1
    assert stats.retried == 1
    assert stats.cancelled == 1
    assert stats.sum_job_seconds == 10.0
    assert stats.speedup == 2.0
    assert stats.per_worker["d1"].started == 2
    assert stats.per_worker["d1"].passed == 1
    assert stats.per_worker["d2"].busy_seconds == 5.0
    assert stats.per_worker["d3"].started == 0


def test_render_run_lines() -> None:
    results = _results()
    stats = build_run_stats(results, wall_clock_seconds=5.0, worker_ids=["d1", "d2"])

    lines = render_run_lines(stats=stats, results=results)

    assert lines[0] == "Test run summary"
    assert lines[1] == "Total: 5 passed=3 failed=2 cached=1 retried=1 cancelled=1"
    assert "speedup: 2.0x" in lines[2]
    assert lines[3] == "Retries: first_try=1 after_retry=1 retry_success_rate=33.33%"
    assert lines[4] == "Failure kinds: cancelled=1 retry_exhausted=1"
    assert "  - c [retry_exhausted] connection reset" in lines


def test_render_cache_lines() -> None:
    lines = render_cache_lines(
        CacheStats(
            total=4,
            passed=3,
            failed=1,
            average_duration_ms=1_500.0,
            size_bytes=2 * 1024 * 1024,
            db_path="/tmp/cache.db",
        ),
    )

    assert "Pass ratio: 75.00%" in lines
    assert "Average duration: 1.50s" in lines
    assert "Cache size: 2.00 MB" in lines
    assert lines[-1] == "Cache location: /tmp/cache.db"
