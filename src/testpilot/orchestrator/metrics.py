"""Run aggregation and operator-facing summary rendering."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from testpilot.orchestrator.models import (
    CacheStats,
    FailureKind,
    RunResult,
    RunStats,
    WorkerStats,
)
from testpilot.orchestrator.retry import retry_stats


def build_run_stats(
    results: Sequence[RunResult],
    *,
    wall_clock_seconds: float,
    worker_ids: Sequence[str] = (),
) -> RunStats:
    """Aggregate results into run-level and per-worker counters.

    Worker counters are per attempt: a job retried on two workers counts
    once on each. ``sum_job_seconds`` covers executor time only, so the
    derived speedup ignores cache hits and backoff sleeps.
    """

    stats = RunStats(
        total=len(results),
        wall_clock_seconds=max(0.0, wall_clock_seconds),
        per_worker={worker_id: WorkerStats(worker_id=worker_id) for worker_id in worker_ids},
    )
    for result in results:
        if result.passed:
            stats.passed += 1
        else:
            stats.failed += 1
        if result.from_cache:
            stats.cached += 1
        if result.attempt_count > 1:
            stats.retried += 1
        if result.failure_kind == FailureKind.CANCELLED:
            stats.cancelled += 1
        stats.sum_job_seconds += result.execution_seconds
        for attempt in result.attempts:
            if attempt.worker_id is None:
                continue
            worker = stats.per_worker.setdefault(
                attempt.worker_id,
                WorkerStats(worker_id=attempt.worker_id),
            )
            worker.started += 1
            worker.busy_seconds += attempt.duration_seconds
            if attempt.passed:
                worker.passed += 1
            else:
                worker.failed += 1
    return stats


def render_run_lines(*, stats: RunStats, results: Sequence[RunResult]) -> list[str]:
    """Render the console summary for one run."""

    lines = [
        "Test run summary",
        (
            f"Total: {stats.total} passed={stats.passed} failed={stats.failed} "
            f"cached={stats.cached} retried={stats.retried} cancelled={stats.cancelled}"
        ),
        (
            f"Wall clock: {stats.wall_clock_seconds:.2f}s "
            f"job time: {stats.sum_job_seconds:.2f}s "
            f"speedup: {stats.speedup:.1f}x"
        ),
    ]

    retries = retry_stats(results)
    lines.append(
        "Retries: "
        f"first_try={retries.passed_first_try} "
        f"after_retry={retries.passed_after_retry} "
        f"retry_success_rate={_fmt_ratio(retries.retry_success_rate)}",
    )

    kinds = Counter(
        result.failure_kind.value for result in results if result.failure_kind is not None
    )
    lines.append("Failure kinds: " + (_fmt_key_value(dict(kinds)) or "none"))

    active_workers = [worker for worker in stats.per_worker.values() if worker.started > 0]
    if active_workers:
        lines.append("Workers:")
        for worker in active_workers:
            lines.append(
                "  "
                f"{worker.worker_id}: attempts={worker.started} passed={worker.passed} "
                f"failed={worker.failed} busy={worker.busy_seconds:.2f}s",
            )

    failed = [result for result in results if not result.passed]
    if failed:
        lines.append("Failed jobs:")
        for result in failed:
            reason = result.error or (result.failure_kind.value if result.failure_kind else "")
            lines.append(f"  - {result.identity} [{_fmt_kind(result)}] {_first_line(reason)}")
    return lines


def render_cache_lines(stats: CacheStats) -> list[str]:
    """Render cache statistics for CLI output."""

    return [
        "Cache statistics",
        f"Total cached results: {stats.total}",
        f"Passed: {stats.passed}",
        f"Failed: {stats.failed}",
        f"Pass ratio: {_fmt_ratio(stats.pass_ratio if stats.total else None)}",
        f"Average duration: {stats.average_duration_ms / 1000.0:.2f}s",
        f"Cache size: {stats.size_bytes / (1024 * 1024):.2f} MB",
        f"Cache location: {stats.db_path}",
    ]


def _fmt_kind(result: RunResult) -> str:
    if result.failure_kind is None:
        return "failed"
    return result.failure_kind.value


def _first_line(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        return ""
    return stripped.splitlines()[0][:200]


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
