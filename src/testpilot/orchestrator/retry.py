"""Bounded exponential-backoff retry around one job's executor calls."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Protocol

from testpilot.errors import AttemptTimeoutError, ConfigurationError, ExecutionFailure
from testpilot.orchestrator.failure_classifier import classify_error_text
from testpilot.orchestrator.models import (
    ExecutionAttempt,
    ExecutorOutcome,
    FailureKind,
    JobIdentity,
    RetryPolicy,
    RunResult,
    Worker,
)
from testpilot.storage.common import utc_now

logger = logging.getLogger(__name__)

Executor = Callable[[JobIdentity, Worker], Any]
RetryObserver = Callable[[int, int, float], None]


class _AttemptAbandonedError(AttemptTimeoutError):
    """Attempt hit the per-attempt timeout while the executor call kept running."""


class WorkerSource(Protocol):
    """Hands out workers for single attempts."""

    def acquire(self, cancel_event: threading.Event | None = None) -> Worker | None:
        """Block until a worker is idle and mark it busy; None if canceled while waiting."""

    def release(self, worker: Worker) -> None:
        """Return a worker to the idle set."""


class InlineWorkerSource:
    """Single pseudo-worker used when retries run outside a pool."""

    def __init__(self, worker_id: str = "inline") -> None:
        self._worker = Worker(worker_id=worker_id)

    def acquire(self, cancel_event: threading.Event | None = None) -> Worker | None:
        return self._worker

    def release(self, worker: Worker) -> None:
        worker.current_job = None


def compute_retry_delay(
    policy: RetryPolicy,
    *,
    attempt_no: int,
    rng: random.Random | None = None,
) -> float:
    """Delay before the attempt following ``attempt_no`` (1-based).

    ``min(max_delay, initial * multiplier ** (attempt_no - 1))``. Jitter only
    ever shortens the delay, so the deterministic value stays a hard ceiling.
    """

    delay = min(
        policy.max_delay_seconds,
        policy.initial_delay_seconds * (policy.backoff_multiplier ** max(attempt_no - 1, 0)),
    )
    if policy.jitter_ratio > 0 and delay > 0:
        generator = rng or random.Random()  # noqa: S311
        delay -= delay * generator.uniform(0, min(policy.jitter_ratio, 1.0))
    return max(0.0, delay)


class RetryExecutor:
    """Runs one job with bounded retries and exponential backoff.

    Attempts of one job are strictly sequential. Each attempt acquires a
    worker from ``workers`` and releases it right after, so a retried attempt
    may land on a different worker. Executor exceptions never escape: they
    become failed attempts.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        workers: WorkerSource | None = None,
        sleep: Callable[[float], None] | None = None,
        on_retry: RetryObserver | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy
        self.workers = workers or InlineWorkerSource()
        self.on_retry = on_retry
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311

    def run_with_retry(
        self,
        job: JobIdentity,
        executor: Executor,
        *,
        on_retry: RetryObserver | None = None,
    ) -> RunResult:
        """Execute ``job`` until it passes or the retry budget is exhausted."""

        observer = on_retry or self.on_retry
        max_attempts = self.policy.max_attempts
        started = self._clock()
        attempts: list[ExecutionAttempt] = []
        attempt_no = 0

        while True:
            attempt_no += 1
            attempt = self._run_attempt(job, executor, attempt_no=attempt_no)
            if attempt is None:
                logger.info("Job %s canceled before attempt %d started", job, attempt_no)
                return self._canceled(job, attempts, started=started)
            attempts.append(attempt)

            if attempt.passed:
                if attempt_no > 1:
                    logger.info("Job %s passed on attempt %d/%d", job, attempt_no, max_attempts)
                return self._finish(job, attempts, started=started)

            if attempt_no >= max_attempts:
                logger.warning(
                    "Job %s failed after %d attempt(s): %s",
                    job,
                    attempt_no,
                    attempt.error,
                )
                return self._finish(
                    job,
                    attempts,
                    started=started,
                    failure_kind=FailureKind.RETRY_EXHAUSTED,
                )

            if not self._should_retry(attempt):
                logger.info(
                    "Job %s failure is not retriable (%s), stopping after attempt %d",
                    job,
                    _kind_value(attempt.failure_kind),
                    attempt_no,
                )
                return self._finish(job, attempts, started=started)

            delay = compute_retry_delay(self.policy, attempt_no=attempt_no, rng=self._random)
            logger.info(
                "Job %s attempt %d/%d failed (%s), retrying in %.2fs",
                job,
                attempt_no,
                max_attempts,
                _kind_value(attempt.failure_kind),
                delay,
            )
            if observer is not None:
                observer(attempt_no, max_attempts, delay)
            if not self._sleep_with_stop(delay):
                logger.info("Job %s retry canceled during backoff", job)
                return self._finish(job, attempts, started=started)

    def _should_retry(self, attempt: ExecutionAttempt) -> bool:
        if self.cancel_event.is_set() or attempt.failure_kind == FailureKind.CONFIGURATION:
            return False
        predicate = self.policy.retriable_error_predicate
        if predicate is None:
            return True
        return bool(predicate(attempt))

    def _sleep_with_stop(self, seconds: float) -> bool:
        """Sleep for the backoff; False if cancellation was requested."""

        if self._sleep is not None:
            self._sleep(seconds)
            return not self.cancel_event.is_set()
        return not self.cancel_event.wait(timeout=max(0.0, seconds))

    def _run_attempt(
        self,
        job: JobIdentity,
        executor: Executor,
        *,
        attempt_no: int,
    ) -> ExecutionAttempt | None:
        if self.cancel_event.is_set():
            return None
        worker = self.workers.acquire(self.cancel_event)
        if worker is None:
            return None
        if self.cancel_event.is_set():
            self.workers.release(worker)
            return None
        started_at = utc_now()
        worker.current_job = job
        started = self._clock()
        release_now = True
        try:
            outcome = self._invoke(job, worker, executor)
        except _AttemptAbandonedError as error:
            # The abandoned call may still be running; the worker stays busy until it returns.
            release_now = False
            outcome = ExecutorOutcome(
                passed=False,
                error=str(error),
                error_kind=FailureKind.TIMEOUT,
            )
        except ExecutionFailure as error:
            outcome = ExecutorOutcome(passed=False, error=str(error), error_kind=error.kind)
        except ConfigurationError as error:
            outcome = ExecutorOutcome(
                passed=False,
                error=str(error),
                error_kind=FailureKind.CONFIGURATION,
            )
        except Exception as error:  # noqa: BLE001
            logger.debug("Executor raised for %s on %s", job, worker.worker_id, exc_info=True)
            outcome = ExecutorOutcome(
                passed=False,
                error=f"{type(error).__name__}: {error}",
                error_kind=FailureKind.EXECUTION_FAILURE,
            )
        finally:
            measured = self._clock() - started
            if release_now:
                self.workers.release(worker)

        if not outcome.passed and outcome.error_kind is None:
            outcome.error_kind = classify_error_text(outcome.error).failure_kind

        return ExecutionAttempt(
            identity=job,
            worker_id=worker.worker_id,
            attempt_no=attempt_no,
            passed=outcome.passed,
            started_at=started_at,
            duration_seconds=outcome.duration_seconds or measured,
            error=None if outcome.passed else outcome.error,
            failure_kind=None if outcome.passed else outcome.error_kind,
        )

    def _invoke(self, job: JobIdentity, worker: Worker, executor: Executor) -> ExecutorOutcome:
        timeout_seconds = self.policy.attempt_timeout_seconds
        if timeout_seconds is None:
            return normalize_outcome(executor(job, worker))

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="testpilot-attempt")
        future = pool.submit(executor, job, worker)
        timed_out = False
        try:
            return normalize_outcome(future.result(timeout=timeout_seconds))
        except FutureTimeoutError as exc:
            timed_out = True
            future.cancel()
            future.add_done_callback(lambda _: self._release_abandoned(worker))
            raise _AttemptAbandonedError(
                f"Job {job!r} attempt timed out after {timeout_seconds}s on {worker.worker_id}.",
            ) from exc
        finally:
            pool.shutdown(wait=not timed_out, cancel_futures=timed_out)

    def _release_abandoned(self, worker: Worker) -> None:
        logger.debug("Abandoned attempt on %s finished; releasing worker", worker.worker_id)
        self.workers.release(worker)

    def _canceled(
        self,
        job: JobIdentity,
        attempts: list[ExecutionAttempt],
        *,
        started: float,
    ) -> RunResult:
        if attempts:
            return self._finish(job, attempts, started=started)
        return RunResult(
            identity=job,
            passed=False,
            failure_kind=FailureKind.CANCELLED,
            error="Run canceled before the job started.",
            total_duration_seconds=self._clock() - started,
        )

    def _finish(
        self,
        job: JobIdentity,
        attempts: list[ExecutionAttempt],
        *,
        started: float,
        failure_kind: FailureKind | None = None,
    ) -> RunResult:
        last = attempts[-1]
        return RunResult(
            identity=job,
            passed=last.passed,
            attempts=attempts,
            failure_kind=None if last.passed else (failure_kind or last.failure_kind),
            error=last.error,
            total_duration_seconds=self._clock() - started,
        )


def normalize_outcome(raw: Any) -> ExecutorOutcome:
    """Coerce executor return values into ``ExecutorOutcome``.

    Accepts an ``ExecutorOutcome``, a bare ``bool``, or a mapping with
    ``passed``/``duration``/``error``/``error_kind`` keys.
    """

    if isinstance(raw, ExecutorOutcome):
        return raw
    if isinstance(raw, bool):
        return ExecutorOutcome(passed=raw)
    if isinstance(raw, Mapping):
        kind = raw.get("error_kind")
        return ExecutorOutcome(
            passed=bool(raw.get("passed", False)),
            duration_seconds=float(raw.get("duration", raw.get("duration_seconds", 0.0)) or 0.0),
            error=raw.get("error"),
            error_kind=FailureKind(kind) if kind else None,
        )
    raise ExecutionFailure(f"Unsupported executor result type: {type(raw).__name__}")


@dataclass(slots=True)
class RetryStats:
    """How retries paid off across a set of results."""

    total: int
    passed_first_try: int
    passed_after_retry: int
    failed: int

    @property
    def first_try_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.passed_first_try / self.total

    @property
    def retry_success_rate(self) -> float:
        """Share of first-try failures that a retry turned into a pass."""

        first_try_failures = self.total - self.passed_first_try
        if first_try_failures <= 0:
            return 0.0
        return self.passed_after_retry / first_try_failures


def retry_stats(results: Iterable[RunResult]) -> RetryStats:
    """Summarize first-try passes versus passes that needed retries."""

    total = passed_first_try = passed_after_retry = failed = 0
    for result in results:
        if result.from_cache:
            continue
        total += 1
        if not result.passed:
            failed += 1
        elif result.attempt_count <= 1:
            passed_first_try += 1
        else:
            passed_after_retry += 1
    return RetryStats(
        total=total,
        passed_first_try=passed_first_try,
        passed_after_retry=passed_after_retry,
        failed=failed,
    )


def _kind_value(kind: FailureKind | None) -> str:
    if kind is None:
        return "unknown"
    return kind.value
