"""Load-balancing parallel scheduler over a static worker pool."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass

from testpilot.cache.repository import ResultCache
from testpilot.errors import ConfigurationError
from testpilot.orchestrator.metrics import build_run_stats
from testpilot.orchestrator.models import (
    FailureKind,
    Fingerprint,
    JobIdentity,
    JobStatus,
    RetryPolicy,
    RunResult,
    RunStats,
    Worker,
)
from testpilot.orchestrator.retry import Executor, RetryExecutor

logger = logging.getLogger(__name__)

ProgressObserver = Callable[[JobIdentity, "str | None", JobStatus], None]
FingerprintFn = Callable[[JobIdentity], Fingerprint]

_DISPATCH_POLL_SECONDS = 0.05


class WorkerPool:
    """Thread-safe idle-worker set; a worker is never handed out twice at once."""

    def __init__(self, worker_ids: Sequence[str]) -> None:
        if not worker_ids:
            raise ConfigurationError("Worker pool requires at least one worker.")
        if len(set(worker_ids)) != len(worker_ids):
            raise ConfigurationError(f"Worker ids must be unique: {', '.join(worker_ids)}")
        self.workers = [Worker(worker_id=worker_id) for worker_id in worker_ids]
        self._idle: deque[Worker] = deque(self.workers)
        self._busy: set[str] = set()
        self._condition = threading.Condition()

    @property
    def worker_ids(self) -> list[str]:
        return [worker.worker_id for worker in self.workers]

    @property
    def busy_count(self) -> int:
        with self._condition:
            return len(self._busy)

    def acquire(self, cancel_event: threading.Event | None = None) -> Worker | None:
        """Block until a worker is idle; None once ``cancel_event`` is set while waiting."""

        with self._condition:
            while not self._idle:
                if cancel_event is None:
                    self._condition.wait()
                    continue
                if cancel_event.is_set():
                    return None
                self._condition.wait(timeout=_DISPATCH_POLL_SECONDS)
            worker = self._idle.popleft()
            self._busy.add(worker.worker_id)
            return worker

    def release(self, worker: Worker) -> None:
        with self._condition:
            if worker.worker_id not in self._busy:
                return
            self._busy.discard(worker.worker_id)
            worker.current_job = None
            self._idle.append(worker)
            self._condition.notify()

    @contextmanager
    def lease(self) -> Iterator[Worker]:
        worker = self.acquire()
        try:
            yield worker
        finally:
            self.release(worker)


@dataclass(slots=True)
class ScheduledRun:
    """Results in input order plus aggregate stats."""

    results: list[RunResult]
    stats: RunStats


def order_jobs(
    jobs: Sequence[JobIdentity],
    estimates: Mapping[JobIdentity, float] | None = None,
) -> list[int]:
    """Dispatch order as indices into ``jobs``.

    Longest estimate first (LPT) when estimates are given, ties and jobs
    without an estimate keep their input order after estimated ones of the
    same value; plain FIFO otherwise.
    """

    indices = list(range(len(jobs)))
    if not estimates:
        return indices
    return sorted(indices, key=lambda index: -float(estimates.get(jobs[index], 0.0)))


def recommended_worker_count(job_count: int) -> int:
    """Rough worker count for a suite size; callers still cap by available devices."""

    if job_count <= 3:
        return 1
    if job_count <= 10:
        return 2
    if job_count <= 20:
        return 3
    return 4


class ParallelScheduler:
    """Dispatch jobs to idle workers, consulting the result cache per job."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker_ids: Sequence[str],
        executor: Executor,
        max_concurrency: int,
        policy: RetryPolicy | None = None,
        cache: ResultCache | None = None,
        fingerprint_fn: FingerprintFn | None = None,
        observer: ProgressObserver | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not worker_ids:
            raise ConfigurationError("No workers available for parallel execution.")
        if max_concurrency < 1:
            raise ConfigurationError(f"max_concurrency must be >= 1, got {max_concurrency}.")
        self.worker_ids = list(worker_ids)
        self.slots = min(len(self.worker_ids), max_concurrency)
        self.pool = WorkerPool(self.worker_ids[: self.slots])
        self.executor = executor
        self.policy = policy or RetryPolicy(max_retries=0)
        self.cache = cache
        self.fingerprint_fn = fingerprint_fn
        self.observer = observer
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._clock = clock

    def cancel(self) -> None:
        """Stop dispatching; in-flight attempts finish on their own."""

        self.cancel_event.set()

    def run(
        self,
        jobs: Iterable[JobIdentity],
        *,
        estimates: Mapping[JobIdentity, float] | None = None,
    ) -> ScheduledRun:
        """Run every job once (plus retries) and return one result per job."""

        job_list = list(jobs)
        started = self._clock()
        results = self._dispatch(job_list, estimates=estimates)
        return ScheduledRun(
            results=results,
            stats=build_run_stats(
                results,
                wall_clock_seconds=self._clock() - started,
                worker_ids=self.worker_ids,
            ),
        )

    def run_in_batches(
        self,
        jobs: Iterable[JobIdentity],
        *,
        batch_size: int,
        pause_seconds: float = 2.0,
        estimates: Mapping[JobIdentity, float] | None = None,
    ) -> ScheduledRun:
        """Run jobs in consecutive batches, pausing between them."""

        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {batch_size}.")
        job_list = list(jobs)
        batches = [job_list[i : i + batch_size] for i in range(0, len(job_list), batch_size)]
        logger.info("Running %d job(s) in %d batch(es)", len(job_list), len(batches))

        started = self._clock()
        results: list[RunResult] = []
        for number, batch in enumerate(batches, start=1):
            logger.info("Batch %d/%d (%d jobs)", number, len(batches), len(batch))
            results.extend(self._dispatch(batch, estimates=estimates))
            if number < len(batches) and pause_seconds > 0 and not self.cancel_event.is_set():
                self._pause(pause_seconds)
        return ScheduledRun(
            results=results,
            stats=build_run_stats(
                results,
                wall_clock_seconds=self._clock() - started,
                worker_ids=self.worker_ids,
            ),
        )

    def _dispatch(
        self,
        job_list: list[JobIdentity],
        *,
        estimates: Mapping[JobIdentity, float] | None,
    ) -> list[RunResult]:
        if not job_list:
            return []

        pending = deque(order_jobs(job_list, estimates))
        by_index: dict[int, RunResult] = {}
        slots = threading.BoundedSemaphore(self.slots)
        futures: dict[Future[RunResult], int] = {}
        logger.info(
            "Running %d job(s) on %d worker(s), max concurrency %d%s",
            len(job_list),
            len(self.worker_ids),
            self.slots,
            " (longest first)" if estimates else "",
        )

        with ThreadPoolExecutor(
            max_workers=self.slots,
            thread_name_prefix="testpilot-job",
        ) as threads:
            while pending:
                if not self._acquire_slot(slots):
                    break
                index = pending.popleft()
                future = threads.submit(self._run_job, job_list[index])
                future.add_done_callback(lambda _: slots.release())
                futures[future] = index

        for future, index in futures.items():
            try:
                by_index[index] = future.result()
            except Exception as error:  # noqa: BLE001
                logger.exception("Job %s crashed outside the retry boundary", job_list[index])
                by_index[index] = RunResult(
                    identity=job_list[index],
                    passed=False,
                    failure_kind=FailureKind.EXECUTION_FAILURE,
                    error=f"{type(error).__name__}: {error}",
                )

        for index in pending:
            self._notify(job_list[index], None, JobStatus.CANCELLED)
            by_index[index] = RunResult(
                identity=job_list[index],
                passed=False,
                failure_kind=FailureKind.CANCELLED,
                error="Run canceled before the job was dispatched.",
            )
        if pending:
            logger.warning("Run canceled, %d job(s) not dispatched", len(pending))

        return [by_index[index] for index in range(len(job_list))]

    def _acquire_slot(self, slots: threading.BoundedSemaphore) -> bool:
        while not self.cancel_event.is_set():
            if slots.acquire(timeout=_DISPATCH_POLL_SECONDS):
                if self.cancel_event.is_set():
                    slots.release()
                    return False
                return True
        return False

    def _run_job(self, job: JobIdentity) -> RunResult:
        job_fingerprint = self._fingerprint(job)
        if job_fingerprint is not None and self.cache is not None:
            cached = self.cache.lookup(job, job_fingerprint)
            if cached is not None:
                logger.info("Job %s unchanged, using cached result", job)
                self._notify(job, cached.worker_id, JobStatus.CACHED)
                return RunResult(
                    identity=job,
                    passed=cached.passed,
                    failure_kind=None if cached.passed else FailureKind.EXECUTION_FAILURE,
                    error=None if cached.passed else cached.diagnostic,
                    from_cache=True,
                    cached=cached,
                )

        def _observed(job_id: JobIdentity, worker: Worker) -> object:
            self._notify(job_id, worker.worker_id, JobStatus.RUNNING)
            return self.executor(job_id, worker)

        retry = RetryExecutor(
            self.policy,
            workers=self.pool,
            sleep=self._sleep,
            cancel_event=self.cancel_event,
            clock=self._clock,
        )
        result = retry.run_with_retry(
            job,
            _observed,
            on_retry=lambda _attempt, _max, _delay: self._notify(job, None, JobStatus.RETRYING),
        )
        if result.failure_kind == FailureKind.CANCELLED and not result.attempts:
            self._notify(job, None, JobStatus.CANCELLED)
            return result
        self._notify(
            job,
            result.worker_id,
            JobStatus.PASSED if result.passed else JobStatus.FAILED,
        )

        if job_fingerprint is not None and self._should_store(result):
            last = result.attempts[-1]
            self.cache.store(
                job,
                job_fingerprint,
                passed=result.passed,
                duration_ms=int(last.duration_seconds * 1000),
                diagnostic=result.error,
                worker_id=last.worker_id,
            )
        return result

    def _should_store(self, result: RunResult) -> bool:
        """False after cancellation or when an attempt hit a configuration failure."""

        if self.cache is None or self.cancel_event.is_set():
            return False
        return not any(
            attempt.failure_kind == FailureKind.CONFIGURATION for attempt in result.attempts
        )

    def _fingerprint(self, job: JobIdentity) -> Fingerprint | None:
        if self.fingerprint_fn is None or self.cache is None:
            return None
        try:
            return self.fingerprint_fn(job)
        except OSError as error:
            logger.warning("Could not fingerprint %s, skipping cache: %s", job, error)
            return None

    def _notify(self, job: JobIdentity, worker_id: str | None, status: JobStatus) -> None:
        if self.observer is None:
            return
        try:
            self.observer(job, worker_id, status)
        except Exception:  # noqa: BLE001
            logger.debug("Progress observer failed for %s", job, exc_info=True)

    def _pause(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
            return
        self.cancel_event.wait(timeout=seconds)


def run_parallel(  # noqa: PLR0913
    jobs: Iterable[JobIdentity],
    workers: Sequence[str],
    executor: Executor,
    max_concurrency: int,
    *,
    policy: RetryPolicy | None = None,
    estimates: Mapping[JobIdentity, float] | None = None,
    cache: ResultCache | None = None,
    fingerprint_fn: FingerprintFn | None = None,
    observer: ProgressObserver | None = None,
    cancel_event: threading.Event | None = None,
) -> ScheduledRun:
    """One-shot helper around ``ParallelScheduler``; no retries unless a policy is given."""

    scheduler = ParallelScheduler(
        worker_ids=workers,
        executor=executor,
        max_concurrency=max_concurrency,
        policy=policy,
        cache=cache,
        fingerprint_fn=fingerprint_fn,
        observer=observer,
        cancel_event=cancel_event,
    )
    return scheduler.run(jobs, estimates=estimates)
