"""Use-case services tying discovery, the result cache and the scheduler together."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence

from testpilot.cache.hasher import ContentHasher
from testpilot.cache.repository import ResultCache
from testpilot.config import Settings
from testpilot.discovery.finder import JobFinder
from testpilot.orchestrator.failure_classifier import retry_transient_only
from testpilot.orchestrator.models import JobIdentity, RetryPolicy
from testpilot.orchestrator.retry import Executor
from testpilot.orchestrator.scheduler import ParallelScheduler, ProgressObserver, ScheduledRun

logger = logging.getLogger(__name__)

# Extra room for an executor's own timeout handling before the attempt is abandoned.
_ATTEMPT_TIMEOUT_GRACE_SECONDS = 5.0


def build_retry_policy(settings: Settings) -> RetryPolicy:
    """Translate retry and run settings into a ``RetryPolicy``."""

    timeout = settings.run.attempt_timeout_seconds
    return RetryPolicy(
        max_retries=settings.retry.max_retries,
        initial_delay_seconds=settings.retry.initial_delay_seconds,
        backoff_multiplier=settings.retry.backoff_multiplier,
        max_delay_seconds=settings.retry.max_delay_seconds,
        retriable_error_predicate=(
            retry_transient_only if settings.retry.retry_only_transient else None
        ),
        attempt_timeout_seconds=(
            None if timeout is None else timeout + _ATTEMPT_TIMEOUT_GRACE_SECONDS
        ),
    )


def estimate_durations(
    jobs: Sequence[JobIdentity],
    *,
    cache: ResultCache | None,
    finder: JobFinder | None,
) -> dict[JobIdentity, float] | None:
    """Duration estimates for longest-first dispatch.

    Cached durations (newest row per identity) win; jobs without history get
    the largest known estimate so new files are not starved at the tail.
    With no history at all, file size stands in as a proxy since only the
    relative order matters. Returns None when nothing is known (FIFO).
    """

    if not jobs:
        return None

    known = cache.latest_durations(jobs) if cache is not None and cache.available else {}
    if known:
        ceiling = max(known.values())
        return {job: known.get(job, ceiling) for job in jobs}

    if finder is None:
        return None
    sizes: dict[JobIdentity, float] = {}
    for job in jobs:
        try:
            sizes[job] = float(finder.path_for(job).stat().st_size)
        except OSError:
            continue
    return sizes or None


class RunService:
    """Discover jobs and run them through the cache-aware parallel scheduler."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        executor: Executor,
        finder: JobFinder | None = None,
        observer: ProgressObserver | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.finder = finder
        self.observer = observer
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep

    def discover(self) -> list[JobIdentity]:
        if self.finder is None:
            return []
        return list(self.finder.discover())

    def run(self, jobs: Iterable[JobIdentity] | None = None) -> ScheduledRun:
        """Run ``jobs`` (or everything discovered) and return ordered results."""

        self.settings.validate()
        job_list = list(jobs) if jobs is not None else self.discover()
        cache = self._open_cache()
        try:
            estimates = estimate_durations(job_list, cache=cache, finder=self.finder)
            scheduler = ParallelScheduler(
                worker_ids=self.settings.run.workers,
                executor=self.executor,
                max_concurrency=self.settings.run.max_concurrency,
                policy=build_retry_policy(self.settings),
                cache=cache,
                fingerprint_fn=self._hasher(),
                observer=self.observer,
                cancel_event=self.cancel_event,
                sleep=self._sleep,
            )
            if self.settings.run.batch_size > 0:
                return scheduler.run_in_batches(
                    job_list,
                    batch_size=self.settings.run.batch_size,
                    estimates=estimates,
                )
            return scheduler.run(job_list, estimates=estimates)
        finally:
            if cache is not None:
                cache.close()

    def _open_cache(self) -> ResultCache | None:
        if not self.settings.cache.enabled:
            logger.info("Result cache disabled")
            return None
        cache = ResultCache(
            self.settings.cache.db_path,
            busy_timeout_ms=self.settings.cache.busy_timeout_ms,
        )
        if not cache.initialize():
            return None
        return cache

    def _hasher(self) -> ContentHasher:
        root = self.finder.root if self.finder is not None else self.settings.discovery.root
        return ContentHasher(root)
