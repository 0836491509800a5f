"""Controllers for testpilot CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from testpilot.cache.repository import ResultCache
from testpilot.config import Settings
from testpilot.discovery.finder import JobFinder
from testpilot.orchestrator.backend import CommandExecutor, JobExecutor
from testpilot.orchestrator.metrics import render_cache_lines, render_run_lines
from testpilot.orchestrator.models import JobIdentity, JobStatus
from testpilot.orchestrator.scheduler import recommended_worker_count
from testpilot.orchestrator.services import RunService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for a test run."""

    patterns: tuple[str, ...] = ()
    root: Path | None = None
    exclude: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    workers: tuple[str, ...] = ()
    max_concurrency: int | None = None
    max_retries: int | None = None
    initial_delay_seconds: float | None = None
    max_delay_seconds: float | None = None
    backoff_multiplier: float | None = None
    timeout_seconds: float | None = None
    command_template: str | None = None
    no_cache: bool = False
    db_path: Path | None = None
    batch_size: int | None = None
    retry_only_transient: bool = False


@dataclass(slots=True)
class DiscoverCommand:
    """CLI input for job listing."""

    patterns: tuple[str, ...] = ()
    root: Path | None = None
    exclude: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    group: bool = False
    name: str | None = None
    modified_within_hours: float | None = None


@dataclass(slots=True)
class CacheCommand:
    """CLI input shared by cache maintenance commands."""

    db_path: Path | None = None
    job: str | None = None
    max_age_days: int | None = None


@dataclass(slots=True)
class RunReport:
    """Run summary to render in CLI."""

    lines: list[str]
    success: bool


class PilotCliController:
    """Coordinates run, discovery and cache CLI operations."""

    def __init__(
        self,
        *,
        executor_factory: Callable[[Settings], JobExecutor] | None = None,
    ) -> None:
        self._executor_factory = executor_factory

    def run(
        self,
        command: RunCommand,
        *,
        progress: Callable[[str], None] | None = None,
    ) -> RunReport:
        settings = _apply_run_overrides(Settings.from_env(), command)
        settings.validate()
        finder = _finder(settings)
        cancel_event = threading.Event()
        executor = (
            self._executor_factory(settings)
            if self._executor_factory is not None
            else CommandExecutor(
                settings.run.command_template,
                cwd=finder.root,
                timeout_seconds=settings.run.attempt_timeout_seconds,
                shutdown_requested=cancel_event.is_set,
            )
        )
        service = RunService(
            settings=settings,
            executor=executor,
            finder=finder,
            observer=_progress_observer(progress),
            cancel_event=cancel_event,
        )

        with _signal_handlers(cancel_event):
            scheduled = service.run()

        if scheduled.stats.total == 0:
            return RunReport(lines=[f"No test files found under {finder.root}"], success=True)
        lines = render_run_lines(stats=scheduled.stats, results=scheduled.results)
        return RunReport(lines=lines, success=scheduled.stats.failed == 0)

    def discover(self, command: DiscoverCommand) -> list[str]:
        settings = Settings.from_env()
        _apply_discovery_overrides(
            settings,
            root=command.root,
            patterns=command.patterns,
            exclude=command.exclude,
            tags=command.tags,
        )
        finder = _finder(settings)

        if command.name:
            identities = finder.search_by_name(command.name)
        elif command.modified_within_hours is not None:
            identities = finder.find_recently_modified(command.modified_within_hours * 3600.0)
        else:
            identities = list(finder.discover())
        if not identities:
            return [f"No test files found under {finder.root}"]

        lines = [
            f"Found {len(identities)} test file(s) under {finder.root}",
            f"Suggested workers: {recommended_worker_count(len(identities))}",
        ]
        if command.group:
            for directory, members in sorted(finder.group_by_directory(identities).items()):
                lines.append(f"{directory}/ ({len(members)})")
                lines.extend(f"  {_describe(finder, identity)}" for identity in members)
        else:
            lines.extend(_describe(finder, identity) for identity in identities)

        tags = finder.all_tags()
        if tags:
            lines.append("Tags: " + ", ".join(tags))
        return lines

    def cache_stats(self, command: CacheCommand) -> list[str]:
        settings = _cache_settings(command)
        with _cache(settings) as cache:
            return render_cache_lines(cache.stats())

    def cache_clear(self, command: CacheCommand) -> list[str]:
        settings = _cache_settings(command)
        with _cache(settings) as cache:
            if command.job:
                deleted = cache.invalidate(command.job)
                return [f"Invalidated {deleted} cached result(s) for {command.job}"]
            deleted = cache.clear_all()
        return [f"Cleared {deleted} cached result(s)"]

    def cache_prune(self, command: CacheCommand) -> list[str]:
        settings = _cache_settings(command)
        max_age_days = (
            command.max_age_days
            if command.max_age_days is not None
            else settings.cache.max_age_days
        )
        with _cache(settings) as cache:
            deleted = cache.prune(max_age_days)
        return [f"Pruned {deleted} cached result(s) older than {max_age_days} day(s)"]

    def cache_list(self, command: CacheCommand) -> list[str]:
        settings = _cache_settings(command)
        with _cache(settings) as cache:
            identities = cache.list_identities()
        if not identities:
            return ["Cache is empty"]
        return [f"Cached jobs: {len(identities)}", *identities]


def _apply_run_overrides(settings: Settings, command: RunCommand) -> Settings:  # noqa: C901
    _apply_discovery_overrides(
        settings,
        root=command.root,
        patterns=command.patterns,
        exclude=command.exclude,
        tags=command.tags,
    )
    if command.workers:
        settings.run.workers = tuple(command.workers)
    if command.max_concurrency is not None:
        settings.run.max_concurrency = command.max_concurrency
    if command.timeout_seconds is not None:
        settings.run.attempt_timeout_seconds = command.timeout_seconds
    if command.command_template is not None:
        settings.run.command_template = command.command_template
    if command.batch_size is not None:
        settings.run.batch_size = command.batch_size
    if command.max_retries is not None:
        settings.retry.max_retries = command.max_retries
    if command.initial_delay_seconds is not None:
        settings.retry.initial_delay_seconds = command.initial_delay_seconds
    if command.max_delay_seconds is not None:
        settings.retry.max_delay_seconds = command.max_delay_seconds
    if command.backoff_multiplier is not None:
        settings.retry.backoff_multiplier = command.backoff_multiplier
    if command.retry_only_transient:
        settings.retry.retry_only_transient = True
    if command.no_cache:
        settings.cache.enabled = False
    if command.db_path is not None:
        settings.cache.db_path = command.db_path
    return settings


def _apply_discovery_overrides(
    settings: Settings,
    *,
    root: Path | None,
    patterns: tuple[str, ...],
    exclude: tuple[str, ...],
    tags: tuple[str, ...],
) -> None:
    if root is not None:
        settings.discovery.root = root
    if patterns:
        settings.discovery.include_globs = tuple(patterns)
    if exclude:
        settings.discovery.exclude_globs = (*settings.discovery.exclude_globs, *exclude)
    if tags:
        settings.discovery.tags = tuple(tags)


def _cache_settings(command: CacheCommand) -> Settings:
    settings = Settings.from_env()
    if command.db_path is not None:
        settings.cache.db_path = command.db_path
    return settings


def _finder(settings: Settings) -> JobFinder:
    return JobFinder(
        settings.discovery.root,
        include_globs=settings.discovery.include_globs,
        exclude_globs=settings.discovery.exclude_globs,
        tags=settings.discovery.tags,
    )


def _describe(finder: JobFinder, identity: JobIdentity) -> str:
    metadata = finder.get_metadata(identity)
    tags = f" tags={','.join(sorted(metadata.tags))}" if metadata.tags else ""
    return f"{identity} cases={metadata.case_count} size={metadata.size}B{tags}"


def _progress_observer(
    progress: Callable[[str], None] | None,
) -> Callable[[JobIdentity, str | None, JobStatus], None] | None:
    if progress is None:
        return None

    def _observer(job: JobIdentity, worker_id: str | None, status: JobStatus) -> None:
        where = f" on {worker_id}" if worker_id else ""
        progress(f"[{status.value}] {job}{where}")

    return _observer


@contextmanager
def _cache(settings: Settings) -> Iterator[ResultCache]:
    cache = ResultCache(settings.cache.db_path, busy_timeout_ms=settings.cache.busy_timeout_ms)
    cache.initialize()
    try:
        yield cache
    finally:
        cache.close()


@contextmanager
def _signal_handlers(cancel_event: threading.Event) -> Iterator[None]:
    """Route SIGINT/SIGTERM to the run's cancel event while the block runs."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, finishing in-flight jobs and skipping the rest", name)
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
