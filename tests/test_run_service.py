from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from testpilot.cache.repository import ResultCache
from testpilot.config import Settings
from testpilot.discovery.finder import JobFinder
from testpilot.errors import ConfigurationError
from testpilot.orchestrator.failure_classifier import retry_transient_only
from testpilot.orchestrator.models import ExecutorOutcome, Worker
from testpilot.orchestrator.services import RunService, build_retry_policy, estimate_durations

pytestmark = [
    allure.epic("Parallel Execution"),
    allure.feature("Run Service"),
]


class _Recorder:
    def __init__(self, failing: frozenset[str] = frozenset()) -> None:
        self.failing = failing
        self.jobs: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, job: str, worker: Worker) -> ExecutorOutcome:
        with self._lock:
            self.jobs.append(job)
        if job in self.failing:
            return ExecutorOutcome(passed=False, duration_seconds=0.2, error="assertion failed")
        return ExecutorOutcome(passed=True, duration_seconds=0.1)


def _settings(tmp_path: Path, project_root: Path) -> Settings:
    settings = Settings()
    settings.run.workers = ("d1", "d2")
    settings.run.max_concurrency = 2
    settings.retry.max_retries = 1
    settings.retry.initial_delay_seconds = 0.0
    settings.retry.max_delay_seconds = 0.0
    settings.cache.db_path = tmp_path / "cache" / "results.db"
    settings.discovery.root = project_root
    return settings


def test_second_run_is_served_from_cache(
    tmp_path: Path,
    project_root: Path,
    recording_sleep,
) -> None:
    settings = _settings(tmp_path, project_root)
    finder = JobFinder(project_root)

    first_executor = _Recorder()
    first = RunService(
        settings=settings,
        executor=first_executor,
        finder=finder,
        sleep=recording_sleep,
    ).run()
    assert sorted(first_executor.jobs) == sorted(finder.discover())
    assert first.stats.passed == 4

    (project_root / "test" / "login_test.dart").write_text("void main() {}\n", "utf-8")
    second_executor = _Recorder()
    second = RunService(
        settings=settings,
        executor=second_executor,
        finder=finder,
        sleep=recording_sleep,
    ).run()

    assert second_executor.jobs == ["test/login_test.dart"]
    assert second.stats.cached == 3
    assert second.stats.total == 4


def test_failures_are_retried_and_cached(
    tmp_path: Path,
    project_root: Path,
    recording_sleep,
) -> None:
    settings = _settings(tmp_path, project_root)
    executor = _Recorder(failing=frozenset({"tests/test_api.py"}))

    scheduled = RunService(
        settings=settings,
        executor=executor,
        finder=JobFinder(project_root),
        sleep=recording_sleep,
    ).run(["tests/test_api.py"])

    assert executor.jobs == ["tests/test_api.py", "tests/test_api.py"]
    assert not scheduled.results[0].passed
    with ResultCache(settings.cache.db_path) as cache:
        assert cache.list_identities() == ["tests/test_api.py"]
        assert cache.latest_durations(["tests/test_api.py"]) == {"tests/test_api.py": 0.2}


def test_disabled_cache_never_touches_disk(tmp_path: Path, project_root: Path) -> None:
    settings = _settings(tmp_path, project_root)
    settings.cache.enabled = False

    RunService(settings=settings, executor=_Recorder(), finder=JobFinder(project_root)).run()

    assert not settings.cache.db_path.exists()


def test_batch_size_runs_in_batches(
    tmp_path: Path,
    project_root: Path,
    recording_sleep,
) -> None:
    settings = _settings(tmp_path, project_root)
    settings.run.batch_size = 3

    scheduled = RunService(
        settings=settings,
        executor=_Recorder(),
        finder=JobFinder(project_root),
        sleep=recording_sleep,
    ).run()

    assert scheduled.stats.total == 4
    assert recording_sleep.delays == [2.0]


def test_invalid_settings_fail_before_dispatch(tmp_path: Path, project_root: Path) -> None:
    settings = _settings(tmp_path, project_root)
    settings.run.max_concurrency = 0
    executor = _Recorder()

    with pytest.raises(ConfigurationError):
        RunService(settings=settings, executor=executor, finder=JobFinder(project_root)).run()
    assert executor.jobs == []


def test_estimates_prefer_cached_durations(result_cache: ResultCache, project_root: Path) -> None:
    result_cache.store("a", "fp", passed=True, duration_ms=30_000)
    result_cache.store("b", "fp", passed=True, duration_ms=5_000)

    estimates = estimate_durations(["a", "b", "new"], cache=result_cache, finder=None)

    assert estimates == {"a": 30.0, "b": 5.0, "new": 30.0}


def test_estimates_fall_back_to_file_size(project_root: Path) -> None:
    finder = JobFinder(project_root)
    jobs = list(finder.discover())

    estimates = estimate_durations(jobs, cache=None, finder=finder)

    assert estimates is not None
    assert estimates["test/login_test.dart"] == float(
        (project_root / "test" / "login_test.dart").stat().st_size,
    )


def test_estimates_without_any_signal_are_fifo() -> None:
    assert estimate_durations(["a"], cache=None, finder=None) is None
    assert estimate_durations([], cache=None, finder=None) is None


def test_build_retry_policy_from_settings() -> None:
    settings = Settings()
    settings.run.attempt_timeout_seconds = 60.0
    settings.retry.retry_only_transient = True

    policy = build_retry_policy(settings)

    assert policy.max_attempts == 4
    assert policy.attempt_timeout_seconds is not None
    assert policy.attempt_timeout_seconds > 60.0
    assert policy.retriable_error_predicate is retry_transient_only

    settings.run.attempt_timeout_seconds = None
    assert build_retry_policy(settings).attempt_timeout_seconds is None
