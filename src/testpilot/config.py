"""Runtime configuration for discovery, scheduling, retries and the result cache."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from testpilot.errors import ConfigurationError

DEFAULT_INCLUDE_GLOBS: tuple[str, ...] = (
    "integration_test/**/*_test.*",
    "test/**/*_test.*",
    "tests/**/test_*.py",
)
DEFAULT_CACHE_DB_PATH = Path(".testpilot") / "cache" / "test_cache.db"


@dataclass(slots=True)
class RunSettings:
    """Scheduler and executor settings."""

    max_concurrency: int = 2
    workers: tuple[str, ...] = ("local",)
    attempt_timeout_seconds: float | None = 600.0
    command_template: str = ""
    batch_size: int = 0


@dataclass(slots=True)
class RetrySettings:
    """Retry policy settings."""

    max_retries: int = 3
    initial_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 120.0
    retry_only_transient: bool = False


@dataclass(slots=True)
class CacheSettings:
    """Result cache settings."""

    enabled: bool = True
    db_path: Path = DEFAULT_CACHE_DB_PATH
    max_age_days: int = 30
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class DiscoverySettings:
    """Job discovery settings."""

    root: Path = Path(".")
    include_globs: tuple[str, ...] = DEFAULT_INCLUDE_GLOBS
    exclude_globs: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    run: RunSettings = field(default_factory=RunSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local runs."""

        return cls(
            run=RunSettings(
                max_concurrency=_env_int("TESTPILOT_MAX_CONCURRENCY", 2),
                workers=_env_csv("TESTPILOT_WORKERS") or ("local",),
                attempt_timeout_seconds=_env_optional_float(
                    "TESTPILOT_ATTEMPT_TIMEOUT_SECONDS",
                    600.0,
                ),
                command_template=os.getenv("TESTPILOT_COMMAND_TEMPLATE", "").strip(),
                batch_size=_env_int("TESTPILOT_BATCH_SIZE", 0),
            ),
            retry=RetrySettings(
                max_retries=_env_int("TESTPILOT_MAX_RETRIES", 3),
                initial_delay_seconds=_env_float("TESTPILOT_INITIAL_DELAY_SECONDS", 5.0),
                backoff_multiplier=_env_float("TESTPILOT_BACKOFF_MULTIPLIER", 2.0),
                max_delay_seconds=_env_float("TESTPILOT_MAX_DELAY_SECONDS", 120.0),
                retry_only_transient=_env_bool("TESTPILOT_RETRY_ONLY_TRANSIENT", default=False),
            ),
            cache=CacheSettings(
                enabled=_env_bool("TESTPILOT_CACHE_ENABLED", default=True),
                db_path=Path(os.getenv("TESTPILOT_CACHE_DB_PATH", str(DEFAULT_CACHE_DB_PATH))),
                max_age_days=_env_int("TESTPILOT_CACHE_MAX_AGE_DAYS", 30),
                busy_timeout_ms=_env_int("TESTPILOT_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            discovery=DiscoverySettings(
                root=Path(os.getenv("TESTPILOT_DISCOVERY_ROOT", ".")),
                include_globs=_env_csv("TESTPILOT_INCLUDE_GLOBS") or DEFAULT_INCLUDE_GLOBS,
                exclude_globs=_env_csv("TESTPILOT_EXCLUDE_GLOBS"),
                tags=_env_csv("TESTPILOT_TAGS"),
            ),
        )

    def validate(self) -> None:
        """Raise ConfigurationError if any setting is out of range."""

        if self.run.max_concurrency < 1:
            raise ConfigurationError("TESTPILOT_MAX_CONCURRENCY must be >= 1.")
        if not self.run.workers:
            raise ConfigurationError("At least one worker is required. Set TESTPILOT_WORKERS.")
        if len(set(self.run.workers)) != len(self.run.workers):
            raise ConfigurationError(f"Worker ids must be unique: {', '.join(self.run.workers)}")
        if self.run.attempt_timeout_seconds is not None and self.run.attempt_timeout_seconds <= 0:
            raise ConfigurationError("TESTPILOT_ATTEMPT_TIMEOUT_SECONDS must be > 0.")
        if self.run.batch_size < 0:
            raise ConfigurationError("TESTPILOT_BATCH_SIZE must be >= 0.")
        if self.retry.max_retries < 0:
            raise ConfigurationError("TESTPILOT_MAX_RETRIES must be >= 0.")
        if self.retry.initial_delay_seconds < 0:
            raise ConfigurationError("TESTPILOT_INITIAL_DELAY_SECONDS must be >= 0.")
        if self.retry.backoff_multiplier <= 1:
            raise ConfigurationError("TESTPILOT_BACKOFF_MULTIPLIER must be > 1.")
        if self.retry.max_delay_seconds < self.retry.initial_delay_seconds:
            raise ConfigurationError(
                "TESTPILOT_MAX_DELAY_SECONDS must be >= TESTPILOT_INITIAL_DELAY_SECONDS.",
            )
        if self.cache.max_age_days < 0:
            raise ConfigurationError("TESTPILOT_CACHE_MAX_AGE_DAYS must be >= 0.")
        if not self.discovery.include_globs:
            raise ConfigurationError("At least one include glob is required.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}.") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}.") from error


def _env_optional_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name, "").strip().lower()
    if raw in {"none", "off", "0"}:
        return None
    return _env_float(name, default) if raw else default


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, *, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")
