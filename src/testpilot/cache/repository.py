"""Persistent result cache backed by SQLModel + SQLite.

The cache is strictly advisory: every public read or write swallows storage
errors, logs them, and degrades to a miss (or a no-op). Callers never see a
storage exception and a job's outcome never depends on cache health.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from types import TracebackType

from alembic.script.revision import RevisionError
from alembic.util import CommandError
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, delete, select

from testpilot.errors import CacheError
from testpilot.orchestrator.models import (
    CachedResult,
    CacheStats,
    Fingerprint,
    JobIdentity,
)
from testpilot.storage.alembic_runner import upgrade_head
from testpilot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from testpilot.storage.sqlmodel_models import CachedResultRow

logger = logging.getLogger(__name__)

_STORAGE_ERRORS = (SQLAlchemyError, sqlite3.Error, OSError, CacheError)
_INIT_ERRORS = (*_STORAGE_ERRORS, CommandError, RevisionError)
_LOOKUP_CHUNK = 500


class ResultCache:
    """Maps (job identity, fingerprint) to the newest stored result."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None
        self._write_lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._engine is not None

    def initialize(self) -> bool:
        """Create the database and apply migrations; returns False when degraded."""

        if self._engine is not None:
            return True
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            upgrade_head(self.db_path)
            self._engine = build_sqlite_engine(
                db_path=self.db_path,
                busy_timeout_ms=self.busy_timeout_ms,
            )
        except _INIT_ERRORS as error:
            logger.warning(
                "Result cache unavailable at %s, running uncached: %s",
                self.db_path,
                error,
            )
            self._engine = None
            return False
        logger.debug("Result cache initialized at %s", self.db_path)
        return True

    def close(self) -> None:
        """Dispose engine resources."""

        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> ResultCache:
        self.initialize()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def lookup(self, identity: JobIdentity, fingerprint: Fingerprint) -> CachedResult | None:
        """Return the newest result stored for this exact fingerprint, else None."""

        try:
            with Session(self._require_engine()) as session:
                row = session.exec(
                    select(CachedResultRow)
                    .where(
                        CachedResultRow.job_identity == identity,
                        CachedResultRow.job_fingerprint == fingerprint,
                    )
                    .order_by(
                        col(CachedResultRow.timestamp).desc(),
                        col(CachedResultRow.id).desc(),
                    )
                    .limit(1),
                ).first()
        except _STORAGE_ERRORS as error:
            logger.warning("Cache lookup failed for %s, treating as miss: %s", identity, error)
            return None
        if row is None:
            return None
        return _to_cached_result(row)

    def store(  # noqa: PLR0913
        self,
        identity: JobIdentity,
        fingerprint: Fingerprint,
        *,
        passed: bool,
        duration_ms: int,
        diagnostic: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Upsert the (identity, fingerprint) row; last writer wins."""

        now = to_db_datetime(utc_now())
        try:
            with self._write_lock, Session(self._require_engine()) as session:
                for _ in range(2):
                    row = session.exec(
                        select(CachedResultRow).where(
                            CachedResultRow.job_identity == identity,
                            CachedResultRow.job_fingerprint == fingerprint,
                        ),
                    ).first()
                    if row is None:
                        row = CachedResultRow(
                            job_identity=identity,
                            job_fingerprint=fingerprint,
                            passed=passed,
                            duration_ms=max(0, int(duration_ms)),
                            timestamp=now,
                        )
                    row.passed = passed
                    row.duration_ms = max(0, int(duration_ms))
                    row.diagnostic = diagnostic
                    row.worker_id = worker_id
                    row.timestamp = now
                    session.add(row)
                    try:
                        session.commit()
                        return True
                    except IntegrityError:
                        # Another process inserted the same pair first; update it instead.
                        session.rollback()
                raise CacheError(f"Could not upsert cache row for {identity}")
        except _STORAGE_ERRORS as error:
            logger.warning("Cache store failed for %s: %s", identity, error)
            return False

    def invalidate(self, identity: JobIdentity) -> int:
        """Delete every row for the identity; returns number of deleted rows."""

        return self._delete(
            delete(CachedResultRow).where(col(CachedResultRow.job_identity) == identity),
            description=f"invalidate {identity}",
        )

    def clear_all(self) -> int:
        """Delete every cached result."""

        return self._delete(delete(CachedResultRow), description="clear")

    def prune(self, max_age_days: int, *, now: datetime | None = None) -> int:
        """Delete rows older than ``max_age_days``."""

        cutoff = to_db_datetime((now or utc_now()) - timedelta(days=max_age_days))
        return self._delete(
            delete(CachedResultRow).where(col(CachedResultRow.timestamp) < cutoff),
            description=f"prune older than {max_age_days}d",
        )

    def list_identities(self) -> list[JobIdentity]:
        """Distinct cached identities, sorted."""

        try:
            with Session(self._require_engine()) as session:
                rows = session.exec(
                    select(CachedResultRow.job_identity)
                    .distinct()
                    .order_by(col(CachedResultRow.job_identity).asc()),
                ).all()
        except _STORAGE_ERRORS as error:
            logger.warning("Cache listing failed: %s", error)
            return []
        return [str(identity) for identity in rows]

    def latest_durations(self, identities: Iterable[JobIdentity]) -> dict[JobIdentity, float]:
        """Duration in seconds of the newest row per identity, any fingerprint.

        Used as the duration estimate for longest-first dispatch.
        """

        wanted = list(dict.fromkeys(identities))
        durations: dict[JobIdentity, float] = {}
        if not wanted:
            return durations
        try:
            with Session(self._require_engine()) as session:
                for start in range(0, len(wanted), _LOOKUP_CHUNK):
                    chunk = wanted[start : start + _LOOKUP_CHUNK]
                    rows = session.exec(
                        select(CachedResultRow)
                        .where(col(CachedResultRow.job_identity).in_(chunk))
                        .order_by(
                            col(CachedResultRow.timestamp).asc(),
                            col(CachedResultRow.id).asc(),
                        ),
                    ).all()
                    for row in rows:
                        durations[row.job_identity] = row.duration_ms / 1000.0
        except _STORAGE_ERRORS as error:
            logger.warning("Cache duration lookup failed: %s", error)
            return {}
        return durations

    def stats(self) -> CacheStats:
        """Aggregate counts for observability; zeros when the cache is degraded."""

        try:
            with Session(self._require_engine()) as session:
                total, passed, average = session.exec(
                    select(
                        func.count(col(CachedResultRow.id)),
                        func.coalesce(func.sum(col(CachedResultRow.passed)), 0),
                        func.avg(col(CachedResultRow.duration_ms)),
                    ),
                ).one()
        except _STORAGE_ERRORS as error:
            logger.warning("Cache stats failed: %s", error)
            return CacheStats(
                total=0,
                passed=0,
                failed=0,
                average_duration_ms=0.0,
                size_bytes=0,
                db_path=str(self.db_path),
            )
        total = int(total or 0)
        passed = int(passed or 0)
        return CacheStats(
            total=total,
            passed=passed,
            failed=total - passed,
            average_duration_ms=float(average or 0.0),
            size_bytes=self._size_bytes(),
            db_path=str(self.db_path),
        )

    def _delete(self, statement, *, description: str) -> int:
        try:
            with self._write_lock, Session(self._require_engine()) as session:
                result = session.exec(statement)
                session.commit()
                return int(result.rowcount or 0)
        except _STORAGE_ERRORS as error:
            logger.warning("Cache %s failed: %s", description, error)
            return 0

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise CacheError(f"Result cache at {self.db_path} is not initialized.")
        return self._engine

    def _size_bytes(self) -> int:
        size = 0
        for suffix in ("", "-wal", "-shm"):
            path = Path(f"{self.db_path}{suffix}")
            try:
                size += path.stat().st_size
            except OSError:
                continue
        return size


def _to_cached_result(row: CachedResultRow) -> CachedResult:
    return CachedResult(
        identity=row.job_identity,
        fingerprint=row.job_fingerprint,
        passed=bool(row.passed),
        duration_ms=int(row.duration_ms),
        timestamp=to_utc_aware(row.timestamp),
        diagnostic=row.diagnostic,
        worker_id=row.worker_id,
    )
