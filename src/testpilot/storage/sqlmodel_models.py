"""SQLModel ORM tables for the result cache."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class CachedResultRow(SQLModel, table=True):
    __tablename__ = "test_results"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "job_identity",
            "job_fingerprint",
            name="uq_test_results_identity_fingerprint",
        ),
        Index("idx_test_results_identity", "job_identity"),
        Index("idx_test_results_timestamp", "timestamp"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_identity: str
    job_fingerprint: str
    passed: bool
    duration_ms: int
    diagnostic: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    worker_id: str | None = None
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
