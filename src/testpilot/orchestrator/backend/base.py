"""Executor interface for scheduled jobs."""

from __future__ import annotations

from typing import Protocol

from testpilot.orchestrator.models import ExecutorOutcome, JobIdentity, Worker


class JobExecutor(Protocol):
    """Protocol implemented by job runners.

    Implementations run one attempt of ``job`` on ``worker`` and may block.
    Raising ``ExecutionFailure`` tags the failure kind; any other exception
    is recorded as a plain execution failure.
    """

    def __call__(self, job: JobIdentity, worker: Worker) -> ExecutorOutcome:
        """Run a single attempt and report its outcome."""
