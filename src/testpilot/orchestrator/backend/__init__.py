"""Job executor implementations."""

from testpilot.orchestrator.backend.base import JobExecutor
from testpilot.orchestrator.backend.command import CommandExecutor

__all__ = [
    "CommandExecutor",
    "JobExecutor",
]
