"""Subprocess-based executor running one shell command per job attempt."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import IO

from testpilot.errors import AttemptTimeoutError, ConfigurationError, ExecutionFailure
from testpilot.orchestrator.models import ExecutorOutcome, FailureKind, JobIdentity, Worker

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_STDERR_TAIL_CHARS = 4_000


class CommandExecutor:
    """Execute a command template rendered with ``{job}`` and ``{worker}``.

    Exit code 0 is a pass. Anything else is a failed attempt whose diagnostic
    is the tail of stderr (or stdout when stderr is empty). A command that
    cannot be found is a configuration failure; other start-up errors are
    transient.
    """

    def __init__(  # noqa: PLR0913
        self,
        command_template: str,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float = 5.0,
    ) -> None:
        if not command_template.strip():
            raise ConfigurationError(
                "Command template is empty. Pass --command or set TESTPILOT_COMMAND_TEMPLATE.",
            )
        if "{job}" not in command_template:
            raise ConfigurationError("Command template must include {job}.")
        self.command_template = command_template.strip()
        build_run_args(self.command_template, job="job", worker="worker")
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self.timeout_seconds = timeout_seconds
        self.shutdown_requested = shutdown_requested
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def __call__(self, job: JobIdentity, worker: Worker) -> ExecutorOutcome:
        run_args = build_run_args(self.command_template, job=job, worker=worker.worker_id)
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        env["TESTPILOT_JOB"] = job
        env["TESTPILOT_WORKER"] = worker.worker_id

        logger.debug("Running %s on %s: %s", job, worker.worker_id, shlex.join(run_args))
        started = time.monotonic()
        try:
            with (
                tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
            ):
                returncode, timed_out = self._run_subprocess(
                    run_args=run_args,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
                stderr_text = _read_tail(stderr_handle)
                stdout_text = _read_tail(stdout_handle)
        except FileNotFoundError as error:
            raise ExecutionFailure(
                f"Command not found: {run_args[0]}",
                kind=FailureKind.CONFIGURATION,
            ) from error
        except OSError as error:
            raise ExecutionFailure(
                f"Command failed to start: {error}",
                kind=FailureKind.TRANSIENT,
            ) from error

        duration = time.monotonic() - started
        if timed_out:
            raise AttemptTimeoutError(
                f"Job {job!r} exceeded {self.timeout_seconds}s on {worker.worker_id}, "
                "process terminated.",
            )
        if returncode == 0:
            return ExecutorOutcome(passed=True, duration_seconds=duration)
        diagnostic = (stderr_text or stdout_text).strip()
        return ExecutorOutcome(
            passed=False,
            duration_seconds=duration,
            error=f"exit code {returncode}" + (f": {diagnostic}" if diagnostic else ""),
        )

    def _run_subprocess(
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        stdout_handle: IO[str],
        stderr_handle: IO[str],
    ) -> tuple[int, bool]:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=self.cwd,
            env=env,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None

        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False

            now = time.monotonic()
            if self.timeout_seconds is not None and now - start_monotonic >= self.timeout_seconds:
                _terminate_process(process)
                return 124, True

            if self.shutdown_requested is not None and self.shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + max(0.0, self.graceful_shutdown_seconds)
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return 130, False

            time.sleep(_POLL_SECONDS)


def build_run_args(command_template: str, *, job: JobIdentity, worker: str) -> list[str]:
    """Render the template with shell-quoted values and split it into argv."""

    try:
        rendered = command_template.format(job=shlex.quote(job), worker=shlex.quote(worker))
    except (KeyError, IndexError) as error:
        raise ConfigurationError(f"Unsupported command template placeholder: {error}") from error
    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise ConfigurationError(f"Command template is not valid shell syntax: {error}") from error
    if not argv:
        raise ConfigurationError("Command template rendered an empty command.")
    return argv


def _read_tail(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    text = handle.read()
    return text[-_STDERR_TAIL_CHARS:]


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
