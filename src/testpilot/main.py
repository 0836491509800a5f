"""CLI entrypoint for testpilot."""

import logging
from pathlib import Path

import rich_click as click

from testpilot import __version__
from testpilot.errors import ConfigurationError
from testpilot.orchestrator.controllers import (
    CacheCommand,
    DiscoverCommand,
    PilotCliController,
    RunCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PilotCliController()


@click.group()
@click.version_option(version=__version__, prog_name="testpilot")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def testpilot(verbose: bool) -> None:
    """Parallel test runner with result caching and retries."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@testpilot.command("run")
@click.argument("patterns", nargs=-1)
@click.option("--root", type=click.Path(path_type=Path), default=None, help="Project root.")
@click.option("--exclude", multiple=True, help="Exclude glob or substring. Can be repeated.")
@click.option("--tag", "tags", multiple=True, help="Only run files declaring this tag.")
@click.option("--worker", "workers", multiple=True, help="Worker id (device). Can be repeated.")
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None)
@click.option("--max-retries", type=click.IntRange(min=0), default=None)
@click.option("--initial-delay", type=click.FloatRange(min=0), default=None, help="Seconds.")
@click.option("--max-delay", type=click.FloatRange(min=0), default=None, help="Seconds.")
@click.option("--backoff-multiplier", type=click.FloatRange(min=1, min_open=True), default=None)
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Command template run per job. Supports {job} and {worker}. "
        "If omitted, TESTPILOT_COMMAND_TEMPLATE is used."
    ),
)
@click.option("--retry-only-transient", is_flag=True, help="Do not retry deterministic failures.")
@click.option("--no-cache", is_flag=True, help="Run every job, ignoring cached results.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Cache DB path.")
@click.option("--batch-size", type=click.IntRange(min=0), default=None)
def run(  # noqa: PLR0913
    patterns: tuple[str, ...],
    root: Path | None,
    exclude: tuple[str, ...],
    tags: tuple[str, ...],
    workers: tuple[str, ...],
    max_concurrency: int | None,
    max_retries: int | None,
    initial_delay: float | None,
    max_delay: float | None,
    backoff_multiplier: float | None,
    timeout: float | None,
    command_template: str | None,
    retry_only_transient: bool,
    no_cache: bool,
    db_path: Path | None,
    batch_size: int | None,
) -> None:
    """Discover tests and run them in parallel across workers."""

    try:
        report = CONTROLLER.run(
            RunCommand(
                patterns=patterns,
                root=root,
                exclude=exclude,
                tags=tags,
                workers=workers,
                max_concurrency=max_concurrency,
                max_retries=max_retries,
                initial_delay_seconds=initial_delay,
                max_delay_seconds=max_delay,
                backoff_multiplier=backoff_multiplier,
                timeout_seconds=timeout,
                command_template=command_template,
                no_cache=no_cache,
                db_path=db_path,
                batch_size=batch_size,
                retry_only_transient=retry_only_transient,
            ),
            progress=click.echo,
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException("Some test jobs failed.")


@testpilot.command("discover")
@click.argument("patterns", nargs=-1)
@click.option("--root", type=click.Path(path_type=Path), default=None, help="Project root.")
@click.option("--exclude", multiple=True, help="Exclude glob or substring. Can be repeated.")
@click.option("--tag", "tags", multiple=True, help="Only list files declaring this tag.")
@click.option("--group", is_flag=True, help="Group files by directory.")
@click.option("--name", default=None, help="Case-insensitive regex on file names.")
@click.option(
    "--modified-within",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Only files modified within this many hours.",
)
def discover(  # noqa: PLR0913
    patterns: tuple[str, ...],
    root: Path | None,
    exclude: tuple[str, ...],
    tags: tuple[str, ...],
    group: bool,
    name: str | None,
    modified_within: float | None,
) -> None:
    """List test files that a run would pick up."""

    try:
        lines = CONTROLLER.discover(
            DiscoverCommand(
                patterns=patterns,
                root=root,
                exclude=exclude,
                tags=tags,
                group=group,
                name=name,
                modified_within_hours=modified_within,
            ),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@testpilot.group()
def cache() -> None:
    """Result cache commands."""


@cache.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Cache DB path.")
def cache_stats(db_path: Path | None) -> None:
    """Show cached result counts and cache size."""

    try:
        lines = CONTROLLER.cache_stats(CacheCommand(db_path=db_path))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@cache.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Cache DB path.")
@click.option("--job", default=None, help="Only invalidate this job identity.")
def cache_clear(db_path: Path | None, job: str | None) -> None:
    """Delete cached results for one job or all jobs."""

    try:
        lines = CONTROLLER.cache_clear(CacheCommand(db_path=db_path, job=job))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@cache.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Cache DB path.")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=0),
    default=None,
    help="Defaults to TESTPILOT_CACHE_MAX_AGE_DAYS (30).",
)
def cache_prune(db_path: Path | None, max_age_days: int | None) -> None:
    """Delete cached results older than the max age."""

    try:
        lines = CONTROLLER.cache_prune(CacheCommand(db_path=db_path, max_age_days=max_age_days))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@cache.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Cache DB path.")
def cache_list(db_path: Path | None) -> None:
    """List job identities with cached results."""

    try:
        lines = CONTROLLER.cache_list(CacheCommand(db_path=db_path))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    testpilot()
