from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
from click.testing import CliRunner

from testpilot.main import testpilot

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Run, Discover and Cache Commands"),
]

_FAKE_RUNNER = """\
import sys

job = sys.argv[1]
if "checkout" in job:
    sys.stderr.write("Expected: paid, Actual: declined\\n")
    sys.exit(1)
"""


def _command(tmp_path: Path) -> str:
    script = tmp_path / "fake_runner.py"
    script.write_text(_FAKE_RUNNER, "utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{job}} {{worker}}"


def _run_args(tmp_path: Path, project_root: Path, *extra: str) -> list[str]:
    return [
        "run",
        "--root",
        str(project_root),
        "--db-path",
        str(tmp_path / "cli-cache.db"),
        "--worker",
        "d1",
        "--worker",
        "d2",
        "--max-retries",
        "0",
        "--command",
        _command(tmp_path),
        *extra,
    ]


def test_run_reports_summary_and_fails_on_failed_job(tmp_path: Path, project_root: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(testpilot, _run_args(tmp_path, project_root))

    assert result.exit_code == 1, result.output
    assert "Test run summary" in result.output
    assert "Total: 4 passed=3 failed=1" in result.output
    assert "[running] test/login_test.dart on d" in result.output
    assert "integration_test/checkout_test.dart [retry_exhausted]" in result.output
    assert "Expected: paid, Actual: declined" in result.output


def test_run_second_time_uses_cache(tmp_path: Path, project_root: Path) -> None:
    runner = CliRunner()
    args = _run_args(tmp_path, project_root, "--exclude", "checkout")

    first = runner.invoke(testpilot, args)
    assert first.exit_code == 0, first.output

    second = runner.invoke(testpilot, args)
    assert second.exit_code == 0, second.output
    assert "cached=3" in second.output
    assert "[cached] test/login_test.dart" in second.output


def test_run_without_command_template_is_usage_error(tmp_path: Path, project_root: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(testpilot, ["run", "--root", str(project_root), "--no-cache"])

    assert result.exit_code == 1
    assert "Command template is empty" in result.output


def test_run_with_missing_root_is_usage_error(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(testpilot, ["run", "--root", str(tmp_path / "missing")])

    assert result.exit_code == 1
    assert "Discovery root does not exist" in result.output


def test_discover_lists_files_with_metadata(project_root: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(testpilot, ["discover", "--root", str(project_root), "--group"])

    assert result.exit_code == 0, result.output
    assert "Found 4 test file(s)" in result.output
    assert "Suggested workers: 2" in result.output
    assert "test/widgets/ (1)" in result.output
    assert "test/login_test.dart cases=2" in result.output
    assert "tags=auth,smoke" in result.output
    assert "Tags: auth, payments, slow, smoke" in result.output


def test_discover_by_tag_and_name(project_root: Path) -> None:
    runner = CliRunner()

    tagged = runner.invoke(testpilot, ["discover", "--root", str(project_root), "--tag", "slow"])
    named = runner.invoke(testpilot, ["discover", "--root", str(project_root), "--name", "api"])

    assert "Found 1 test file(s)" in tagged.output
    assert "integration_test/checkout_test.dart" in tagged.output
    assert "tests/test_api.py cases=2" in named.output


def test_cache_commands(tmp_path: Path, project_root: Path) -> None:
    runner = CliRunner()
    db_path = str(tmp_path / "cli-cache.db")
    runner.invoke(testpilot, _run_args(tmp_path, project_root))

    stats = runner.invoke(testpilot, ["cache", "stats", "--db-path", db_path])
    assert stats.exit_code == 0, stats.output
    assert "Total cached results: 4" in stats.output
    assert "Failed: 1" in stats.output

    listed = runner.invoke(testpilot, ["cache", "list", "--db-path", db_path])
    assert "Cached jobs: 4" in listed.output
    assert "tests/test_api.py" in listed.output

    pruned = runner.invoke(testpilot, ["cache", "prune", "--db-path", db_path])
    assert "Pruned 0 cached result(s) older than 30 day(s)" in pruned.output

    one = runner.invoke(
        testpilot,
        ["cache", "clear", "--db-path", db_path, "--job", "tests/test_api.py"],
    )
    assert "Invalidated 1 cached result(s) for tests/test_api.py" in one.output

    cleared = runner.invoke(testpilot, ["cache", "clear", "--db-path", db_path])
    assert "Cleared 3 cached result(s)" in cleared.output

    empty = runner.invoke(testpilot, ["cache", "list", "--db-path", db_path])
    assert "Cache is empty" in empty.output


def test_version_option() -> None:
    result = CliRunner().invoke(testpilot, ["--version"])

    assert result.exit_code == 0
    assert "testpilot" in result.output


def test_cache_commands_report_bad_environment_as_cli_error(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = str(tmp_path / "cli-cache.db")

    for args in (["stats"], ["list"], ["prune"], ["clear"]):
        result = runner.invoke(
            testpilot,
            ["cache", *args, "--db-path", db_path],
            env={"TESTPILOT_CACHE_MAX_AGE_DAYS": "soon"},
        )

        assert result.exit_code == 1, result.output
        assert "TESTPILOT_CACHE_MAX_AGE_DAYS" in result.output
        assert isinstance(result.exception, SystemExit)
