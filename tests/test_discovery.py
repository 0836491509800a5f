from __future__ import annotations

import os
import time
from pathlib import Path

import allure
import pytest

from testpilot.discovery.finder import JobFinder, count_cases, parse_tags
from testpilot.errors import ConfigurationError

pytestmark = [
    allure.epic("Discovery"),
    allure.feature("Test File Finder"),
]

ALL_JOBS = [
    "integration_test/checkout_test.dart",
    "test/login_test.dart",
    "test/widgets/button_test.dart",
    "tests/test_api.py",
]


def test_discover_matches_default_globs_sorted(project_root: Path) -> None:
    finder = JobFinder(project_root)

    assert list(finder.discover()) == ALL_JOBS


def test_discovered_jobs_rescan_on_each_iteration(project_root: Path) -> None:
    jobs = JobFinder(project_root).discover()
    assert list(jobs) == ALL_JOBS

    (project_root / "test" / "new_test.dart").write_text("void main() {}", "utf-8")

    assert "test/new_test.dart" in list(jobs)


def test_exclude_accepts_globs_and_substrings(project_root: Path) -> None:
    finder = JobFinder(project_root, exclude_globs=["integration_test/*", "widgets"])

    assert list(finder.discover()) == ["test/login_test.dart", "tests/test_api.py"]


def test_tag_filter_uses_intersection(project_root: Path) -> None:
    finder = JobFinder(project_root, tags=["smoke", "unknown"])

    assert list(finder.discover()) == ["test/login_test.dart", "tests/test_api.py"]


def test_custom_include_globs_deduplicate(project_root: Path) -> None:
    finder = JobFinder(project_root, include_globs=["test/*_test.dart", "test/**/*_test.dart"])

    assert list(finder.discover()) == ["test/login_test.dart", "test/widgets/button_test.dart"]


def test_metadata_parses_tags_and_cases(project_root: Path) -> None:
    finder = JobFinder(project_root)

    login = finder.get_metadata("test/login_test.dart")
    assert login.name == "login_test"
    assert login.tags == frozenset({"smoke", "auth"})
    assert login.case_count == 2
    assert login.size > 0

    checkout = finder.get_metadata("integration_test/checkout_test.dart")
    assert checkout.tags == frozenset({"slow", "payments"})
    assert checkout.case_count == 1

    api = finder.get_metadata("tests/test_api.py")
    assert api.tags == frozenset({"smoke"})
    assert api.case_count == 2


def test_metadata_for_missing_file_degrades(project_root: Path) -> None:
    metadata = JobFinder(project_root).get_metadata("test/gone_test.dart")

    assert metadata.size == 0
    assert metadata.case_count == 0
    assert metadata.tags == frozenset()


def test_group_by_directory(project_root: Path) -> None:
    finder = JobFinder(project_root)

    groups = finder.group_by_directory(finder.discover())

    assert groups == {
        "integration_test": ["integration_test/checkout_test.dart"],
        "test": ["test/login_test.dart"],
        "test/widgets": ["test/widgets/button_test.dart"],
        "tests": ["tests/test_api.py"],
    }


def test_search_by_name_is_case_insensitive_regex(project_root: Path) -> None:
    finder = JobFinder(project_root)

    assert finder.search_by_name("LOGIN") == ["test/login_test.dart"]
    assert finder.search_by_name(r"^(button|checkout)_") == [
        "integration_test/checkout_test.dart",
        "test/widgets/button_test.dart",
    ]
    with pytest.raises(ConfigurationError):
        finder.search_by_name("([")


def test_find_recently_modified(project_root: Path) -> None:
    old = time.time() - 3 * 24 * 3600
    for identity in ALL_JOBS[1:]:
        os.utime(project_root / identity, (old, old))

    recent = JobFinder(project_root).find_recently_modified(24 * 3600)

    assert recent == ["integration_test/checkout_test.dart"]


def test_all_tags(project_root: Path) -> None:
    assert JobFinder(project_root).all_tags() == ["auth", "payments", "slow", "smoke"]


def test_missing_root_is_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        JobFinder(tmp_path / "nope")


def test_parse_helpers() -> None:
    assert parse_tags("@Tags([\"a\", 'b'])\n# tags: c,\n") == frozenset({"a", "b", "c"})
    assert parse_tags("no markers") == frozenset()
    assert count_cases("group('g', () {\n  test('x', () {});\n  test ('y', () {});\n});") == 2
