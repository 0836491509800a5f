"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from testpilot.cache.repository import ResultCache


class RecordingSleep:
    """Stand-in for ``time.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._lock = threading.Lock()

    def __call__(self, seconds: float) -> None:
        with self._lock:
            self.delays.append(seconds)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Keep developer TESTPILOT_* variables out of tests."""
    for name in list(os.environ):
        if name.startswith("TESTPILOT_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def result_cache(tmp_path: Path) -> Iterator[ResultCache]:
    cache = ResultCache(tmp_path / "cache" / "test_cache.db")
    assert cache.initialize()
    try:
        yield cache
    finally:
        cache.close()


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    """Small project tree with Dart and Python style test files."""
    root = tmp_path / "project"
    (root / "test" / "widgets").mkdir(parents=True)
    (root / "integration_test").mkdir(parents=True)
    (root / "tests").mkdir(parents=True)
    (root / "test" / "login_test.dart").write_text(
        "@Tags(['smoke', 'auth'])\n"
        "void main() {\n"
        "  test('logs in', () {});\n"
        "  testWidgets('shows form', (tester) async {});\n"
        "}\n",
        "utf-8",
    )
    (root / "test" / "widgets" / "button_test.dart").write_text(
        "void main() {\n  testWidgets('renders', (tester) async {});\n}\n",
        "utf-8",
    )
    (root / "integration_test" / "checkout_test.dart").write_text(
        "// tags: slow, payments\nvoid main() {\n  test('pays', () {});\n}\n",
        "utf-8",
    )
    (root / "tests" / "test_api.py").write_text(
        "# tags: smoke\n\ndef test_get():\n    pass\n\n\ndef test_post():\n    pass\n",
        "utf-8",
    )
    (root / "tests" / "helpers.py").write_text("VALUE = 1\n", "utf-8")
    return root
