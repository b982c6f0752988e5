"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from tests.fakes import FakeEngine, Harness, build_harness


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def engine() -> FakeEngine:
    """Return a fresh fake container engine."""
    return FakeEngine()


@pytest.fixture
def harness(tmp_path: Path, engine: FakeEngine) -> Harness:
    """Build the orchestration engine on top of temporary directories."""
    return build_harness(tmp_path, engine)
