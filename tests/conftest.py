"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

# Rich sizes the module-level console when ``conduitctl.cli`` is imported; keep it
# wide so asserted CLI output is never wrapped.
os.environ.setdefault("COLUMNS", "200")

from conduitctl.config import WorkloadConfig  # noqa: E402
from conduitctl.settings import SettingsStore  # noqa: E402


@pytest.fixture
def store(tmp_path: Path) -> SettingsStore:
    """Return a settings store rooted in the temporary directory."""
    return SettingsStore(tmp_path / "conduit" / "settings.conf")


@pytest.fixture
def workload() -> WorkloadConfig:
    """Return the default workload identity."""
    return WorkloadConfig()
