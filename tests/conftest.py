"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent

# Add src directory to the Python path (development)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = Path(__file__).parent / "fixtures"

from scriptworker.config import Config  # noqa: E402
from scriptworker.supervisor import Supervisor  # noqa: E402


@pytest.fixture
def fixtures_dir() -> Path:
    """Directory of helper scripts run as real host processes."""
    return FIXTURES_DIR


@pytest.fixture
def test_config() -> Config:
    """Config without watchdog sidecars or signal handlers."""
    return Config(watchdog_enabled=False, forward_signals=False, drain_timeout=2.0)


@pytest.fixture
def supervisor(test_config: Config) -> Iterator[Supervisor]:
    """Isolated supervisor, closed after the test."""
    sup = Supervisor(test_config)
    yield sup
    sup.close()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary working directory for launched tasks."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path
