"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Ensure the project root is in sys.path so `tests.fakes` imports resolve
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from sandcastle.config import Settings, reset_settings  # noqa: E402
from tests.fakes import FakeDaemon  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch):
    """Keep the host environment out of settings resolution."""
    for name in list(os.environ):
        if name.startswith("SANDCASTLE_"):
            monkeypatch.delenv(name, raising=False)
    # Keep test runs from reporting to Logfire
    monkeypatch.setenv("SANDCASTLE_LOGFIRE", "0")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def dockerfiles_dir(tmp_path: Path) -> Path:
    path = tmp_path / "dockerfiles"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, dockerfiles_dir: Path) -> Settings:
    """Fast, isolated settings: no delays, private config file and build dir."""
    return Settings(
        retry_delay=0,
        stream_line_delay=0,
        config_path=tmp_path / "config.json",
        dockerfiles_dir=dockerfiles_dir,
    )


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()
