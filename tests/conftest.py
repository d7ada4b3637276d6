"""Pytest fixtures for ciflow tests."""

from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import pytest
import structlog

from ciflow.config import CiflowConfig
from ciflow.infra.command import CommandRunner


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """Create a temporary project directory."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def config(tmp_path: Path) -> CiflowConfig:
    """Config writing runs under the test's tmp directory."""
    return CiflowConfig(
        runs_dir=tmp_path / "runs",
        heartbeat_interval=0,
        kill_grace_seconds=1,
    )


@pytest.fixture
def memory_config() -> CiflowConfig:
    """Config that keeps everything in memory."""
    return CiflowConfig(persist_state=False, heartbeat_interval=0)


@pytest.fixture
def command_runner() -> CommandRunner:
    """Create a CommandRunner instance."""
    return CommandRunner(heartbeat_interval=0, kill_grace_seconds=1)


@pytest.fixture
def dry_run_command_runner() -> CommandRunner:
    """Create a dry-run CommandRunner instance."""
    return CommandRunner(dry_run=True)


@pytest.fixture
def write_pipeline(tmp_project: Path) -> Callable[[str], Path]:
    """Write a pipeline YAML into the project and return its path."""

    def _write(content: str, name: str = "pipeline.yaml") -> Path:
        path = tmp_project / name
        path.write_text(textwrap.dedent(content))
        return path

    return _write


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    """Undo CLI logging configuration between tests."""
    yield
    structlog.reset_defaults()
