"""Run directory layout management for ciflow."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def generate_run_id() -> str:
    """Generate a unique run ID with timestamp prefix.

    Returns:
        A run ID in format: YYYYMMDD_HHMMSS_<short-uuid>

    Example:
        >>> run_id = generate_run_id()
        >>> len(run_id) > 20
        True
    """
    ts = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
    short_uuid = uuid.uuid4().hex[:8]
    return f"{ts}_{short_uuid}"


def safe_name(name: str) -> str:
    """Make a stage name usable as a single path component."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("._")
    return cleaned or "stage"


@dataclass
class RunPaths:
    """Manages the directory structure for a single pipeline run.

    Layout::

        <runs_dir>/<run_id>/
            state.json
            artifacts.json
            report.json
            report.txt
            logs/<stage>/<index>.stdout.log
            logs/<stage>/<index>.stderr.log

    Attributes:
        runs_dir: Directory containing all runs.
        run_id: Unique identifier for this run.

    Example:
        >>> paths = RunPaths(Path("/project/.ciflow/runs"), "20240101_120000_abc12345")
        >>> paths.run_dir.name
        '20240101_120000_abc12345'
    """

    runs_dir: Path
    run_id: str
    _created: bool = field(default=False, repr=False)

    @property
    def run_dir(self) -> Path:
        """Root directory for this specific run."""
        return self.runs_dir / self.run_id

    @property
    def logs_dir(self) -> Path:
        """Directory for captured command output."""
        return self.run_dir / "logs"

    @property
    def state_json(self) -> Path:
        """Path to state.json."""
        return self.run_dir / "state.json"

    @property
    def artifacts_json(self) -> Path:
        """Path to artifacts.json."""
        return self.run_dir / "artifacts.json"

    @property
    def report_json(self) -> Path:
        """Path to report.json."""
        return self.run_dir / "report.json"

    @property
    def report_txt(self) -> Path:
        """Path to report.txt."""
        return self.run_dir / "report.txt"

    def stage_logs_dir(self, stage: str) -> Path:
        """Directory holding the command logs of one stage."""
        return self.logs_dir / safe_name(stage)

    def command_log_paths(self, stage: str, index: int) -> tuple[Path, Path]:
        """Get stdout and stderr log paths for one command of a stage.

        Args:
            stage: The stage name.
            index: Zero-based position of the command within the stage.

        Returns:
            Tuple of (stdout_path, stderr_path).
        """
        base = self.stage_logs_dir(stage) / f"{index:02d}"
        return (
            base.with_suffix(".stdout.log"),
            base.with_suffix(".stderr.log"),
        )

    def create_directories(self) -> None:
        """Create all directories for the run.

        This is idempotent - can be called multiple times safely.
        """
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._created = True

    @classmethod
    def create_new(cls, runs_dir: Path, run_id: str | None = None) -> RunPaths:
        """Create a new RunPaths instance and initialize directories.

        Args:
            runs_dir: The directory holding all runs.
            run_id: Optional run ID (generated if not provided).

        Returns:
            A new RunPaths instance with directories created.
        """
        if run_id is None:
            run_id = generate_run_id()
        paths = cls(runs_dir=runs_dir, run_id=run_id)
        paths.create_directories()
        return paths

    @classmethod
    def from_run_dir(cls, run_dir: Path) -> RunPaths:
        """Load an existing run's paths from its directory.

        Args:
            run_dir: The run directory.

        Returns:
            A RunPaths instance for the existing run.

        Raises:
            ValueError: If the run directory doesn't exist.
        """
        if not run_dir.is_dir():
            msg = f"Run directory does not exist: {run_dir}"
            raise ValueError(msg)
        return cls(runs_dir=run_dir.parent, run_id=run_dir.name)
