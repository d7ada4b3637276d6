"""Run state for ciflow pipeline runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from ciflow.exceptions import ErrorKind, StateError

logger = structlog.get_logger()


class StageStatus(str, Enum):
    """Per-stage state machine states."""

    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_IGNORED = "failed_ignored"
    FAILED_REQUIRED = "failed_required"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        """Whether the stage can no longer change state."""
        return self not in (StageStatus.BLOCKED, StageStatus.READY, StageStatus.RUNNING)

    @property
    def is_failure(self) -> bool:
        """Whether the stage ran and failed (under any policy)."""
        return self in (
            StageStatus.FAILED_IGNORED,
            StageStatus.FAILED_REQUIRED,
            StageStatus.TIMED_OUT,
        )


class RunOutcome(str, Enum):
    """Overall outcome of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_REQUIRED = "failed_required"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        """Whether the run is finished."""
        return self in (
            RunOutcome.SUCCEEDED,
            RunOutcome.FAILED_REQUIRED,
            RunOutcome.ABORTED,
        )

    @property
    def exit_code(self) -> int:
        """Process exit code the CLI reports for this outcome."""
        return {
            RunOutcome.SUCCEEDED: 0,
            RunOutcome.FAILED_REQUIRED: 1,
            RunOutcome.ABORTED: 2,
        }.get(self, 1)


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class StageResult:
    """Recorded result of one stage.

    Attributes:
        status: Current state of the stage.
        exit_code: Exit code deciding the stage result (None if never run).
        started_at: When the stage started running.
        finished_at: When the stage reached a terminal state.
        duration_ms: Time spent running commands.
        captured_output_refs: Log files holding per-command stdout/stderr.
        failed_command: Display form of the command that failed.
        error_kind: Failure kind, if the stage failed.
        stderr_tail: Last lines of stderr of the failing command.
        missing_artifacts: Declared artifact patterns that matched nothing.
        policy: Stage policy at the time of execution.
    """

    status: StageStatus = StageStatus.BLOCKED
    exit_code: int | None = None
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int = 0
    captured_output_refs: list[str] = field(default_factory=list)
    failed_command: str | None = None
    error_kind: ErrorKind | None = None
    stderr_tail: str = ""
    missing_artifacts: list[str] = field(default_factory=list)
    policy: str = "required"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "captured_output_refs": list(self.captured_output_refs),
            "failed_command": self.failed_command,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "stderr_tail": self.stderr_tail,
            "missing_artifacts": list(self.missing_artifacts),
            "policy": self.policy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageResult:
        """Create from dictionary."""
        error_kind = data.get("error_kind")
        return cls(
            status=StageStatus(data.get("status", "blocked")),
            exit_code=data.get("exit_code"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration_ms=data.get("duration_ms", 0),
            captured_output_refs=list(data.get("captured_output_refs", [])),
            failed_command=data.get("failed_command"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            stderr_tail=data.get("stderr_tail", ""),
            missing_artifacts=list(data.get("missing_artifacts", [])),
            policy=data.get("policy", "required"),
        )


@dataclass
class PipelineRun:
    """One execution instance of a pipeline graph.

    Only the execution engine mutates a run, and only through
    :meth:`record` / :meth:`finish`. Once the outcome is terminal the run
    is frozen and further recording raises ``StateError``.

    Attributes:
        id: The run identifier.
        pipeline: Pipeline name.
        stages: Stage names in execution order.
        results: Stage name to recorded result.
        artifacts: Stage name to registered artifact paths.
        outcome: Overall outcome.
        started_at: When the run started.
        finished_at: When the run reached a terminal outcome.
        duration_ms: Total wall-clock duration.
    """

    id: str
    pipeline: str
    stages: list[str]
    results: dict[str, StageResult] = field(default_factory=dict)
    artifacts: dict[str, list[str]] = field(default_factory=dict)
    outcome: RunOutcome = RunOutcome.PENDING
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int = 0

    def __post_init__(self) -> None:
        for name in self.stages:
            self.results.setdefault(name, StageResult())

    @property
    def is_finished(self) -> bool:
        """Whether the outcome is terminal."""
        return self.outcome.is_terminal

    def status_of(self, name: str) -> StageStatus:
        """Current status of a stage."""
        return self.results[name].status

    def start(self) -> None:
        """Mark the run as running."""
        self._ensure_mutable()
        self.outcome = RunOutcome.RUNNING
        self.started_at = _now()

    def record(self, name: str, result: StageResult) -> None:
        """Record a stage transition.

        Raises:
            StateError: If the run is finished, the stage is unknown, or the
                stage already reached a terminal state.
        """
        self._ensure_mutable()
        if name not in self.results:
            msg = f"Unknown stage: {name}"
            raise StateError(msg, run_id=self.id, stage=name)
        current = self.results[name].status
        if current.is_terminal:
            msg = f"Stage '{name}' is already terminal ({current.value})"
            raise StateError(msg, run_id=self.id, stage=name)
        self.results[name] = result

    def record_artifacts(self, name: str, paths: list[str]) -> None:
        """Record the artifact list of a stage."""
        self._ensure_mutable()
        self.artifacts[name] = list(paths)

    def finish(self, outcome: RunOutcome, duration_ms: int) -> None:
        """Set the terminal outcome and freeze the run."""
        self._ensure_mutable()
        if not outcome.is_terminal:
            msg = f"Not a terminal outcome: {outcome.value}"
            raise StateError(msg, run_id=self.id)
        self.outcome = outcome
        self.finished_at = _now()
        self.duration_ms = duration_ms

    def _ensure_mutable(self) -> None:
        if self.outcome.is_terminal:
            msg = f"Run {self.id} is finished ({self.outcome.value}) and cannot change"
            raise StateError(msg, run_id=self.id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "pipeline": self.pipeline,
            "stages": list(self.stages),
            "results": {name: self.results[name].to_dict() for name in self.stages},
            "artifacts": {k: list(v) for k, v in self.artifacts.items()},
            "outcome": self.outcome.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineRun:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            pipeline=data.get("pipeline", ""),
            stages=list(data["stages"]),
            results={
                k: StageResult.from_dict(v) for k, v in data.get("results", {}).items()
            },
            artifacts={k: list(v) for k, v in data.get("artifacts", {}).items()},
            outcome=RunOutcome(data.get("outcome", "pending")),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration_ms=data.get("duration_ms", 0),
        )

    def save(self, path: Path) -> None:
        """Write the run state to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))
        logger.debug("Saved run state", path=str(path))

    @classmethod
    def load(cls, path: Path) -> PipelineRun:
        """Load run state from a JSON file.

        Raises:
            StateError: If the file doesn't exist or is invalid.
        """
        if not path.exists():
            msg = f"State file not found: {path}"
            raise StateError(msg)
        try:
            return cls.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as e:
            msg = f"Invalid state file: {e}"
            raise StateError(msg) from e
