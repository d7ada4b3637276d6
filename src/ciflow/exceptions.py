"""Custom exceptions and runtime error kinds for the ciflow engine."""

from enum import Enum
from pathlib import Path


class ErrorKind(str, Enum):
    """Runtime failure kinds recorded on command and stage results.

    These never propagate as exceptions; stage policy decides what they mean.
    """

    LAUNCH_FAILURE = "LaunchFailure"
    NON_ZERO_EXIT = "NonZeroExit"
    TIMEOUT = "Timeout"
    ABORTED = "Aborted"
    ARTIFACT_MISSING = "ArtifactMissing"


class CiflowError(Exception):
    """Base exception for all ciflow errors."""

    kind = "CiflowError"


class DefinitionError(CiflowError):
    """Raised when a pipeline definition cannot be loaded or parsed."""

    kind = "InvalidDefinition"

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.path = path


class GraphError(CiflowError):
    """Raised when the stage dependency graph is structurally invalid."""

    kind = "InvalidGraph"

    def __init__(
        self,
        message: str,
        *,
        stages: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.stages = stages or []


class CycleDetectedError(GraphError):
    """Raised when stage dependencies form a cycle."""

    kind = "CycleDetected"


class DuplicateStageNameError(GraphError):
    """Raised when two stages share a name."""

    kind = "DuplicateStageName"


class UnknownDependencyError(GraphError):
    """Raised when a stage references a stage that does not exist."""

    kind = "UnknownDependency"


class InvalidConditionError(GraphError):
    """Raised when a stage condition references a stage outside depends_on."""

    kind = "InvalidCondition"


class StateError(CiflowError):
    """Raised when run state management fails."""

    kind = "StateError"

    def __init__(
        self,
        message: str,
        *,
        run_id: str = "",
        stage: str = "",
    ) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.stage = stage


class ConfigError(CiflowError):
    """Raised when configuration is invalid."""

    kind = "ConfigError"

    def __init__(
        self,
        message: str,
        *,
        config_path: Path | None = None,
        field: str = "",
    ) -> None:
        super().__init__(message)
        self.config_path = config_path
        self.field = field
