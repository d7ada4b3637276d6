"""Pipeline and Stage definition models."""

from __future__ import annotations

import shlex
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ciflow.exceptions import DefinitionError
from ciflow.pipeline.constants import MAX_STAGES_PER_PIPELINE, STAGE_NAME_PATTERN


class StagePolicy(str, Enum):
    """Failure-propagation policy of a stage."""

    REQUIRED = "required"  # Failure halts the run
    CONTINUE_ON_ERROR = "continue-on-error"  # Failure is recorded as a warning


class StageStrategy(str, Enum):
    """How the command list of a stage decides the stage result."""

    SEQUENCE = "sequence"  # Every command must exit 0; stop at first failure
    FALLBACK = "fallback"  # First command that exits 0 wins


class ConditionKind(str, Enum):
    """Predicate kinds over prior stage outcomes."""

    ALWAYS = "always"
    ALL_SUCCEEDED = "all_succeeded"
    ANY_FAILED = "any_failed"


def _normalize_enum_token(value: Any) -> Any:
    """Accept ContinueOnError / continue_on_error / continue-on-error alike."""
    if not isinstance(value, str):
        return value
    token = value.strip()
    out = []
    for i, ch in enumerate(token):
        if ch.isupper() and i > 0 and token[i - 1].islower():
            out.append("-")
        out.append(ch.lower())
    return "".join(out).replace("_", "-")


class CommandSpec(BaseModel):
    """A single external command invocation.

    Accepts three shapes in definitions::

        commands:
          - npm ci --no-audit            # string, split with shell quoting rules
          - [npm, run, build]            # argv list
          - run: npm test                # mapping with extra settings
            cwd: web
            env: {CI: "true"}

    Attributes:
        program: Executable name or path.
        args: Arguments passed to the program.
        cwd: Working directory, relative to the pipeline workdir.
        env: Environment overrides for this command only.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    program: str = Field(..., min_length=1)
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def coerce_shorthand(cls, data: Any) -> Any:
        """Expand string, list and ``run:`` shorthands into program + args."""
        if isinstance(data, str):
            argv = shlex.split(data)
            if not argv:
                msg = "Command string is empty"
                raise ValueError(msg)
            return {"program": argv[0], "args": argv[1:]}

        if isinstance(data, list | tuple):
            argv = [str(a) for a in data]
            if not argv:
                msg = "Command list is empty"
                raise ValueError(msg)
            return {"program": argv[0], "args": argv[1:]}

        if isinstance(data, dict) and "run" in data:
            data = dict(data)
            run = data.pop("run")
            argv = shlex.split(run) if isinstance(run, str) else [str(a) for a in run]
            if not argv:
                msg = "Command 'run' is empty"
                raise ValueError(msg)
            data["program"] = argv[0]
            data["args"] = argv[1:]
        return data

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: Any) -> Any:
        """Environment values in YAML may be numbers or booleans."""
        if isinstance(v, dict):
            return {str(k): _env_value(val) for k, val in v.items()}
        return v

    @property
    def argv(self) -> list[str]:
        """Full argument vector."""
        return [self.program, *self.args]

    def display(self) -> str:
        """Shell-quoted representation for logs and reports."""
        return shlex.join(self.argv)


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StageCondition(BaseModel):
    """Predicate deciding whether a ready stage runs.

    Attributes:
        when: Predicate kind.
        stages: Stages the predicate looks at (defaults to all of depends_on).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    when: ConditionKind = ConditionKind.ALWAYS
    stages: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def coerce_shorthand(cls, data: Any) -> Any:
        """Accept ``always`` or ``{any_failed: [lint]}`` shorthands."""
        if isinstance(data, str):
            return {"when": data}
        if isinstance(data, dict) and len(data) == 1:
            key, value = next(iter(data.items()))
            if key not in ("when", "stages"):
                return {"when": key, "stages": value or []}
        return data

    @field_validator("when", mode="before")
    @classmethod
    def normalize_when(cls, v: Any) -> Any:
        """Accept runIfAnyFailed / run_if_any_failed / any-failed alike."""
        token = _normalize_enum_token(v)
        if not isinstance(token, str):
            return token
        token = token.replace("-", "_")
        return token.removeprefix("run_if_")


class StageDefinition(BaseModel):
    """Definition of a single pipeline stage.

    Attributes:
        name: Unique identifier for the stage.
        commands: Ordered commands run by the stage.
        depends_on: Stages that must reach a terminal state first.
        policy: Whether a failure halts the run or is only a warning.
        strategy: Whether all commands must pass or the first success wins.
        condition: Predicate over prior stage outcomes.
        artifacts: Output path patterns the stage promises to produce.
        timeout_seconds: Wall-clock limit for the whole stage.
        env: Environment overrides shared by every command of the stage.
        description: Human-readable description.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=128, pattern=STAGE_NAME_PATTERN)
    commands: tuple[CommandSpec, ...] = ()
    depends_on: tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("depends_on", "dependsOn")
    )
    policy: StagePolicy = StagePolicy.REQUIRED
    strategy: StageStrategy = StageStrategy.SEQUENCE
    condition: StageCondition = Field(default_factory=StageCondition)
    artifacts: tuple[str, ...] = ()
    timeout_seconds: int | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds", "timeout"),
    )
    env: dict[str, str] = Field(default_factory=dict)
    description: str = ""

    @field_validator("policy", "strategy", mode="before")
    @classmethod
    def normalize_enum(cls, v: Any) -> Any:
        """Normalize enum spellings."""
        return _normalize_enum_token(v)

    @field_validator("depends_on", mode="before")
    @classmethod
    def dedupe_dependencies(cls, v: Any) -> Any:
        """Accept a single name and drop repeated names, keeping order."""
        if isinstance(v, str):
            return (v,)
        if isinstance(v, list | tuple):
            return tuple(dict.fromkeys(str(x) for x in v))
        return v

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: Any) -> Any:
        """Environment values in YAML may be numbers or booleans."""
        if isinstance(v, dict):
            return {str(k): _env_value(val) for k, val in v.items()}
        return v

    def condition_stages(self) -> tuple[str, ...]:
        """Stages the condition predicate is evaluated over."""
        return self.condition.stages or self.depends_on


class PipelineDefinition(BaseModel):
    """Complete definition of a pipeline.

    Attributes:
        name: Human-readable name.
        description: Description of the pipeline purpose.
        workdir: Working directory for commands (relative to the definition file).
        env: Environment overrides shared by every stage.
        stages: Stages in declaration order.
        source_path: File the definition was loaded from, if any.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=128)
    description: str = ""
    workdir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    stages: list[StageDefinition] = Field(default_factory=list)
    source_path: Path | None = Field(default=None, exclude=True)

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, v: list[StageDefinition]) -> list[StageDefinition]:
        """Validate stage list size."""
        if len(v) > MAX_STAGES_PER_PIPELINE:
            msg = f"Pipeline cannot have more than {MAX_STAGES_PER_PIPELINE} stages"
            raise ValueError(msg)
        return v

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: Any) -> Any:
        """Environment values in YAML may be numbers or booleans."""
        if isinstance(v, dict):
            return {str(k): _env_value(val) for k, val in v.items()}
        return v

    def get_stage(self, name: str) -> StageDefinition | None:
        """Get a stage by name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def resolve_workdir(self) -> Path:
        """Absolute working directory for the pipeline's commands."""
        base = self.source_path.parent if self.source_path else Path.cwd()
        if self.workdir is None:
            return base.resolve()
        workdir = Path(self.workdir).expanduser()
        if not workdir.is_absolute():
            workdir = base / workdir
        return workdir.resolve()

    @classmethod
    def from_yaml(
        cls, yaml_content: str, *, source_path: Path | None = None
    ) -> PipelineDefinition:
        """Parse a definition from YAML content.

        Args:
            yaml_content: YAML string to parse.
            source_path: File the content came from (used for workdir resolution).

        Returns:
            Parsed PipelineDefinition.

        Raises:
            DefinitionError: If the YAML or its schema is invalid.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            msg = f"Invalid YAML: {e}"
            raise DefinitionError(msg, path=source_path) from e

        # A bare list of stage records is accepted too
        if isinstance(data, list):
            name = source_path.stem if source_path else "pipeline"
            data = {"name": name, "stages": data}

        if not isinstance(data, dict):
            msg = "Pipeline definition must be a mapping or a list of stages"
            raise DefinitionError(msg, path=source_path)

        try:
            pipeline = cls.model_validate(data)
        except ValidationError as e:
            msg = f"Invalid pipeline definition: {e}"
            raise DefinitionError(msg, path=source_path) from e

        pipeline.source_path = source_path
        return pipeline

    @classmethod
    def load(cls, path: Path) -> PipelineDefinition:
        """Load a definition from a YAML file.

        Args:
            path: Path to the YAML file.

        Returns:
            Parsed PipelineDefinition.

        Raises:
            DefinitionError: If the file is missing or invalid.
        """
        if not path.is_file():
            msg = f"Pipeline definition not found: {path}"
            raise DefinitionError(msg, path=path)
        return cls.from_yaml(path.read_text(), source_path=path.resolve())
