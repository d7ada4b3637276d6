"""Configuration schema for the ciflow engine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ciflow.exceptions import ConfigError

DEFAULT_CONFIG_FILE = "ciflow.yaml"

# Default timeout per stage (seconds)
DEFAULT_STAGE_TIMEOUT = 600

# Lines of stderr shown for a failed stage
DEFAULT_STDERR_TAIL_LINES = 20


class CiflowConfig(BaseSettings):
    """Engine configuration.

    Values come from, in increasing precedence: defaults, ``CIFLOW_*``
    environment variables, a ``ciflow.yaml`` file, CLI flags.

    Environment variables:
        CIFLOW_RUNS_DIR: Directory where run state and logs are written
        CIFLOW_DEFAULT_TIMEOUT_SECONDS: Stage timeout when a stage sets none
        CIFLOW_HEARTBEAT_INTERVAL: Seconds between "still running" logs (0 disables)
        CIFLOW_KILL_GRACE_SECONDS: Seconds between SIGTERM and SIGKILL
        CIFLOW_STDERR_TAIL_LINES: Lines of stderr shown for a failed stage
        CIFLOW_PERSIST_STATE: Whether to write state.json/report files
        CIFLOW_LOG_LEVEL: debug, info, warning or error

    Example:
        >>> config = CiflowConfig(default_timeout_seconds=120)
        >>> config.default_timeout_seconds
        120
    """

    runs_dir: Path = Field(
        default=Path(".ciflow/runs"),
        description="Directory where run state and logs are written",
    )
    default_timeout_seconds: int = Field(default=DEFAULT_STAGE_TIMEOUT, gt=0)
    heartbeat_interval: int = Field(default=30, ge=0)
    kill_grace_seconds: float = Field(default=5.0, ge=0)
    stderr_tail_lines: int = Field(default=DEFAULT_STDERR_TAIL_LINES, ge=1)
    persist_state: bool = True
    log_level: Literal["debug", "info", "warning", "error"] = "info"

    model_config = SettingsConfigDict(
        env_prefix="CIFLOW_",
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, yaml_content: str, *, config_path: Path | None = None) -> CiflowConfig:
        """Parse config from YAML content.

        Args:
            yaml_content: YAML string to parse.
            config_path: File the content came from (for diagnostics).

        Returns:
            Parsed CiflowConfig instance.

        Raises:
            ConfigError: If the YAML is invalid.
        """
        try:
            data: Any = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            msg = f"Invalid YAML: {e}"
            raise ConfigError(msg, config_path=config_path) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            msg = "Config YAML must be a mapping"
            raise ConfigError(msg, config_path=config_path)

        try:
            return cls(**data)
        except ValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigError(msg, config_path=config_path) from e

    @classmethod
    def load(cls, path: Path) -> CiflowConfig:
        """Load config from a YAML file.

        Raises:
            ConfigError: If the file doesn't exist or is invalid.
        """
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise ConfigError(msg, config_path=path)
        return cls.from_yaml(path.read_text(), config_path=path)

    @classmethod
    def discover(cls, path: Path | None = None, base_dir: Path | None = None) -> CiflowConfig:
        """Load an explicit config file, or ``ciflow.yaml`` if present.

        Args:
            path: Explicit config file.
            base_dir: Directory searched for ``ciflow.yaml``.

        Returns:
            Loaded config, or defaults (plus environment) when none exists.
        """
        if path is not None:
            return cls.load(path)
        candidate = (base_dir or Path.cwd()) / DEFAULT_CONFIG_FILE
        if candidate.exists():
            return cls.load(candidate)
        return cls()
