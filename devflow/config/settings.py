"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the plan engine: where
execution records are stored, the default execution policy applied to plans
that do not set their own, handler retry backoff and logging output.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from devflow.enums import FailurePolicy
from devflow.exceptions import ConfigurationError


class WorkflowConfig(BaseModel):
    """Plan execution defaults.

    Plans may override ``failure_policy``, ``max_concurrency`` and
    ``skipped_satisfies_dependencies`` in their own ``options``.
    """

    state_directory: str = Field(default=".devflow/state", description="Directory for execution records")
    failure_policy: FailurePolicy = Field(default=FailurePolicy.ABORT, description="Reaction to a failed step")
    max_concurrency: int = Field(default=1, ge=1, le=64, description="Parallel-safe steps dispatched at once")
    skipped_satisfies_dependencies: bool = Field(
        default=False, description="Disabled (skip: true) steps count as satisfied dependencies"
    )
    step_timeout: float | None = Field(default=None, gt=0, description="Default handler timeout in seconds")


class RetryConfig(BaseModel):
    """Backoff before the single retry of a retryable handler failure."""

    backoff_seconds: float = Field(default=1.0, ge=0.0, description="Delay before the retry")
    max_backoff_seconds: float = Field(default=10.0, ge=0.0, description="Upper bound on the delay")


class LoggingConfig(BaseModel):
    """Log output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    json_output: bool = Field(default=True, alias="json", description="JSON lines instead of console output")

    model_config = ConfigDict(populate_by_name=True)


class EngineSettings(BaseSettings):
    """Main engine settings.

    Values come from, in order of precedence: constructor arguments (or a
    YAML file via :meth:`from_yaml`), ``DEVFLOW_*`` environment variables
    (``DEVFLOW_WORKFLOW__MAX_CONCURRENCY=4``), then the defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.workflow.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> EngineSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            EngineSettings instance

        Raises:
            ConfigurationError: If config file is invalid or has invalid fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        # An empty file means all defaults
        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
