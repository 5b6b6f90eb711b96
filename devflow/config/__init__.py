"""Configuration system for the plan engine.

Key Components:
    - EngineSettings: Main configuration container with YAML loading support
    - WorkflowConfig: State directory and default execution policy
    - RetryConfig: Handler retry backoff
    - LoggingConfig: Log level and output format

Example:
    >>> from devflow.config import EngineSettings
    >>> settings = EngineSettings.from_yaml("devflow.yaml")
    >>> settings.workflow.failure_policy
"""

from devflow.config.settings import EngineSettings, LoggingConfig, RetryConfig, WorkflowConfig

__all__ = ["EngineSettings", "LoggingConfig", "RetryConfig", "WorkflowConfig"]
