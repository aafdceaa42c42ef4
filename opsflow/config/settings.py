"""
Configuration system using Pydantic for type-safe settings management.

Settings are grouped by engine component. Every field has a default so an
orchestrator can be built with ``OrchestratorSettings()``; deployments load
a YAML file through ``OrchestratorSettings.from_yaml`` and may override any
value with ``OPSFLOW_<SECTION>__<FIELD>`` environment variables.
"""

from __future__ import annotations

import os
import re
from decimal import Decimal
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from opsflow.exceptions import ConfigurationError


class SchedulerConfig(BaseModel):
    """Scheduler loop configuration."""

    tick_interval_seconds: float = Field(default=30.0, gt=0, description="Seconds between scheduler ticks")
    default_timeout_seconds: float = Field(
        default=3600.0, gt=0, description="Body deadline when a workflow sets none"
    )
    shutdown_grace_seconds: float = Field(
        default=30.0, ge=0, description="How long stop() waits for in-flight runs before cancelling them"
    )
    max_concurrent_runs: int = Field(default=5, ge=1, description="Maximum runs dispatched at the same time")


class CircuitBreakerConfig(BaseModel):
    """Fleet-wide circuit breaker configuration."""

    failure_threshold: int = Field(default=5, ge=1, description="Failures inside the window that open the breaker")
    window_seconds: float = Field(default=300.0, gt=0, description="Sliding window for counting failures")
    cooldown_seconds: float = Field(default=60.0, gt=0, description="Open period before probes are allowed")


class RetryConfig(BaseModel):
    """Retry and dead-letter defaults."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts before a run is dead-lettered")
    base_delay_seconds: float = Field(default=30.0, ge=0, description="Delay before the first retry")
    max_delay_seconds: float = Field(default=3600.0, ge=0, description="Upper bound on any single retry delay")
    jitter_ratio: float = Field(default=0.1, ge=0, le=1, description="Random extra delay as a fraction of the delay")

    @model_validator(mode="after")
    def validate_delays(self) -> RetryConfig:
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class PipelineConfig(BaseModel):
    """Pipeline engine configuration."""

    max_workers: int = Field(default=3, ge=1, description="Stages of one wave dispatched at the same time")


class ApprovalConfig(BaseModel):
    """Approval gate defaults for entity types without a threshold."""

    default_auto_approve_amount: Decimal = Field(
        default=Decimal("500"), ge=0, description="Amount at or below which runs are auto-approved"
    )
    default_escalation_minutes: int = Field(
        default=60, ge=1, description="Minutes before an unanswered approval escalates"
    )


class StorageConfig(BaseModel):
    """Persistent state configuration."""

    state_directory: str = Field(default=".opsflow/state", description="Directory for JSON state collections")


class OrchestratorSettings(BaseSettings):
    """Main opsflow settings.

    Combines all configuration sections and provides loading from YAML
    files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="OPSFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.storage.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> OrchestratorSettings:
        """Load settings from a YAML file.

        ``${VAR}`` and ``${VAR:-default}`` references are expanded from the
        environment before parsing; commented-out lines are left alone.

        Raises:
            ConfigurationError: If the file is missing, unreadable, not a
                mapping, or fails validation
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            raw = path.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            data = yaml.safe_load(expand_env_vars(raw)) or {}
        except KeyError as e:
            raise ConfigurationError(f"Environment variable {e.args[0]} is not set (referenced in {config_path})") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e


_ENV_REF = re.compile(r"\$\{(?P<name>[A-Z_][A-Z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def expand_env_vars(text: str) -> str:
    """Replace ``${VAR}`` references outside comment lines.

    Raises:
        KeyError: Named after the first unset variable without a default.
    """

    def substitute(match: re.Match[str]) -> str:
        value = os.environ.get(match["name"], match["default"])
        if value is None:
            raise KeyError(match["name"])
        return value

    return "\n".join(
        line if line.lstrip().startswith("#") else _ENV_REF.sub(substitute, line) for line in text.split("\n")
    )
