"""Configuration schemas using Pydantic for validation."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from fleetconf.config.defaults import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONNECT_RETRIES,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_RETRY_DELAY,
)


class EngineConfig(BaseModel):
    """Multi-host execution engine configuration."""

    max_concurrency: int = Field(
        default=DEFAULT_MAX_CONCURRENCY,
        ge=0,
        description="Maximum hosts processed at once (0 = one worker per host)",
    )
    host_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Wall-clock budget for one host's unit of work",
    )
    command_timeout: float = Field(
        default=DEFAULT_COMMAND_TIMEOUT,
        gt=0,
        description="Default timeout for a single remote command",
    )
    connect_timeout: float = Field(
        default=DEFAULT_CONNECT_TIMEOUT,
        gt=0,
        description="SSH connection timeout",
    )
    connect_retries: int = Field(
        default=DEFAULT_CONNECT_RETRIES,
        ge=1,
        description="Connection attempts before a host is reported unreachable",
    )
    retry_delay: float = Field(
        default=DEFAULT_RETRY_DELAY,
        ge=0,
        description="Base delay between connection attempts (grows linearly)",
    )
    keep_sessions_warm: bool = Field(
        default=True,
        description="Reuse SSH sessions across sequential operations",
    )


class TemplateConfig(BaseModel):
    """Template rendering configuration."""

    search_paths: list[Path] = Field(
        default_factory=lambda: [Path(".")],
        description="Directories searched for template sources",
    )
    strict_undefined: bool = Field(
        default=True,
        description="Fail rendering when a template references an undefined variable",
    )


class TelemetryConfig(BaseModel):
    """Logging configuration."""

    log_file: Optional[Path] = Field(
        default=None,
        description="Path to log file",
    )
    json_logs: bool = Field(
        default=False,
        description="Emit JSON log lines instead of console output",
    )


class FleetConfig(BaseModel):
    """Root configuration for fleetconf."""

    engine: EngineConfig = Field(
        default_factory=EngineConfig,
        description="Execution engine configuration",
    )
    templates: TemplateConfig = Field(
        default_factory=TemplateConfig,
        description="Template rendering configuration",
    )
    telemetry: TelemetryConfig = Field(
        default_factory=TelemetryConfig,
        description="Logging configuration",
    )
    inventory_file: Optional[Path] = Field(
        default=None,
        description="Path to the host inventory file",
    )
    log_level: str = Field(
        default=DEFAULT_LOG_LEVEL,
        description="Global log level",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()
