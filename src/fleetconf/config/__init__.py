"""Configuration management for fleetconf."""

from fleetconf.config.loader import get_default_config_path, load_config
from fleetconf.config.schemas import (
    EngineConfig,
    FleetConfig,
    TelemetryConfig,
    TemplateConfig,
)

__all__ = [
    "FleetConfig",
    "EngineConfig",
    "TemplateConfig",
    "TelemetryConfig",
    "load_config",
    "get_default_config_path",
]
