"""Configuration loading with hierarchy support."""

import os
from pathlib import Path
from typing import Any, Optional

import yaml

from fleetconf.config.defaults import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROJECT_CONFIG_NAME,
    SYSTEM_CONFIG_FILE,
)
from fleetconf.config.schemas import FleetConfig
from fleetconf.telemetry.logger import get_logger

logger = get_logger(__name__)


def get_default_config_path() -> Path:
    """Get the default user configuration path."""
    return DEFAULT_CONFIG_FILE


def get_config_paths() -> list[Path]:
    """Get ordered list of configuration paths to check."""
    candidates = [
        SYSTEM_CONFIG_FILE,
        get_default_config_path(),
        Path.cwd() / PROJECT_CONFIG_NAME,
    ]
    return [path for path in candidates if path.exists()]


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    with open(path, "r") as f:
        content = yaml.safe_load(f) or {}
    if not isinstance(content, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return content


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def get_env_overrides(environ: Optional[dict[str, str]] = None) -> dict[str, Any]:
    """Get configuration overrides from environment variables.

    Environment variables are prefixed with FLEETCONF_ and use double
    underscores for nested keys. For example:
    - FLEETCONF_LOG_LEVEL=DEBUG -> {"log_level": "DEBUG"}
    - FLEETCONF_ENGINE__MAX_CONCURRENCY=4 -> {"engine": {"max_concurrency": 4}}
    """
    overrides: dict[str, Any] = {}
    source = os.environ if environ is None else environ

    for key, value in source.items():
        if not key.startswith(ENV_PREFIX):
            continue

        parts = key[len(ENV_PREFIX):].lower().split("__")

        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse an environment variable value to appropriate type."""
    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    return value


def load_config(
    config_path: Optional[Path] = None,
    include_env: bool = True,
) -> FleetConfig:
    """Load configuration from all sources with proper hierarchy.

    Loading order (later overrides earlier):
    1. Default values (from schema)
    2. System config (/etc/fleetconf/config.yaml)
    3. User config (~/.fleetconf/config.yaml)
    4. Project config (.fleetconf.yaml in cwd)
    5. Explicit config file (--config argument)
    6. Environment variables (FLEETCONF_*)

    Args:
        config_path: Optional explicit configuration file path
        include_env: Whether to include environment variable overrides

    Returns:
        Validated FleetConfig instance

    Raises:
        FileNotFoundError: If an explicit config file does not exist
    """
    merged_config: dict[str, Any] = {}

    for path in get_config_paths():
        try:
            merged_config = deep_merge(merged_config, load_yaml_config(path))
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning("Skipping unreadable config file", path=str(path), error=str(e))

    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        merged_config = deep_merge(merged_config, load_yaml_config(config_path))

    if include_env:
        merged_config = deep_merge(merged_config, get_env_overrides())

    return FleetConfig(**merged_config)


def create_default_config(path: Path) -> None:
    """Create a default configuration file.

    Args:
        path: Path where to create the config file
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = FleetConfig().model_dump(mode="json", exclude_none=True)

    yaml_content = "# fleetconf configuration\n\n"
    yaml_content += yaml.dump(config_dict, default_flow_style=False, sort_keys=False)

    with open(path, "w") as f:
        f.write(yaml_content)
