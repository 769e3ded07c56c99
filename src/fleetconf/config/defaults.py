"""Default configuration values for fleetconf."""

from pathlib import Path

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".fleetconf"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_INVENTORY_FILE = DEFAULT_CONFIG_DIR / "inventory.yaml"
DEFAULT_LOG_FILE = DEFAULT_CONFIG_DIR / "fleetconf.log"
SYSTEM_CONFIG_FILE = Path("/etc/fleetconf/config.yaml")
PROJECT_CONFIG_NAME = ".fleetconf.yaml"

ENV_PREFIX = "FLEETCONF_"

# Engine settings
DEFAULT_MAX_CONCURRENCY = 15
DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_CONNECT_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

# SSH settings
DEFAULT_SSH_PORT = 22
DEFAULT_SSH_USER = "root"

# Remote file conventions
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
VALIDATE_PLACEHOLDER = "%s"
REMOTE_SCRIPT_DIR = "/tmp"

DEFAULT_LOG_LEVEL = "INFO"
