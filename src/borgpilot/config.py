"""Configuration loading and management for BorgPilot."""

from __future__ import annotations

import os
import secrets
from pathlib import Path

import yaml
from loguru import logger

from borgpilot.models import BorgPilotConfig
from borgpilot.persistence import restrict_permissions

# Default paths
DEFAULT_CONFIG_DIR = Path(os.environ.get("BORGPILOT_HOME", Path.home() / ".borgpilot")).expanduser()
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "borgpilot.yaml"
DEFAULT_PID_FILE = DEFAULT_CONFIG_DIR / "borgpilot.pid"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"

# State documents (JSON, written atomically)
DATA_FILE_NAME = "data.json"
SECRETS_FILE_NAME = "secrets.json"
NOTIFICATIONS_FILE_NAME = "notifications.json"


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir() -> Path:
    """Ensure the config directory exists."""
    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DEFAULT_LOGS_DIR.mkdir(parents=True, exist_ok=True)
    return DEFAULT_CONFIG_DIR


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return data


def load_config(config_path: Path | None = None) -> BorgPilotConfig:
    """Load the main BorgPilot configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return BorgPilotConfig()

    try:
        data = load_yaml_file(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    try:
        config = BorgPilotConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
        return config
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def get_data_dir(config: BorgPilotConfig | None = None) -> Path:
    """Get the directory holding the JSON state documents."""
    if config and config.daemon.data_dir:
        return Path(os.path.expandvars(config.daemon.data_dir)).expanduser()
    return DEFAULT_CONFIG_DIR


def create_default_config(config_path: Path | None = None) -> bool:
    """Create the default configuration file if it doesn't exist.

    The file enables API auth with a freshly generated token and is only
    readable by its owner.

    Returns:
        True if a file was written
    """
    path = config_path or DEFAULT_CONFIG_FILE
    if path.exists():
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    config = BorgPilotConfig()
    config.api.auth.enabled = True
    config.api.auth.token = secrets.token_urlsafe(32)
    with open(path, "w") as f:
        yaml.safe_dump(
            config.model_dump(mode="json"),
            f,
            default_flow_style=False,
            sort_keys=False,
        )
    restrict_permissions(path)
    logger.info(f"Created default config at {path}")
    return True
