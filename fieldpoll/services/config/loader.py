"""
Configuration Loader

Reads the YAML form of the configuration and returns a validated
EngineConfig.
"""

from pathlib import Path

import yaml

from fieldpoll.common.config import EngineConfig, load_engine_config
from fieldpoll.common.exceptions import ConfigError
from fieldpoll.common.logging_setup import get_service_logger
from .validator import ConfigValidator

logger = get_service_logger("config.loader")

# Searched in order when no path is given
DEFAULT_CONFIG_PATHS = (
    "/etc/fieldpoll/config.yaml",
    "/opt/fieldpoll/config.yaml",
    "config.yaml",
)


def find_config_path() -> str:
    """Find configuration file"""
    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            return path
    return DEFAULT_CONFIG_PATHS[-1]


def load_config_data(text: str) -> EngineConfig:
    """Parse and validate configuration from YAML text"""
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}")

    config = load_engine_config(data)

    is_valid, errors = ConfigValidator().validate(config)
    if not is_valid:
        raise ConfigError(f"{len(errors)} validation error(s): {errors[0]}", errors=errors)

    return config


def load_config_file(path: str | Path) -> EngineConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to configuration file

    Returns:
        Validated EngineConfig

    Raises:
        ConfigError: missing file, bad YAML, bad values or failed validation
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"configuration file not found: {path}")

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}")

    config = load_config_data(text)
    logger.info(
        f"Loaded configuration from {path} "
        f"({len(config.sources)} sources, {len(config.variables)} variables)"
    )
    return config
