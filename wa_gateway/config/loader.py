"""Configuration loader for wa-gateway."""

import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from loguru import logger

from wa_gateway.config.schema import Config


def get_config_dir() -> Path:
    """Get the configuration directory."""
    return Path.home() / ".wa-gateway"


def get_config_path() -> Path:
    """Get the configuration file path."""
    return get_config_dir() / "config.json"


def get_data_dir() -> Path:
    """Get the data directory for wa-gateway."""
    data_dir = get_config_dir() / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def load_config(config_path: Optional[Path] = None, auto_create: bool = True) -> Config:
    """
    Load configuration from file.

    Environment variables (WA_GATEWAY_*, nested with "__") supply the settings
    the file leaves out.

    Args:
        config_path: Optional path to config file. If not provided,
                     uses the default path.
        auto_create: If True, create default config file when not exists.

    Returns:
        Config object.
    """
    if config_path is None:
        config_path = get_config_path()

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            config = Config(**data)
            logger.info(f"Loaded config from {config_path}")
            return config
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Invalid config file: {e}. Using defaults.")
    else:
        logger.info("No config file found. Using default config.")
        config = Config()
        if auto_create:
            _create_default_config(config_path)
        return config

    return Config()


def _create_default_config(config_path: Path) -> None:
    """Write the default configuration to disk."""
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = Config().model_dump()
    default_config["store"]["data_dir"] = str(get_config_dir() / "data")

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(default_config, f, indent=2, ensure_ascii=False)

    logger.info(f"Created default config at {config_path}")


def save_config(config: Config, config_path: Optional[Path] = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Config object to save.
        config_path: Optional path to config file. If not provided,
                     uses the default path.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.model_dump(), f, indent=2, ensure_ascii=False)

    logger.info(f"Saved config to {config_path}")
