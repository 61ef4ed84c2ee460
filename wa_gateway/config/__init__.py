"""Configuration module."""

from wa_gateway.config.schema import (
    Config,
    EngineConfig,
    LifecycleConfig,
    NotifyConfig,
    RelayConfig,
    StoreConfig,
)
from wa_gateway.config.loader import (
    get_config_dir,
    get_config_path,
    get_data_dir,
    load_config,
    save_config,
)

__all__ = [
    "Config",
    "EngineConfig",
    "LifecycleConfig",
    "NotifyConfig",
    "RelayConfig",
    "StoreConfig",
    "get_config_dir",
    "get_config_path",
    "get_data_dir",
    "load_config",
    "save_config",
]
