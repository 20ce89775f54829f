# Shared utilities package
from .config import Config, ConfigurationError, Settings, load_config

__all__ = [
    "Config",
    "ConfigurationError",
    "Settings",
    "load_config",
]
