"""Configuration loader utilities."""

from .loader import DEFAULT_CONFIG_PATH, ClientConfig, load_config

__all__ = [
    "ClientConfig",
    "DEFAULT_CONFIG_PATH",
    "load_config",
]
