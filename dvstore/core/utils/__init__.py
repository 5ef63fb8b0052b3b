"""Utility functions for dvstore."""

from dvstore.core.utils.config import (
    ConfigError,
    ConfigProvider,
    EnvironmentConfigProvider,
    InMemoryConfigProvider,
    LayeredConfigProvider,
    bool_from_string_or_default,
    int_limit_from_string_or_default,
    load_and_resolve_config,
    load_config_from_module,
    read_env_file,
    resolve_config_inheritance,
)

__all__ = [
    "ConfigError",
    "ConfigProvider",
    "EnvironmentConfigProvider",
    "InMemoryConfigProvider",
    "LayeredConfigProvider",
    "bool_from_string_or_default",
    "int_limit_from_string_or_default",
    "load_and_resolve_config",
    "load_config_from_module",
    "read_env_file",
    "resolve_config_inheritance",
]
