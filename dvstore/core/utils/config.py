"""Configuration loading utilities.

Driver configuration is a plain dict loaded from a Python module with
importlib, so deployments can swap the module without code changes. Entries
can inherit from one another with the "__inherits__" key.

Global settings (default driver, checksum algorithm, ...) are read through a
``ConfigProvider`` so tests can inject an in-memory provider instead of
mutating the process environment.
"""

from __future__ import annotations

import importlib
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from dvstore.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

INHERITS_KEY = "__inherits__"


class ConfigError(ConfigurationError):
    """Raised when configuration loading or resolution fails."""

    pass


def load_config_from_module(
    module_path: str,
    config_name: str = "CONFIGURATION",
    default: Any | None = None,
) -> Any:
    """Load a configuration object from a Python module using importlib.

    Args:
        module_path: Dotted module path (e.g., "configs.storage_drivers")
        config_name: Name of the configuration object to retrieve
        default: Value to return if the module or attribute is missing

    Returns:
        The configuration object from the module, or default
    """
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        logger.warning(f"Could not import module '{module_path}': {e}")
        return default

    if not hasattr(module, config_name):
        logger.warning(f"Module '{module_path}' does not have attribute '{config_name}'")
        return default

    logger.debug(f"Loaded configuration from {module_path}.{config_name}")
    return getattr(module, config_name)


def resolve_config_inheritance(config_dict: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Resolve inheritance in a configuration dictionary.

    Args:
        config_dict: Configuration entries, some of which name a parent entry
            under the "__inherits__" key

    Returns:
        Fully resolved configuration dictionary with all inheritance applied

    Raises:
        ConfigError: If circular inheritance detected or parent not found

    Examples:
        >>> config = {
        ...     "s3": {"type": "s3", "endpoint": "http://localhost:9000", "bucket": "b"},
        ...     "minio1": {"__inherits__": "s3", "label": "MinIO"},
        ... }
        >>> resolve_config_inheritance(config)["minio1"]["endpoint"]
        'http://localhost:9000'
    """
    resolved_configs: dict[str, dict[str, Any]] = {}

    def _resolve_single(name: str, config: dict[str, Any], chain: tuple[str, ...]) -> dict[str, Any]:
        if name in chain:
            path = " -> ".join(chain + (name,))
            raise ConfigError(f"Circular inheritance detected: {path}")

        if name in resolved_configs:
            return resolved_configs[name]

        if INHERITS_KEY not in config:
            resolved = config.copy()
            resolved_configs[name] = resolved
            return resolved

        parent_name = config[INHERITS_KEY]
        if parent_name not in config_dict:
            raise ConfigError(
                f"Configuration '{name}' inherits from '{parent_name}', "
                f"but '{parent_name}' not found"
            )

        resolved_parent = _resolve_single(parent_name, config_dict[parent_name], chain + (name,))

        resolved = resolved_parent.copy()
        resolved.update({k: v for k, v in config.items() if k != INHERITS_KEY})

        logger.debug(f"Resolved inheritance for '{name}' from '{parent_name}'")
        resolved_configs[name] = resolved
        return resolved

    for name, config in config_dict.items():
        if name not in resolved_configs:
            _resolve_single(name, config, ())

    return resolved_configs


def load_and_resolve_config(
    module_path: str,
    config_name: str = "CONFIGURATION",
    default: dict[str, dict[str, Any]] | None = None,
) -> dict[str, dict[str, Any]]:
    """Load configuration from a module and resolve inheritance.

    Returns:
        Fully resolved configuration dictionary (``default`` or ``{}`` when the
        module does not provide a dict)
    """
    raw_config = load_config_from_module(module_path, config_name, default)

    if raw_config is None or not isinstance(raw_config, dict):
        logger.warning(f"Invalid configuration loaded from {module_path}, using default")
        return default or {}

    resolved = resolve_config_inheritance(raw_config)
    logger.info(f"Loaded and resolved {len(resolved)} configurations from {module_path}")
    return resolved


def int_limit_from_string_or_default(value: str | None, default: int) -> int:
    """Parse a numeric setting, falling back to ``default`` when unparsable.

    Examples:
        >>> int_limit_from_string_or_default(None, 5)
        5
        >>> int_limit_from_string_or_default("test", 5)
        5
        >>> int_limit_from_string_or_default("-10", 5)
        -10
    """
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def bool_from_string_or_default(value: str | None, default: bool) -> bool:
    """Parse a boolean setting ("1", "true", "yes", "on" are true)."""
    if value is None or not str(value).strip():
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class ConfigProvider(Protocol):
    """Source of global settings."""

    def get(self, key: str) -> str | None: ...


class InMemoryConfigProvider:
    """Settings held in a dict; used for tests and database-style overrides."""

    def __init__(self, values: dict[str, Any] | None = None):
        self._values = {k: str(v) for k, v in (values or {}).items() if v is not None}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = str(value)


class EnvironmentConfigProvider:
    """Settings read from ``DVSTORE_``-prefixed environment variables.

    A ``.env`` file, when given and present, contributes KEY=VALUE pairs that
    do not override variables already set in the process environment.
    """

    def __init__(self, prefix: str = "DVSTORE_", env_file: str | Path | None = None):
        self._prefix = prefix
        self._file_values = read_env_file(env_file) if env_file else {}

    def _name(self, key: str) -> str:
        return f"{self._prefix}{key.upper()}"

    def get(self, key: str) -> str | None:
        name = self._name(key)
        if name in os.environ:
            return os.environ[name]
        return self._file_values.get(name)


class LayeredConfigProvider:
    """Consult providers in order; the first non-None value wins."""

    def __init__(self, *providers: ConfigProvider):
        self._providers = providers

    def get(self, key: str) -> str | None:
        for provider in self._providers:
            value = provider.get(key)
            if value is not None:
                return value
        return None


def read_env_file(path: str | Path) -> dict[str, str]:
    """Read simple KEY=VALUE pairs from a .env file if present.

    Lines starting with '#' are ignored and quoted values are unquoted. The
    process environment is left untouched.
    """
    env_path = Path(path)
    loaded: dict[str, str] = {}
    if not env_path.exists():
        return loaded

    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        loaded[key.strip()] = value.strip().strip('"').strip("'")
    return loaded
