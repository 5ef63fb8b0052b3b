"""Registry of configured storage drivers.

Driver configuration is read once at construction and turned into immutable
``StorageDriverConfig`` values keyed by driver id and by label. Object store
clients are created lazily and cached per driver.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

from dvstore.core.errors import ConfigurationError
from dvstore.core.storage.backends.filesystem_backend import FilesystemClient
from dvstore.core.storage.backends.s3_backend import S3CompatibleClient
from dvstore.core.storage.object_store import ObjectStoreClient
from dvstore.core.utils.config import (
    ConfigProvider,
    InMemoryConfigProvider,
    bool_from_string_or_default,
    load_and_resolve_config,
    resolve_config_inheritance,
)

logger = logging.getLogger(__name__)

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB
TiB = 1024 * GiB

BUILTIN_DRIVER_ID = "local"
BUILTIN_DRIVER_LABEL = "Local"
DEFAULT_FILES_DIRECTORY = "/tmp/dvstore/files"
# presigning without a region makes the SDK look the bucket location up
DEFAULT_REGION = "us-east-1"


class DriverKind(Enum):
    """Physical storage behind a driver."""

    LOCAL = "filesystem"
    OBJECT_STORE = "s3"


@dataclass(frozen=True)
class UploadLimits:
    """Direct upload sizing rules for a driver."""

    multipart_threshold: int = 1 * GiB
    min_part_size: int = 1 * GiB
    part_granularity: int = 5 * MiB
    max_part_count: int = 10_000
    max_part_size: int = 5 * GiB
    max_object_size: int = 5 * TiB
    url_expiration_minutes: int = 60


@dataclass(frozen=True)
class StorageDriverConfig:
    """Immutable description of one configured driver."""

    driver_id: str
    label: str
    kind: DriverKind
    directory: str | None = None
    endpoint: str | None = None
    bucket: str | None = None
    region: str | None = None
    secure: bool | None = None
    path_style_access: bool = False
    direct_upload: bool = False
    create_bucket: bool = False
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    max_retries: int = 3
    limits: UploadLimits = field(default_factory=UploadLimits)
    credentials: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)


def _int(config: dict[str, Any], key: str, default: int) -> int:
    value = config.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Setting '{key}' must be an integer, got {value!r}") from e


def _bool(config: dict[str, Any], key: str, default: bool) -> bool:
    value = config.get(key)
    if isinstance(value, bool):
        return value
    return bool_from_string_or_default(value, default)


def build_driver_config(driver_id: str, config: dict[str, Any]) -> StorageDriverConfig:
    """Validate one raw configuration entry.

    Raises:
        ConfigurationError: If the entry is incomplete or has an unknown type
    """
    if not driver_id or ":" in driver_id or "/" in driver_id:
        raise ConfigurationError(f"Invalid driver id: {driver_id!r}")

    driver_type = config.get("type")
    if not driver_type:
        raise ConfigurationError(f"Driver '{driver_id}' must specify 'type'")
    try:
        kind = DriverKind(driver_type)
    except ValueError as e:
        raise ConfigurationError(f"Unknown driver type for '{driver_id}': {driver_type}") from e

    label = config.get("label") or driver_id
    defaults = UploadLimits()
    limits = UploadLimits(
        multipart_threshold=_int(config, "multipart_threshold", defaults.multipart_threshold),
        min_part_size=_int(config, "min_part_size", defaults.min_part_size),
        part_granularity=_int(config, "part_granularity", defaults.part_granularity),
        max_part_count=_int(config, "max_part_count", defaults.max_part_count),
        max_part_size=_int(config, "max_part_size", defaults.max_part_size),
        max_object_size=_int(config, "max_object_size", defaults.max_object_size),
        url_expiration_minutes=_int(
            config, "url_expiration_minutes", defaults.url_expiration_minutes
        ),
    )
    if min(limits.part_granularity, limits.max_part_count, limits.url_expiration_minutes) <= 0:
        raise ConfigurationError(f"Upload limits for '{driver_id}' must be positive")

    if kind is DriverKind.LOCAL:
        directory = config.get("directory")
        if not directory:
            raise ConfigurationError(f"Filesystem driver '{driver_id}' requires 'directory'")
        return StorageDriverConfig(
            driver_id=driver_id, label=label, kind=kind, directory=str(directory), limits=limits
        )

    required_fields = ["endpoint", "bucket", "access_key", "secret_key"]
    missing = [f for f in required_fields if not config.get(f)]
    if missing:
        raise ConfigurationError(
            f"S3 driver '{driver_id}' missing required fields: {', '.join(missing)}"
        )

    return StorageDriverConfig(
        driver_id=driver_id,
        label=label,
        kind=kind,
        endpoint=config["endpoint"],
        bucket=config["bucket"],
        region=config.get("region") or DEFAULT_REGION,
        secure=config.get("secure"),
        path_style_access=_bool(config, "path_style_access", False),
        direct_upload=_bool(config, "direct_upload", True),
        create_bucket=_bool(config, "create_bucket", False),
        connect_timeout=float(config.get("connect_timeout", 10.0)),
        read_timeout=float(config.get("read_timeout", 60.0)),
        max_retries=_int(config, "max_retries", 3),
        limits=limits,
        credentials=MappingProxyType(
            {"access_key": config["access_key"], "secret_key": config["secret_key"]}
        ),
    )


class StorageDriverRegistry:
    """Registry of storage drivers, keyed by driver id and by label.

    A built-in filesystem driver ``local`` (label ``Local``) is always present
    unless the configuration defines its own ``local`` entry.

    Examples:
        >>> registry = StorageDriverRegistry()
        >>> registry.list_drivers()
        {'Local': 'local', 'Filesystem': 'file1', ...}
        >>> client = registry.get_client("minio1")
    """

    def __init__(
        self,
        configuration: dict[str, dict[str, Any]] | None = None,
        settings: ConfigProvider | None = None,
    ):
        """Initialize the registry.

        Args:
            configuration: Driver configuration keyed by driver id. If None,
                loads and resolves ``configs.storage_drivers.CONFIGURATION``
            settings: Global settings (``default_driver``, ``files_directory``)
        """
        if configuration is None:
            configuration = load_and_resolve_config(
                "configs.storage_drivers",
                config_name="CONFIGURATION",
                default={},
            )
        else:
            configuration = resolve_config_inheritance(configuration)

        self._settings = settings or InMemoryConfigProvider()

        drivers: dict[str, StorageDriverConfig] = {}
        if BUILTIN_DRIVER_ID not in configuration:
            files_directory = self._settings.get("files_directory") or DEFAULT_FILES_DIRECTORY
            drivers[BUILTIN_DRIVER_ID] = StorageDriverConfig(
                driver_id=BUILTIN_DRIVER_ID,
                label=BUILTIN_DRIVER_LABEL,
                kind=DriverKind.LOCAL,
                directory=files_directory,
            )
        for driver_id, raw in configuration.items():
            # "_"-prefixed entries are templates for "__inherits__" only
            if driver_id.startswith("_"):
                continue
            drivers[driver_id] = build_driver_config(driver_id, raw)

        by_label: dict[str, StorageDriverConfig] = {}
        for driver in drivers.values():
            if driver.label in by_label:
                raise ConfigurationError(
                    f"Label '{driver.label}' is used by both "
                    f"'{by_label[driver.label].driver_id}' and '{driver.driver_id}'"
                )
            by_label[driver.label] = driver

        self._drivers = MappingProxyType(drivers)
        self._by_label = MappingProxyType(by_label)

        self._default_driver_id = self._settings.get("default_driver") or BUILTIN_DRIVER_ID
        if self._default_driver_id not in self._drivers:
            raise ConfigurationError(
                f"Default driver '{self._default_driver_id}' is not configured"
            )

        self._client_cache: dict[str, ObjectStoreClient] = {}
        self._lock = threading.Lock()
        logger.info(
            f"Loaded {len(drivers)} storage drivers (default: {self._default_driver_id})"
        )

    @property
    def default_driver_id(self) -> str:
        return self._default_driver_id

    @property
    def settings(self) -> ConfigProvider:
        return self._settings

    def get_driver(self, driver_id: str) -> StorageDriverConfig:
        """Look up a driver by id.

        Raises:
            ConfigurationError: If no such driver is configured
        """
        try:
            return self._drivers[driver_id]
        except KeyError:
            available = ", ".join(self._drivers)
            raise ConfigurationError(
                f"Storage driver '{driver_id}' not found. Available drivers: {available}"
            ) from None

    def get_driver_by_label(self, label: str) -> StorageDriverConfig:
        """Look up a driver by its human label.

        Raises:
            ConfigurationError: If no driver has this label
        """
        try:
            return self._by_label[label]
        except KeyError:
            available = ", ".join(self._by_label)
            raise ConfigurationError(
                f"Storage driver label '{label}' not found. Available labels: {available}"
            ) from None

    def has_driver(self, driver_id: str) -> bool:
        return driver_id in self._drivers

    def list_drivers(self) -> dict[str, str]:
        """Return the label -> driver id mapping."""
        return {label: driver.driver_id for label, driver in self._by_label.items()}

    def create_client(self, driver: StorageDriverConfig) -> ObjectStoreClient:
        """Create an object store client for a driver.

        Raises:
            ConfigurationError: If the driver kind has no client implementation
        """
        if driver.kind is DriverKind.LOCAL:
            return FilesystemClient(directory=Path(driver.directory))

        if driver.kind is DriverKind.OBJECT_STORE:
            client = S3CompatibleClient(
                endpoint=driver.endpoint,
                access_key=driver.credentials["access_key"],
                secret_key=driver.credentials["secret_key"],
                bucket=driver.bucket,
                secure=driver.secure,
                region=driver.region,
                path_style_access=driver.path_style_access,
                connect_timeout=driver.connect_timeout,
                read_timeout=driver.read_timeout,
                max_retries=driver.max_retries,
            )
            if driver.create_bucket:
                client.ensure_bucket(region=driver.region)
            return client

        raise ConfigurationError(f"No client for driver kind: {driver.kind}")

    def get_client(self, driver_id: str) -> ObjectStoreClient:
        """Get the (cached) object store client for a driver id."""
        driver = self.get_driver(driver_id)
        with self._lock:
            client = self._client_cache.get(driver_id)
            if client is None:
                client = self.create_client(driver)
                self._client_cache[driver_id] = client
                logger.info(f"Created {driver.kind.value} client for driver '{driver_id}'")
            return client

    def clear_cache(self) -> None:
        """Drop cached client instances."""
        with self._lock:
            self._client_cache.clear()


_default_registry: StorageDriverRegistry | None = None


def get_default_registry() -> StorageDriverRegistry:
    """Get the process-wide registry, built from ``configs.storage_drivers`` on first use."""
    global _default_registry
    if _default_registry is None:
        _default_registry = StorageDriverRegistry()
    return _default_registry
