"""Storage driver configuration.

This module defines the CONFIGURATION dict which maps driver ids to their
settings. The registry loads it on startup; customize it or pass your own
dict to ``StorageDriverRegistry``.

Configuration location: configs/storage_drivers.py

Example usage:
    from dvstore.core.storage import StorageDriverRegistry

    registry = StorageDriverRegistry()
    registry.list_drivers()   # {'Local': 'local', 'Filesystem': 'file1', 'MinIO': 'minio1', ...}

Environment overrides (also read from a .env file at the project root):
    export DVSTORE_MINIO_ENDPOINT=http://minio:9000
    export DVSTORE_LOCALSTACK_ENDPOINT=http://localstack:4566

Configuration inheritance:
    # "_"-prefixed entries are templates and are not registered as drivers
    "_s3": {"type": "s3", "bucket": "mybucket", ...},
    "minio1": {"__inherits__": "_s3", "label": "MinIO", "endpoint": ...},
"""

from __future__ import annotations

from pathlib import Path

from dvstore.core.utils.config import EnvironmentConfigProvider

PROJECT_ROOT = Path(__file__).resolve().parents[1]

_env = EnvironmentConfigProvider(prefix="DVSTORE_", env_file=PROJECT_ROOT / ".env")


def _setting(key: str, default: str) -> str:
    return _env.get(key) or default


CONFIGURATION = {
    # Shared settings for S3-compatible drivers
    "_s3": {
        "type": "s3",
        "bucket": _setting("s3_bucket", "mybucket"),
        "region": _setting("s3_region", "us-east-1"),
        "direct_upload": True,
        "create_bucket": _setting("s3_create_bucket", "false"),
    },
    # Filesystem store alongside the built-in "local" driver
    "file1": {
        "type": "filesystem",
        "label": "Filesystem",
        "directory": _setting("file1_directory", str(PROJECT_ROOT / "var" / "file1")),
    },
    # MinIO needs path-style addressing when bucket DNS names don't resolve
    "minio1": {
        "__inherits__": "_s3",
        "label": "MinIO",
        "endpoint": _setting("minio_endpoint", "http://localhost:9000"),
        "access_key": _setting("minio_access_key", "minioadmin"),
        "secret_key": _setting("minio_secret_key", "minioadmin"),
        "path_style_access": True,
    },
    "localstack1": {
        "__inherits__": "_s3",
        "label": "LocalStack",
        "endpoint": _setting("localstack_endpoint", "http://localhost:4566"),
        "access_key": _setting("localstack_access_key", "test"),
        "secret_key": _setting("localstack_secret_key", "test"),
        "path_style_access": True,
    },
}
