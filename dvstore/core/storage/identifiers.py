"""Storage identifiers: the canonical address of a file's bytes.

Wire forms:

* ``driverId://bucket:key`` for object-store drivers, e.g.
  ``minio1://mybucket:10.5072/FK2/ABC123/18b8c06688c-21b8320a3ee5``
* ``driverId:key`` for filesystem drivers, e.g. ``file1:10.5072/FK2/ABC123/18b8c06688c-21b8320a3ee5``

Keys of files belonging to a dataset are rooted under the dataset storage
prefix, which is derived from the dataset's persistent identifier.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from dvstore.core.errors import ValidationError

OBJECT_STORE_SEPARATOR = "://"
MAX_KEY_ATTEMPTS = 5

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StorageIdentifier:
    """Parsed storage identifier. ``bucket`` is None for filesystem drivers."""

    driver_id: str
    bucket: str | None
    key: str

    def __str__(self) -> str:
        return encode(self.driver_id, self.bucket, self.key)


def _check_driver_id(driver_id: str) -> None:
    if not driver_id or ":" in driver_id or "/" in driver_id:
        raise ValidationError(f"Invalid driver id in storage identifier: {driver_id!r}")


def encode(driver_id: str, bucket: str | None, key: str) -> str:
    """Format a storage identifier.

    Raises:
        ValidationError: If any part is empty or contains a delimiter it can't hold
    """
    _check_driver_id(driver_id)
    if not key:
        raise ValidationError("Storage identifier key must not be empty")
    if bucket is None:
        return f"{driver_id}:{key}"
    if not bucket or ":" in bucket or "/" in bucket:
        raise ValidationError(f"Invalid bucket in storage identifier: {bucket!r}")
    return f"{driver_id}{OBJECT_STORE_SEPARATOR}{bucket}:{key}"


def decode(value: str) -> StorageIdentifier:
    """Parse a storage identifier string.

    Raises:
        ValidationError: On a missing delimiter, empty part or stray separator

    Examples:
        >>> decode("minio1://mybucket:10.5072/FK2/ABC123/file-xyz")
        StorageIdentifier(driver_id='minio1', bucket='mybucket', key='10.5072/FK2/ABC123/file-xyz')
        >>> decode("file1:10.5072/FK2/ABC123/file-xyz").bucket is None
        True
    """
    if not isinstance(value, str) or not value:
        raise ValidationError("Storage identifier must be a non-empty string")

    if OBJECT_STORE_SEPARATOR in value:
        driver_id, remainder = value.split(OBJECT_STORE_SEPARATOR, 1)
        bucket, sep, key = remainder.partition(":")
        if not sep:
            raise ValidationError(f"Storage identifier has no bucket delimiter: {value!r}")
        if not bucket or "/" in bucket:
            raise ValidationError(f"Invalid bucket in storage identifier: {value!r}")
    else:
        driver_id, sep, key = value.partition(":")
        if not sep:
            raise ValidationError(f"Storage identifier has no driver delimiter: {value!r}")
        bucket = None

    _check_driver_id(driver_id)
    if not key:
        raise ValidationError(f"Storage identifier has an empty key: {value!r}")
    return StorageIdentifier(driver_id=driver_id, bucket=bucket, key=key)


def dataset_storage_prefix(persistent_id: str) -> str:
    """Derive a dataset's storage prefix from its persistent identifier.

    The protocol is dropped and the remainder kept as a path, so
    ``doi:10.5072/FK2/ABC123`` becomes ``10.5072/FK2/ABC123``.

    Raises:
        ValidationError: If the identifier has no protocol or an empty or unsafe remainder
    """
    protocol, sep, remainder = (persistent_id or "").partition(":")
    remainder = remainder.strip("/")
    if not protocol or not sep or not remainder:
        raise ValidationError(f"Invalid persistent identifier: {persistent_id!r}")
    if any(part in ("", ".", "..") for part in remainder.split("/")):
        raise ValidationError(f"Invalid persistent identifier: {persistent_id!r}")
    return remainder


def generate_file_token() -> str:
    """Return ``<hex millis>-<12 hex chars>``, e.g. ``18b8c06688c-21b8320a3ee5``."""
    return f"{int(time.time() * 1000):x}-{secrets.token_hex(6)}"


def safe_name(file_name: str) -> str:
    """Reduce a file name to characters that are safe in every backend's keys."""
    return _UNSAFE_CHARS.sub("_", file_name).strip("._") or "file"


def derive_key(
    dataset_prefix: str,
    file_name: str | None = None,
    directory_label: str | None = None,
    exists: Callable[[str], bool] | None = None,
) -> str:
    """Derive a collision-resistant object key under a dataset prefix.

    The key is ``<prefix>/[<directory>/][<safe name>-]<file token>``. The token
    carries a random suffix, so concurrent callers don't pick the same key;
    ``exists`` lets the caller reject keys already taken in the backend.

    Raises:
        ValidationError: If no free key is found within a few attempts
    """
    parts = [dataset_prefix.strip("/")]
    if directory_label:
        segments = [safe_name(s) for s in directory_label.strip("/").split("/") if s]
        parts.extend(segments)

    for _ in range(MAX_KEY_ATTEMPTS):
        token = generate_file_token()
        if file_name:
            token = f"{safe_name(file_name)}-{token}"
        key = "/".join(parts + [token])
        if exists is None or not exists(key):
            return key
    raise ValidationError(f"Could not derive a free key under {dataset_prefix}")


def is_under_prefix(key: str, dataset_prefix: str) -> bool:
    """True if ``key`` lives below ``dataset_prefix`` without climbing out of it."""
    if any(part in (".", "..") for part in key.split("/")):
        return False
    return key.startswith(dataset_prefix.strip("/") + "/")
