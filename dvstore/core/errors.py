"""Error taxonomy shared by the storage drivers, upload coordinator and ingest service."""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for storage layer errors."""

    pass


class ConfigurationError(StorageError):
    """Raised for unknown drivers or labels and missing or invalid configuration."""

    pass


class StoragePermissionError(StorageError):
    """Raised when the caller lacks elevated privilege for driver administration."""

    pass


class ValidationError(StorageError):
    """Raised for missing or invalid sizes, identifiers and checksum payloads."""

    pass


class ConflictError(StorageError):
    """Raised when a request contradicts existing state (e.g. a driver mismatch)."""

    pass


class NotFoundError(StorageError):
    """Raised when an object, record or node does not exist."""

    pass


class BackendUnavailableError(StorageError):
    """Raised on network, timeout or 5xx failures once retries are exhausted."""

    pass


class UnsupportedOperationError(StorageError):
    """Raised when a driver lacks the capability an operation needs."""

    pass


class StorageBackendError(StorageError):
    """Raised for permanent backend failures (access denied, malformed request)."""

    pass
