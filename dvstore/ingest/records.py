"""File records and the in-memory metadata store."""

from __future__ import annotations

import hashlib
import itertools
import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dvstore.core.errors import ConflictError, NotFoundError, ValidationError
from dvstore.core.storage.identifiers import StorageIdentifier

logger = logging.getLogger(__name__)

# Wire name -> hashlib name
CHECKSUM_ALGORITHMS = {
    "MD5": "md5",
    "SHA-1": "sha1",
    "SHA-256": "sha256",
    "SHA-512": "sha512",
}


def normalize_algorithm(name: str) -> str:
    """Return the canonical wire name of a checksum algorithm.

    Matching ignores case and hyphens, so ``sha1`` and ``SHA-1`` are the same.

    Raises:
        ValidationError: If the algorithm is not supported
    """
    wanted = str(name or "").upper().replace("-", "")
    for algorithm in CHECKSUM_ALGORITHMS:
        if algorithm.replace("-", "") == wanted:
            return algorithm
    supported = ", ".join(CHECKSUM_ALGORITHMS)
    raise ValidationError(f"Unsupported checksum type {name!r}. Supported: {supported}")


def new_hasher(algorithm: str):
    return hashlib.new(CHECKSUM_ALGORITHMS[normalize_algorithm(algorithm)])


@dataclass(frozen=True)
class Checksum:
    algorithm: str
    value: str

    @classmethod
    def of(cls, algorithm: str, value: str) -> Checksum:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Checksum value must be a non-empty string")
        return cls(normalize_algorithm(algorithm), value.strip())

    @classmethod
    def from_json(cls, payload: Any) -> Checksum:
        """Parse ``{"@type": ..., "@value": ...}`` or ``{"type": ..., "value": ...}``.

        Raises:
            ValidationError: If the payload is not a checksum object
        """
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Checksum must be an object, got {type(payload).__name__}")
        algorithm = payload.get("@type", payload.get("type"))
        value = payload.get("@value", payload.get("value"))
        if algorithm is None or value is None:
            raise ValidationError("Checksum must have a type and a value")
        return cls.of(algorithm, value)

    def to_json(self) -> dict[str, str]:
        return {"type": self.algorithm, "value": self.value}

    def matches(self, digest: str) -> bool:
        return self.value.lower() == digest.lower()


@dataclass(frozen=True)
class FileMetadata:
    """Descriptive metadata supplied with a file."""

    file_name: str | None = None
    directory_label: str | None = None
    mime_type: str | None = None
    description: str | None = None
    categories: tuple[str, ...] = ()
    restrict: bool = False


@dataclass(frozen=True)
class FileRecord:
    """Committed file. The storage identifier never changes once created."""

    id: int
    dataset_id: int
    storage_identifier: StorageIdentifier
    size: int
    checksum: Checksum | None
    metadata: FileMetadata = field(default_factory=FileMetadata)
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "datasetId": self.dataset_id,
            "storageIdentifier": str(self.storage_identifier),
            "fileSize": self.size,
            "checksum": self.checksum.to_json() if self.checksum else None,
            "fileName": self.metadata.file_name,
            "directoryLabel": self.metadata.directory_label,
            "mimeType": self.metadata.mime_type,
            "description": self.metadata.description,
            "categories": list(self.metadata.categories),
            "restrict": self.metadata.restrict,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class FileRecordStore:
    """In-memory file metadata store.

    Mutations of one record are serialized through ``locked(record_id)``, the
    equivalent of a row lock in a database-backed store.
    """

    def __init__(self):
        self._records: dict[int, FileRecord] = {}
        self._by_identifier: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._row_locks: dict[int, threading.Lock] = {}

    @contextmanager
    def locked(self, record_id: int) -> Iterator[None]:
        """Hold the row lock of ``record_id``; it is dropped once no record uses the id."""
        with self._lock:
            row_lock = self._row_locks.setdefault(record_id, threading.Lock())
        try:
            with row_lock:
                yield
        finally:
            with self._lock:
                if record_id not in self._records:
                    self._row_locks.pop(record_id, None)

    def create(
        self,
        dataset_id: int,
        storage_identifier: StorageIdentifier,
        size: int,
        checksum: Checksum | None,
        metadata: FileMetadata,
        created_at: datetime | None = None,
    ) -> FileRecord:
        """Create a record with a fresh id.

        Raises:
            ConflictError: If a record already uses this storage identifier
        """
        name = str(storage_identifier)
        with self._lock:
            if name in self._by_identifier:
                raise ConflictError(
                    f"Storage identifier {name} is already used by file {self._by_identifier[name]}"
                )
            record = FileRecord(
                id=next(self._ids),
                dataset_id=dataset_id,
                storage_identifier=storage_identifier,
                size=size,
                checksum=checksum,
                metadata=metadata,
                created_at=created_at,
            )
            self._records[record.id] = record
            self._by_identifier[name] = record.id
        return record

    def get(self, record_id: int) -> FileRecord:
        try:
            return self._records[record_id]
        except KeyError:
            raise NotFoundError(f"File {record_id} not found") from None

    def find_by_identifier(self, storage_identifier: StorageIdentifier | str) -> FileRecord | None:
        record_id = self._by_identifier.get(str(storage_identifier))
        return self._records.get(record_id) if record_id is not None else None

    def remove(self, record_id: int) -> bool:
        """Remove a record. Returns False if it was already gone."""
        with self._lock:
            record = self._records.pop(record_id, None)
            if record is None:
                return False
            self._by_identifier.pop(str(record.storage_identifier), None)
            self._row_locks.pop(record_id, None)
        return True

    def list_for_dataset(self, dataset_id: int) -> list[FileRecord]:
        return [r for r in list(self._records.values()) if r.dataset_id == dataset_id]

    def __len__(self) -> int:
        return len(self._records)
