"""File ingest and reconciliation.

A file record is only created after the backend confirms the object exists
with the declared size, and a record is only removed after the backend
object is gone. Metadata therefore never points at an object known to be
absent.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, BinaryIO

from dvstore.core.errors import (
    BackendUnavailableError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from dvstore.core.storage.bindings import DriverBindings, NodeRef
from dvstore.core.storage.identifiers import (
    StorageIdentifier,
    decode,
    derive_key,
    is_under_prefix,
)
from dvstore.core.storage.registry import DriverKind, StorageDriverRegistry
from dvstore.core.utils.config import bool_from_string_or_default
from dvstore.ingest.payload import parse_remote_file_payload
from dvstore.ingest.records import (
    Checksum,
    FileMetadata,
    FileRecord,
    FileRecordStore,
    new_hasher,
    normalize_algorithm,
)
from dvstore.upload.coordinator import DirectUploadCoordinator, validate_declared_size

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_CHECKSUM_ALGORITHM = "MD5"


def _digest(data: bytes | BinaryIO, algorithm: str) -> tuple[str, int]:
    """Hash ``data`` and return (hex digest, size); file objects are rewound."""
    hasher = new_hasher(algorithm)
    if isinstance(data, bytes):
        hasher.update(data)
        return hasher.hexdigest(), len(data)

    start = data.tell()
    size = 0
    while chunk := data.read(CHUNK_SIZE):
        hasher.update(chunk)
        size += len(chunk)
    data.seek(start)
    return hasher.hexdigest(), size


class FileIngestService:
    """Commits, streams in and deletes files for datasets."""

    def __init__(
        self,
        registry: StorageDriverRegistry,
        bindings: DriverBindings,
        records: FileRecordStore | None = None,
        coordinator: DirectUploadCoordinator | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._registry = registry
        self._bindings = bindings
        self._records = records if records is not None else FileRecordStore()
        self._coordinator = coordinator
        self._clock = clock or (lambda: datetime.now(UTC))

        settings = registry.settings
        self._checksum_algorithm = normalize_algorithm(
            settings.get("checksum_algorithm") or DEFAULT_CHECKSUM_ALGORITHM
        )
        self._verify_checksums = bool_from_string_or_default(
            settings.get("verify_checksums"), False
        )

    @property
    def records(self) -> FileRecordStore:
        return self._records

    def get_file(self, record_id: int) -> FileRecord:
        return self._records.get(record_id)

    def commit_remote_file(
        self,
        dataset_ref: NodeRef,
        storage_identifier: StorageIdentifier | str,
        declared_size: int | None,
        checksum: Checksum | None = None,
        metadata: FileMetadata | None = None,
        max_size: int | None = None,
    ) -> FileRecord:
        """Register a file whose bytes were uploaded directly to the backend.

        The object must match ``declared_size`` exactly. Without a declared
        size, ``max_size`` (the size the upload URLs were issued for) bounds
        the stored size instead and the record takes the backend's size.

        Args:
            dataset_ref: Dataset the file belongs to
            storage_identifier: Identifier issued with the upload URL(s)
            declared_size: Size of the uploaded object in bytes
            checksum: Checksum reported by the client
            metadata: Descriptive metadata
            max_size: Upper bound used when no size is declared

        Returns:
            The committed file record

        Raises:
            ValidationError: If no size is given, the identifier is malformed or
                outside the dataset, or the stored size does not fit the size given
            ConflictError: If the identifier names another driver or is already committed
            NotFoundError: If the object is not in the backend
        """
        if declared_size is None and max_size is None:
            raise ValidationError("File size must be specified to register a file")
        if declared_size is not None:
            declared_size = validate_declared_size(declared_size, allow_empty=True)
        return self._commit(
            dataset_ref,
            storage_identifier,
            declared_size,
            checksum,
            metadata,
            max_size=max_size,
            uploaded_directly=True,
        )

    def _commit(
        self,
        dataset_ref: NodeRef,
        storage_identifier: StorageIdentifier | str,
        declared_size: int | None,
        checksum: Checksum | None,
        metadata: FileMetadata | None,
        max_size: int | None = None,
        uploaded_directly: bool = False,
    ) -> FileRecord:
        if isinstance(storage_identifier, str):
            storage_identifier = decode(storage_identifier)

        dataset = self._bindings.tree.dataset(dataset_ref)
        driver = self._bindings.resolve_driver(dataset.index)
        if storage_identifier.driver_id != driver.driver_id:
            raise ConflictError(
                f"Storage identifier {storage_identifier} belongs to driver "
                f"'{storage_identifier.driver_id}', but dataset '{dataset.name}' "
                f"uses '{driver.driver_id}'"
            )
        expected_bucket = driver.bucket if driver.kind is DriverKind.OBJECT_STORE else None
        if storage_identifier.bucket != expected_bucket:
            raise ValidationError(
                f"Storage identifier {storage_identifier} does not use bucket {expected_bucket}"
            )
        prefix = self._bindings.tree.dataset_prefix(dataset.index)
        if not is_under_prefix(storage_identifier.key, prefix):
            raise ValidationError(
                f"Storage identifier {storage_identifier} is not under dataset prefix {prefix}"
            )
        if self._records.find_by_identifier(storage_identifier) is not None:
            raise ConflictError(f"Storage identifier {storage_identifier} is already committed")

        client = self._registry.get_client(driver.driver_id)
        try:
            head = client.head(storage_identifier.key)
        except NotFoundError:
            logger.warning(f"Refusing to commit {storage_identifier}: object not found in backend")
            raise
        if declared_size is not None and head.size != declared_size:
            raise ValidationError(
                f"Declared size {declared_size} does not match stored size {head.size} "
                f"for {storage_identifier}"
            )
        if max_size is not None and head.size > max_size:
            raise ValidationError(
                f"Stored size {head.size} exceeds the {max_size} bytes "
                f"the upload was issued for: {storage_identifier}"
            )

        if checksum is not None and self._verify_checksums:
            digest, _ = _digest(client.get(storage_identifier.key), checksum.algorithm)
            if not checksum.matches(digest):
                raise ValidationError(
                    f"{checksum.algorithm} checksum mismatch for {storage_identifier}"
                )

        if uploaded_directly:
            client.mark_committed(storage_identifier.key)
        record = self._records.create(
            dataset_id=dataset.index,
            storage_identifier=storage_identifier,
            size=head.size,
            checksum=checksum,
            metadata=metadata or FileMetadata(),
            created_at=self._clock(),
        )
        if self._coordinator is not None:
            self._coordinator.release(storage_identifier)
        logger.info(f"Committed file {record.id} at {storage_identifier} ({head.size} bytes)")
        return record

    def add_remote_file(
        self, dataset_ref: NodeRef, body: str | bytes | Mapping[str, Any]
    ) -> FileRecord:
        """Register a directly uploaded file from its JSON description.

        ``fileSize`` in the body must match the stored object. When it is
        absent, the size the upload session was issued for is an upper bound
        and the record takes the stored size, so a client that asked for URLs
        with an estimate can register the smaller file it actually uploaded.

        Raises:
            ValidationError: If the body is malformed or no size can be resolved
        """
        payload = parse_remote_file_payload(body)
        max_size = None
        if payload.file_size is None and self._coordinator is not None:
            max_size = self._coordinator.declared_size_for(payload.storage_identifier)
        if payload.file_size is None and max_size is None:
            raise ValidationError(
                f"File size for {payload.storage_identifier} is unknown; include 'fileSize'"
            )
        return self.commit_remote_file(
            dataset_ref,
            payload.storage_identifier,
            payload.file_size,
            checksum=payload.checksum,
            metadata=payload.metadata,
            max_size=max_size,
        )

    def ingest_file(
        self,
        dataset_ref: NodeRef,
        data: bytes | BinaryIO,
        metadata: FileMetadata | None = None,
    ) -> FileRecord:
        """Stream a file through the application into the dataset's driver.

        File objects must be seekable; they are read once for the checksum and
        once by the backend.
        """
        metadata = metadata or FileMetadata()
        dataset = self._bindings.tree.dataset(dataset_ref)
        driver = self._bindings.resolve_driver(dataset.index)
        client = self._registry.get_client(driver.driver_id)

        digest, size = _digest(data, self._checksum_algorithm)

        prefix = self._bindings.tree.dataset_prefix(dataset.index)
        key = derive_key(prefix, metadata.file_name, metadata.directory_label, exists=client.exists)
        bucket = driver.bucket if driver.kind is DriverKind.OBJECT_STORE else None
        identifier = StorageIdentifier(driver.driver_id, bucket, key)

        client.put(key, data, content_type=metadata.mime_type)
        logger.info(f"Stored {size} bytes at {identifier}")
        try:
            return self._commit(
                dataset.index,
                identifier,
                size,
                checksum=Checksum(self._checksum_algorithm, digest),
                metadata=metadata,
            )
        except StorageError:
            logger.warning(f"Commit of {identifier} failed, removing stored object")
            try:
                client.delete(key)
            except NotFoundError:
                logger.debug(f"Stored object {identifier} was already gone")
            raise

    def delete_file(self, record_id: int) -> bool:
        """Delete a file's backend object, then its record.

        Deleting a file that is already gone is not an error.

        Returns:
            True if a record was removed, False if it did not exist

        Raises:
            BackendUnavailableError: If the backend object could not be deleted;
                the record is kept
        """
        with self._records.locked(record_id):
            try:
                record = self._records.get(record_id)
            except NotFoundError:
                logger.warning(f"File {record_id} is already deleted")
                return False

            identifier = record.storage_identifier
            client = self._registry.get_client(identifier.driver_id)
            try:
                client.delete(identifier.key)
            except NotFoundError:
                logger.warning(f"Object for file {record_id} was already absent: {identifier}")
            except BackendUnavailableError:
                logger.error(f"Backend unavailable deleting {identifier}; keeping file {record_id}")
                raise
            except StorageError as e:
                logger.error(f"Failed to delete {identifier}; keeping file {record_id}: {e}")
                raise BackendUnavailableError(f"Could not delete {identifier}: {e}") from e

            self._records.remove(record_id)
        logger.info(f"Deleted file {record_id} ({identifier})")
        return True
