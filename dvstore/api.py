"""Boundary operations for storage administration and file upload.

Each operation returns a JSON-ready envelope: ``{"status": "OK", "data": ...}``
on success and ``{"status": "ERROR", "code": <http status>, "message": ...}``
when a ``StorageError`` is raised. Transport (routing, authentication) is the
caller's job; callers pass ``privileged=True`` for superusers.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping
from typing import Any

from dvstore.core.errors import (
    BackendUnavailableError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StorageBackendError,
    StorageError,
    StoragePermissionError,
    UnsupportedOperationError,
    ValidationError,
)
from dvstore.core.storage.bindings import DriverBindings, DvObjectTree, NodeRef
from dvstore.core.storage.registry import StorageDriverRegistry
from dvstore.ingest.records import FileMetadata, FileRecordStore
from dvstore.ingest.service import FileIngestService
from dvstore.upload.coordinator import DirectUploadCoordinator

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[StorageError], int] = {
    ValidationError: 400,
    ConfigurationError: 400,
    UnsupportedOperationError: 400,
    StoragePermissionError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    StorageBackendError: 502,
    BackendUnavailableError: 503,
}


def status_code_for(error: StorageError) -> int:
    for error_type in type(error).__mro__:
        if error_type in STATUS_CODES:
            return STATUS_CODES[error_type]
    return 500


def ok(data: Any) -> dict[str, Any]:
    return {"status": "OK", "data": data}


def error_envelope(error: StorageError) -> dict[str, Any]:
    return {"status": "ERROR", "code": status_code_for(error), "message": str(error)}


def api_operation(func: Callable[..., dict[str, Any]]) -> Callable[..., dict[str, Any]]:
    """Turn ``StorageError`` raised by an operation into an error envelope."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StorageError as e:
            envelope = error_envelope(e)
            logger.warning(f"{func.__name__} failed ({envelope['code']}): {e}")
            return envelope

    return wrapper


class StorageApi:
    """Storage driver administration and direct upload operations.

    Examples:
        >>> api = StorageApi(StorageDriverRegistry())
        >>> root = api.tree.add_collection("root")
        >>> api.set_storage_driver("root", "MinIO", privileged=True)
        {'status': 'OK', 'data': {'message': 'Storage set to: MinIO/minio1'}}
    """

    def __init__(
        self,
        registry: StorageDriverRegistry,
        tree: DvObjectTree | None = None,
        records: FileRecordStore | None = None,
    ):
        self.registry = registry
        self.tree = tree if tree is not None else DvObjectTree()
        self.bindings = DriverBindings(registry, self.tree)
        self.uploads = DirectUploadCoordinator(registry, self.bindings)
        self.files = FileIngestService(
            registry, self.bindings, records=records, coordinator=self.uploads
        )

    @api_operation
    def list_storage_drivers(self, *, privileged: bool) -> dict[str, Any]:
        if not privileged:
            raise StoragePermissionError("Listing storage drivers requires a superuser")
        return ok(self.registry.list_drivers())

    @api_operation
    def get_storage_driver(self, ref: NodeRef) -> dict[str, Any]:
        """Explicit driver id bound at a collection or dataset, or "undefined"."""
        return ok({"message": self.bindings.get_binding(ref)})

    @api_operation
    def get_effective_storage_driver(self, ref: NodeRef) -> dict[str, Any]:
        driver = self.bindings.resolve_driver(ref)
        return ok({"name": driver.driver_id, "label": driver.label})

    @api_operation
    def set_storage_driver(self, ref: NodeRef, label: str, *, privileged: bool) -> dict[str, Any]:
        driver = self.bindings.set_binding(ref, label, privileged=privileged)
        return ok({"message": f"Storage set to: {driver.label}/{driver.driver_id}"})

    @api_operation
    def reset_storage_driver(self, ref: NodeRef, *, privileged: bool) -> dict[str, Any]:
        self.bindings.clear_binding(ref, privileged=privileged)
        return ok({"message": "Storage reset to default"})

    @api_operation
    def get_upload_urls(
        self, dataset_ref: NodeRef, size: int | None, file_name: str | None = None
    ) -> dict[str, Any]:
        session = self.uploads.request_upload_urls(dataset_ref, size, file_name=file_name)
        return ok(session.to_response())

    @api_operation
    def complete_multipart_upload(
        self, storage_identifier: str, upload_id: str, etags: Mapping[int | str, str]
    ) -> dict[str, Any]:
        """Finish a multipart upload; ``etags`` maps part number to ETag."""
        try:
            parts = {int(n): etag for n, etag in etags.items()}
        except ValueError as e:
            raise ValidationError(f"Part numbers must be integers: {list(etags)}") from e
        etag = self.uploads.complete_upload(storage_identifier, upload_id, parts)
        return ok({"storageIdentifier": storage_identifier, "etag": etag})

    @api_operation
    def abort_multipart_upload(self, storage_identifier: str, upload_id: str) -> dict[str, Any]:
        self.uploads.abort_upload(storage_identifier, upload_id)
        return ok({"message": f"Upload {upload_id} aborted"})

    @api_operation
    def add_remote_file(
        self, dataset_ref: NodeRef, body: str | bytes | Mapping[str, Any]
    ) -> dict[str, Any]:
        record = self.files.add_remote_file(dataset_ref, body)
        return ok({"files": [record.to_dict()]})

    @api_operation
    def add_file(
        self, dataset_ref: NodeRef, data: bytes, **metadata: Any
    ) -> dict[str, Any]:
        """Upload bytes through the application (non-direct path)."""
        record = self.files.ingest_file(dataset_ref, data, FileMetadata(**metadata))
        return ok({"files": [record.to_dict()]})

    @api_operation
    def list_files(self, dataset_ref: NodeRef) -> dict[str, Any]:
        dataset = self.tree.dataset(dataset_ref)
        return ok([r.to_dict() for r in self.files.records.list_for_dataset(dataset.index)])

    @api_operation
    def delete_file(self, record_id: int) -> dict[str, Any]:
        deleted = self.files.delete_file(record_id)
        message = f"File {record_id} deleted" if deleted else f"File {record_id} was already deleted"
        return ok({"message": message})
