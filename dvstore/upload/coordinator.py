"""Direct upload coordination.

Clients upload bytes straight to an object store using presigned URLs handed
out here, so large files never pass through the application. Small files get
one PUT URL; larger files get a multipart upload with one URL per part.

Sessions are advisory. The backend holds nothing for a session except an
open multipart upload id, and a session never proves that bytes arrived:
the ingest service checks the backend before committing a file.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from dvstore.core.errors import (
    ConflictError,
    NotFoundError,
    StorageError,
    UnsupportedOperationError,
    ValidationError,
)
from dvstore.core.storage.bindings import DriverBindings, NodeRef
from dvstore.core.storage.identifiers import StorageIdentifier, derive_key
from dvstore.core.storage.object_store import Capability, CompletedPart, ObjectStoreClient
from dvstore.core.storage.registry import StorageDriverRegistry, UploadLimits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartPlan:
    part_size: int
    part_count: int

    @property
    def is_multipart(self) -> bool:
        return self.part_count > 1


def validate_declared_size(declared_size: Any, allow_empty: bool = False) -> int:
    """Return the declared size if it is a positive integer.

    Zero is accepted with ``allow_empty``; upload URLs are never issued for
    empty files but empty files can still be registered.

    Raises:
        ValidationError: If the size is missing, not an integer or out of range
    """
    if declared_size is None:
        raise ValidationError("File size must be specified for direct upload")
    if isinstance(declared_size, bool) or not isinstance(declared_size, int):
        raise ValidationError(f"File size must be an integer, got {declared_size!r}")
    if declared_size < 0 or (declared_size == 0 and not allow_empty):
        raise ValidationError(f"File size must be positive, got {declared_size}")
    return declared_size


def plan_parts(declared_size: int, limits: UploadLimits) -> PartPlan:
    """Choose single-part or multipart upload for a file of ``declared_size`` bytes.

    Up to the multipart threshold a single PUT is used. Above it, the part
    size is the larger of the minimum part size and the size needed to stay
    within the part count limit, rounded up to the backend's granularity.

    Raises:
        ValidationError: If the file can't be uploaded within the backend limits
    """
    declared_size = validate_declared_size(declared_size)
    if declared_size > limits.max_object_size:
        raise ValidationError(
            f"File size {declared_size} exceeds the maximum object size {limits.max_object_size}"
        )
    if declared_size <= limits.multipart_threshold:
        return PartPlan(part_size=declared_size, part_count=1)

    part_size = max(limits.min_part_size, math.ceil(declared_size / limits.max_part_count))
    part_size = math.ceil(part_size / limits.part_granularity) * limits.part_granularity
    if part_size > limits.max_part_size:
        raise ValidationError(
            f"File size {declared_size} needs parts of {part_size} bytes, "
            f"above the maximum part size {limits.max_part_size}"
        )
    return PartPlan(part_size=part_size, part_count=math.ceil(declared_size / part_size))


@dataclass(frozen=True)
class UploadUrl:
    part_number: int
    url: str


@dataclass(frozen=True)
class UploadSession:
    """URLs issued for one direct upload."""

    dataset_id: int
    declared_size: int
    part_size: int
    urls: tuple[UploadUrl, ...]
    storage_identifier: StorageIdentifier
    issued_at: datetime
    expires_at: datetime
    upload_id: str | None = None
    completed: bool = False

    @property
    def is_multipart(self) -> bool:
        return self.upload_id is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_response(self) -> dict[str, Any]:
        """Wire form handed to the uploading client."""
        response: dict[str, Any] = {
            "partSize": self.part_size,
            "storageIdentifier": str(self.storage_identifier),
        }
        if self.is_multipart:
            response["urls"] = {str(u.part_number): u.url for u in self.urls}
            response["uploadId"] = self.upload_id
        else:
            response["url"] = self.urls[0].url
        return response


class DirectUploadCoordinator:
    """Issues presigned upload URLs and tracks the resulting sessions in memory."""

    def __init__(
        self,
        registry: StorageDriverRegistry,
        bindings: DriverBindings,
        clock: Callable[[], datetime] | None = None,
    ):
        self._registry = registry
        self._bindings = bindings
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sessions: dict[str, UploadSession] = {}
        self._reserved: set[str] = set()
        self._lock = threading.Lock()

    def request_upload_urls(
        self,
        dataset_ref: NodeRef,
        declared_size: int | None,
        file_name: str | None = None,
        content_type: str | None = None,
    ) -> UploadSession:
        """Issue upload URL(s) for a new file in a dataset.

        Raises:
            ValidationError: If the size is missing or outside backend limits
            UnsupportedOperationError: If the dataset's driver can't take direct uploads
        """
        declared_size = validate_declared_size(declared_size)
        dataset = self._bindings.tree.dataset(dataset_ref)
        driver = self._bindings.resolve_driver(dataset.index)
        client = self._registry.get_client(driver.driver_id)

        if not driver.direct_upload or not client.supports(Capability.PRESIGN):
            raise UnsupportedOperationError(
                f"Driver '{driver.driver_id}' does not accept direct uploads; "
                "upload the file through the application instead"
            )
        plan = plan_parts(declared_size, driver.limits)
        if plan.is_multipart:
            client.require(Capability.MULTIPART)

        prefix = self._bindings.tree.dataset_prefix(dataset.index)
        key = self._reserve_key(prefix, file_name)
        identifier = StorageIdentifier(driver.driver_id, driver.bucket, key)
        expiry = timedelta(minutes=driver.limits.url_expiration_minutes)

        upload_id = None
        try:
            if plan.is_multipart:
                upload_id = client.create_multipart_upload(key, content_type)
                urls = tuple(
                    UploadUrl(n, client.generate_presigned_put_url(key, expiry, upload_id, n))
                    for n in range(1, plan.part_count + 1)
                )
            else:
                urls = (UploadUrl(1, client.generate_presigned_put_url(key, expiry)),)
        except Exception:
            if upload_id is not None:
                self._abort_unissued(client, key, upload_id)
            with self._lock:
                self._reserved.discard(key)
            raise

        issued_at = self._clock()
        session = UploadSession(
            dataset_id=dataset.index,
            declared_size=declared_size,
            part_size=plan.part_size,
            urls=urls,
            storage_identifier=identifier,
            issued_at=issued_at,
            expires_at=issued_at + expiry,
            upload_id=upload_id,
        )
        with self._lock:
            self._reserved.discard(key)
            self._sessions[str(identifier)] = session

        logger.info(
            f"Issued {len(urls)} upload URL(s) for {identifier} "
            f"({declared_size} bytes, part size {plan.part_size})"
        )
        return session

    @staticmethod
    def _abort_unissued(client: ObjectStoreClient, key: str, upload_id: str) -> None:
        """Abort a multipart upload whose URLs could not all be signed."""
        try:
            client.abort_multipart_upload(key, upload_id)
        except NotFoundError:
            logger.debug(f"Multipart upload {upload_id} for {key} was already gone")
        except StorageError as e:
            logger.error(f"Could not abort multipart upload {upload_id} for {key}: {e}")
        else:
            logger.warning(f"Aborted multipart upload {upload_id} for {key}: URL signing failed")

    def _reserve_key(self, prefix: str, file_name: str | None) -> str:
        with self._lock:
            taken = {s.storage_identifier.key for s in self._sessions.values()} | self._reserved
            key = derive_key(prefix, file_name, exists=taken.__contains__)
            self._reserved.add(key)
        return key

    def get_session(self, storage_identifier: StorageIdentifier | str) -> UploadSession | None:
        """Return the live session for an identifier, dropping it if expired."""
        name = str(storage_identifier)
        with self._lock:
            session = self._sessions.get(name)
            if session is not None and session.is_expired(self._clock()):
                if session.is_multipart and not session.completed:
                    # keep it so abort_expired_sessions can release the upload id
                    return None
                del self._sessions[name]
                logger.warning(f"Dropped expired upload session for {name}")
                return None
        return session

    def _require_session(self, storage_identifier: StorageIdentifier | str, upload_id: str) -> UploadSession:
        session = self.get_session(storage_identifier)
        if session is None:
            raise NotFoundError(f"No open upload session for {storage_identifier}")
        if session.upload_id != upload_id:
            raise ConflictError(f"Upload id {upload_id} does not belong to {storage_identifier}")
        return session

    def complete_upload(
        self,
        storage_identifier: StorageIdentifier | str,
        upload_id: str,
        etags: Mapping[int, str],
    ) -> str:
        """Assemble the parts of a multipart upload.

        Args:
            storage_identifier: Identifier issued with the session
            upload_id: Upload id issued with the session
            etags: Part number -> ETag returned by each part PUT

        Raises:
            ValidationError: If a part is missing or unknown
        """
        session = self._require_session(storage_identifier, upload_id)
        expected = {u.part_number for u in session.urls}
        if set(etags) != expected:
            raise ValidationError(
                f"Expected ETags for parts 1..{len(expected)}, got {sorted(etags)}"
            )

        identifier = session.storage_identifier
        client = self._registry.get_client(identifier.driver_id)
        parts = [CompletedPart(n, etag) for n, etag in sorted(etags.items())]
        etag = client.complete_multipart_upload(identifier.key, upload_id, parts)

        with self._lock:
            self._sessions[str(identifier)] = dataclasses.replace(session, completed=True)
        return etag

    def abort_upload(self, storage_identifier: StorageIdentifier | str, upload_id: str) -> None:
        """Abort a multipart upload and forget its session."""
        session = self._require_session(storage_identifier, upload_id)
        identifier = session.storage_identifier
        self._registry.get_client(identifier.driver_id).abort_multipart_upload(
            identifier.key, upload_id
        )
        self.release(identifier)

    def release(self, storage_identifier: StorageIdentifier | str) -> None:
        """Forget a session (after its file was committed or abandoned)."""
        with self._lock:
            self._sessions.pop(str(storage_identifier), None)

    def declared_size_for(self, storage_identifier: StorageIdentifier | str) -> int | None:
        """Size declared when URLs were issued for this identifier, if still known."""
        session = self.get_session(storage_identifier)
        return session.declared_size if session else None

    def expired_sessions(self, now: datetime | None = None) -> list[UploadSession]:
        """Sessions past their expiry, for an external sweeper."""
        now = now or self._clock()
        with self._lock:
            return [s for s in self._sessions.values() if s.is_expired(now)]

    def abort_expired_sessions(self, now: datetime | None = None) -> int:
        """Abort open multipart uploads of expired sessions and drop the sessions.

        Returns:
            Number of multipart uploads aborted
        """
        aborted = 0
        for session in self.expired_sessions(now):
            identifier = session.storage_identifier
            if session.is_multipart and not session.completed:
                client = self._registry.get_client(identifier.driver_id)
                try:
                    client.abort_multipart_upload(identifier.key, session.upload_id)
                    aborted += 1
                except NotFoundError:
                    logger.warning(f"Multipart upload for {identifier} was already gone")
            self.release(identifier)
            logger.info(f"Released expired upload session for {identifier}")
        return aborted
