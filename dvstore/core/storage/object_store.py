"""Object store client abstraction.

Every physical storage driver is reached through an ``ObjectStoreClient``.
Clients advertise what they can do through a capability set; operations a
client cannot perform raise ``UnsupportedOperationError`` instead of silently
doing nothing, so callers can fall back (e.g. from direct upload to streaming
ingest).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import BinaryIO

from dvstore.core.errors import NotFoundError, UnsupportedOperationError

# Objects uploaded directly carry this tag until their file record is committed
TEMPORARY_TAG_HEADER = "x-amz-tagging"
TEMPORARY_TAGGING = "dv-state=temp"


class Capability(Enum):
    """Operations an object store client may support."""

    PUT = "put"
    GET = "get"
    DELETE = "delete"
    HEAD = "head"
    MULTIPART = "multipart"
    PRESIGN = "presign"


@dataclass(frozen=True)
class ObjectHead:
    """Metadata for a stored object, as reported by the backend."""

    key: str
    size: int
    etag: str | None
    content_type: str | None
    last_modified: datetime | None


@dataclass(frozen=True)
class CompletedPart:
    """A part uploaded as part of a multipart upload."""

    part_number: int
    etag: str


class ObjectStoreClient(ABC):
    """Abstract base class for object store clients.

    Keys are object keys relative to the driver's bucket (or root directory).
    """

    capabilities: frozenset[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        """Return True if this client implements ``capability``."""
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        """Raise ``UnsupportedOperationError`` unless ``capability`` is supported."""
        if not self.supports(capability):
            raise UnsupportedOperationError(
                f"{type(self).__name__} does not support '{capability.value}'"
            )

    @abstractmethod
    def put(self, key: str, data: bytes | BinaryIO, content_type: str | None = None) -> str:
        """Store an object.

        Args:
            key: Object key
            data: Binary data or file-like object
            content_type: MIME type of the content

        Returns:
            ETag (or equivalent version marker) of the stored object
        """
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Retrieve an object.

        Raises:
            NotFoundError: If the object doesn't exist
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object.

        Raises:
            NotFoundError: If the backend reports the object as absent
        """
        pass

    @abstractmethod
    def head(self, key: str) -> ObjectHead:
        """Get object metadata without downloading it.

        Raises:
            NotFoundError: If the object doesn't exist
        """
        pass

    @abstractmethod
    def head_bucket(self) -> None:
        """Check that the bucket (or root directory) is reachable.

        Raises:
            NotFoundError: If the bucket doesn't exist
        """
        pass

    @abstractmethod
    def create_multipart_upload(self, key: str, content_type: str | None = None) -> str:
        """Open a multipart upload and return its upload id."""
        pass

    @abstractmethod
    def generate_presigned_put_url(
        self,
        key: str,
        expiry: timedelta,
        upload_id: str | None = None,
        part_number: int | None = None,
    ) -> str:
        """Generate a time-bounded URL for uploading an object or one part of it."""
        pass

    @abstractmethod
    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[CompletedPart]
    ) -> str:
        """Assemble uploaded parts into one object and return its ETag."""
        pass

    @abstractmethod
    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts."""
        pass

    def mark_committed(self, key: str) -> None:
        """Clear the temporary-upload tag from a committed object.

        Stores without object tags have nothing to clear.
        """

    def exists(self, key: str) -> bool:
        """Check if an object exists."""
        try:
            self.head(key)
        except NotFoundError:
            return False
        return True
