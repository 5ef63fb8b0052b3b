"""Local filesystem object store client."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import BinaryIO

from dvstore.core.errors import (
    NotFoundError,
    StorageBackendError,
    UnsupportedOperationError,
    ValidationError,
)
from dvstore.core.storage.object_store import (
    Capability,
    CompletedPart,
    ObjectHead,
    ObjectStoreClient,
)

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta"


class FilesystemClient(ObjectStoreClient):
    """Stores objects as files under a root directory.

    Content type is kept in a JSON sidecar next to each file. Direct upload is
    not possible for this driver: presigning and multipart operations raise
    ``UnsupportedOperationError`` and callers stream bytes through ``put``.
    """

    capabilities = frozenset(
        {Capability.PUT, Capability.GET, Capability.DELETE, Capability.HEAD}
    )

    def __init__(self, directory: str | Path, create: bool = True):
        """Initialize the client.

        Args:
            directory: Root directory for stored objects
            create: Create the root directory if it is missing
        """
        self._root = Path(directory).expanduser().resolve()
        if create:
            self._root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized filesystem client at: {self._root}")

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/"):
            raise ValidationError(f"Invalid object key: {key!r}")
        path = (self._root / key).resolve()
        if path != self._root and self._root not in path.parents:
            raise ValidationError(f"Object key escapes storage root: {key!r}")
        return path

    def _meta_path(self, path: Path) -> Path:
        return path.with_name(path.name + META_SUFFIX)

    def put(self, key: str, data: bytes | BinaryIO, content_type: str | None = None) -> str:
        """Store an object, replacing any existing file atomically."""
        path = self._path(key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            size = 0
            with os.fdopen(fd, "wb") as f:
                if isinstance(data, bytes):
                    f.write(data)
                    size = len(data)
                else:
                    while chunk := data.read(8192):
                        f.write(chunk)
                        size += len(chunk)
            os.replace(tmp_name, path)
            tmp_name = None

            self._meta_path(path).write_text(
                json.dumps({"content_type": content_type or "application/octet-stream"})
            )
        except OSError as e:
            raise StorageBackendError(f"Failed to store object {key}: {e}") from e
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

        etag = str(int(path.stat().st_mtime * 1000000))
        logger.info(f"Stored object: {key} ({size} bytes)")
        return etag

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(f"Object not found: {key}") from e
        except OSError as e:
            raise StorageBackendError(f"Failed to retrieve object {key}: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise NotFoundError(f"Object not found: {key}") from e
        except OSError as e:
            raise StorageBackendError(f"Failed to delete object {key}: {e}") from e

        self._meta_path(path).unlink(missing_ok=True)
        self._cleanup_empty_dirs(path.parent)
        logger.info(f"Deleted object: {key}")

    def _cleanup_empty_dirs(self, path: Path) -> None:
        """Remove empty parent directories up to the root."""
        while path != self._root and self._root in path.parents:
            try:
                path.rmdir()
            except OSError:
                break
            path = path.parent

    def head(self, key: str) -> ObjectHead:
        path = self._path(key)
        try:
            stat = path.stat()
        except FileNotFoundError as e:
            raise NotFoundError(f"Object not found: {key}") from e
        except OSError as e:
            raise StorageBackendError(f"Failed to stat object {key}: {e}") from e
        if not path.is_file():
            raise NotFoundError(f"Object not found: {key}")

        content_type = None
        meta_path = self._meta_path(path)
        if meta_path.exists():
            content_type = json.loads(meta_path.read_text()).get("content_type")

        return ObjectHead(
            key=key,
            size=stat.st_size,
            etag=str(int(stat.st_mtime * 1000000)),
            content_type=content_type,
            last_modified=datetime.fromtimestamp(stat.st_mtime, UTC),
        )

    def head_bucket(self) -> None:
        if not self._root.is_dir():
            raise NotFoundError(f"Storage directory not found: {self._root}")

    def create_multipart_upload(self, key: str, content_type: str | None = None) -> str:
        raise UnsupportedOperationError("Filesystem storage does not support multipart upload")

    def generate_presigned_put_url(
        self,
        key: str,
        expiry: timedelta,
        upload_id: str | None = None,
        part_number: int | None = None,
    ) -> str:
        raise UnsupportedOperationError(
            "Filesystem storage does not support direct upload; stream the file instead"
        )

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[CompletedPart]
    ) -> str:
        raise UnsupportedOperationError("Filesystem storage does not support multipart upload")

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        raise UnsupportedOperationError("Filesystem storage does not support multipart upload")
