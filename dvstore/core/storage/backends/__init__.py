"""Object store client implementations."""

from dvstore.core.storage.backends.filesystem_backend import FilesystemClient
from dvstore.core.storage.backends.s3_backend import S3CompatibleClient

__all__ = [
    "FilesystemClient",
    "S3CompatibleClient",
]
