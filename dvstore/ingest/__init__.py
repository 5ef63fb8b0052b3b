"""File ingest, reconciliation and file metadata records."""

from dvstore.ingest.payload import RemoteFilePayload, parse_remote_file_payload
from dvstore.ingest.records import (
    CHECKSUM_ALGORITHMS,
    Checksum,
    FileMetadata,
    FileRecord,
    FileRecordStore,
)
from dvstore.ingest.service import FileIngestService

__all__ = [
    "CHECKSUM_ALGORITHMS",
    "Checksum",
    "FileIngestService",
    "FileMetadata",
    "FileRecord",
    "FileRecordStore",
    "RemoteFilePayload",
    "parse_remote_file_payload",
]
