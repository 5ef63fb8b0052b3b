"""Parsing of the JSON body sent when registering a directly uploaded file.

Example body::

    {
        "description": "My description.",
        "directoryLabel": "data/subdir1",
        "categories": ["Data"],
        "restrict": "false",
        "storageIdentifier": "localstack1://mybucket:10.5072/FK2/ABC123/18b8c06688c-21b8320a3ee5",
        "fileName": "file1.txt",
        "mimeType": "text/plain",
        "checksum": {"@type": "SHA-1", "@value": "123456"},
        "fileSize": 6
    }
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from dvstore.core.errors import ValidationError
from dvstore.ingest.records import Checksum, FileMetadata


@dataclass(frozen=True)
class RemoteFilePayload:
    storage_identifier: str
    file_size: int | None
    checksum: Checksum | None
    metadata: FileMetadata


def _optional_str(body: Mapping[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string")
    return value or None


def _restrict(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationError(f"'restrict' must be true or false, got {value!r}")


def parse_remote_file_payload(body: str | bytes | Mapping[str, Any]) -> RemoteFilePayload:
    """Parse and validate a remote file registration body.

    Args:
        body: JSON text or an already decoded object

    Raises:
        ValidationError: If the body is not valid JSON or a field has the wrong shape
    """
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, Mapping):
        raise ValidationError("Request body must be a JSON object")

    storage_identifier = body.get("storageIdentifier")
    if not isinstance(storage_identifier, str) or not storage_identifier:
        raise ValidationError("'storageIdentifier' is required")

    file_size = body.get("fileSize")
    if file_size is not None and (isinstance(file_size, bool) or not isinstance(file_size, int)):
        raise ValidationError(f"'fileSize' must be an integer, got {file_size!r}")

    checksum = body.get("checksum")
    categories = body.get("categories") or []
    if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
        raise ValidationError("'categories' must be a list of strings")

    metadata = FileMetadata(
        file_name=_optional_str(body, "fileName"),
        directory_label=_optional_str(body, "directoryLabel"),
        mime_type=_optional_str(body, "mimeType"),
        description=_optional_str(body, "description"),
        categories=tuple(categories),
        restrict=_restrict(body.get("restrict")),
    )
    return RemoteFilePayload(
        storage_identifier=storage_identifier,
        file_size=file_size,
        checksum=Checksum.from_json(checksum) if checksum is not None else None,
        metadata=metadata,
    )
