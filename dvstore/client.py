"""HTTP client that uploads file bytes to presigned URLs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from dvstore.core.errors import BackendUnavailableError, StorageBackendError, ValidationError
from dvstore.core.storage.object_store import TEMPORARY_TAG_HEADER, TEMPORARY_TAGGING

logger = logging.getLogger(__name__)


def _session_with_retries(total: int = 3, backoff: float = 0.5) -> requests.Session:
    sess = requests.Session()
    retries = Retry(
        total=total,
        read=total,
        connect=total,
        backoff_factor=backoff,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("PUT",),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries)
    sess.mount("http://", adapter)
    sess.mount("https://", adapter)
    return sess


@dataclass
class UploadResult:
    storage_identifier: str
    size: int
    etags: dict[int, str] = field(default_factory=dict)
    upload_id: str | None = None


@dataclass
class DirectUploadClient:
    """Uploads bytes using the response of an upload-URL request.

    Examples:
        >>> client = DirectUploadClient()
        >>> result = client.upload(api.get_upload_urls(dataset, 6)["data"], b"foobar")
    """

    timeout: float = 60.0
    max_retries: int = 3

    def __post_init__(self) -> None:
        self.session = _session_with_retries(total=self.max_retries)

    def put(
        self,
        url: str,
        data: bytes,
        content_type: str | None = None,
        tagging: str | None = None,
    ) -> str:
        """PUT bytes to one presigned URL and return the ETag the backend reports.

        ``tagging`` is sent as the object tag header; single-part URLs are
        signed for the temporary-upload tag.
        """
        headers = {"Content-Type": content_type} if content_type else {}
        if tagging:
            headers[TEMPORARY_TAG_HEADER] = tagging
        try:
            res = self.session.put(url, data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise BackendUnavailableError(f"Upload to {url.split('?')[0]} failed: {e}") from e
        if res.status_code >= 500:
            raise BackendUnavailableError(
                f"Upload to {url.split('?')[0]} failed with HTTP {res.status_code}"
            )
        if not res.ok:
            raise StorageBackendError(
                f"Upload to {url.split('?')[0]} rejected with HTTP {res.status_code}: {res.text}"
            )
        return res.headers.get("ETag", "").strip('"')

    def upload(
        self, upload: dict[str, Any], data: bytes, content_type: str | None = None
    ) -> UploadResult:
        """Upload ``data`` to the URL(s) of an upload-URL response.

        Args:
            upload: ``{"url", "partSize", "storageIdentifier"}`` or the multipart
                form with ``"urls"`` and ``"uploadId"``
            data: File contents
            content_type: MIME type sent with single-part uploads

        Returns:
            Storage identifier, size and part ETags (for completing a multipart upload)
        """
        storage_identifier = upload["storageIdentifier"]
        result = UploadResult(storage_identifier=storage_identifier, size=len(data))

        if "url" in upload:
            result.etags[1] = self.put(upload["url"], data, content_type, tagging=TEMPORARY_TAGGING)
            logger.info(f"Uploaded {len(data)} bytes for {storage_identifier}")
            return result

        urls = {int(n): url for n, url in upload["urls"].items()}
        part_size = int(upload["partSize"])
        if part_size <= 0:
            raise ValidationError(f"Invalid part size: {part_size}")
        chunks = [data[i : i + part_size] for i in range(0, len(data), part_size)]
        if len(chunks) > len(urls):
            raise ValidationError(
                f"{len(data)} bytes need {len(chunks)} parts but only {len(urls)} URLs were issued"
            )

        for part_number, chunk in enumerate(chunks, start=1):
            result.etags[part_number] = self.put(urls[part_number], chunk)
            logger.debug(f"Uploaded part {part_number}/{len(chunks)} for {storage_identifier}")
        result.upload_id = upload.get("uploadId")
        logger.info(f"Uploaded {len(data)} bytes in {len(chunks)} parts for {storage_identifier}")
        return result
