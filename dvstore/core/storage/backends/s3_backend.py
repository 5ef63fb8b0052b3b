"""S3-compatible object store client built on the MinIO SDK."""

from __future__ import annotations

import logging
from datetime import timedelta
from io import BytesIO
from typing import BinaryIO
from urllib.parse import urlsplit

import urllib3
from minio import Minio
from minio.datatypes import Part
from minio.error import InvalidResponseError, MinioException, S3Error, ServerError
from urllib3.exceptions import HTTPError as TransportError
from urllib3.util.retry import Retry

from dvstore.core.errors import (
    BackendUnavailableError,
    NotFoundError,
    StorageBackendError,
    ValidationError,
)
from dvstore.core.storage.object_store import (
    TEMPORARY_TAG_HEADER,
    TEMPORARY_TAGGING,
    Capability,
    CompletedPart,
    ObjectHead,
    ObjectStoreClient,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NoSuchUpload", "ResourceNotFound"})
RETRYABLE_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE"})
MAX_PRESIGN_EXPIRY = timedelta(days=7)


def _http_client_with_retries(
    total: int = 3,
    backoff: float = 0.5,
    connect_timeout: float = 10.0,
    read_timeout: float = 60.0,
) -> urllib3.PoolManager:
    """Connection pool with bounded timeouts and exponential backoff on 5xx."""
    retries = Retry(
        total=total,
        connect=total,
        read=total,
        backoff_factor=backoff,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=RETRYABLE_METHODS,
        raise_on_status=False,
    )
    return urllib3.PoolManager(
        timeout=urllib3.Timeout(connect=connect_timeout, read=read_timeout),
        retries=retries,
    )


def split_endpoint(endpoint: str, secure: bool | None = None) -> tuple[str, bool]:
    """Split an endpoint into ``host[:port]`` and a TLS flag.

    Accepts both ``http://localhost:9000`` and bare ``localhost:9000`` forms;
    an explicit scheme wins over ``secure``.
    """
    if "://" in endpoint:
        parts = urlsplit(endpoint)
        if not parts.netloc:
            raise ValidationError(f"Invalid endpoint: {endpoint!r}")
        return parts.netloc, parts.scheme == "https"
    return endpoint.rstrip("/"), True if secure is None else secure


def _status_of(error: MinioException) -> int:
    """HTTP status behind an SDK error, 0 when the server's answer is unknown."""
    if isinstance(error, S3Error):
        response = error.response
        return getattr(response, "status", 0) if response is not None else 0
    if isinstance(error, InvalidResponseError):
        return error._code or 0
    if isinstance(error, ServerError):
        return error.status_code
    return 0


class S3CompatibleClient(ObjectStoreClient):
    """Object store client for AWS S3 and S3-compatible services (MinIO, LocalStack)."""

    capabilities = frozenset(Capability)

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        secure: bool | None = None,
        region: str | None = None,
        path_style_access: bool = False,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        max_retries: int = 3,
    ):
        """Initialize the client.

        No network call is made here; use ``head_bucket`` or ``ensure_bucket``
        to check reachability.

        Args:
            endpoint: Service endpoint, with or without scheme
            access_key: Access key (user ID)
            secret_key: Secret key (password)
            bucket: Bucket holding this driver's objects
            secure: Use HTTPS when the endpoint has no scheme
            region: Optional region name
            path_style_access: Address buckets as ``host/bucket`` instead of
                ``bucket.host`` (needed where bucket DNS names don't resolve)
            connect_timeout: Connection timeout in seconds
            read_timeout: Read timeout in seconds
            max_retries: Attempts for transient failures
        """
        host, use_tls = split_endpoint(endpoint, secure)
        self._bucket = bucket
        self._endpoint = host
        self._path_style_access = path_style_access

        self._client = Minio(
            endpoint=host,
            access_key=access_key,
            secret_key=secret_key,
            secure=use_tls,
            region=region,
            http_client=_http_client_with_retries(
                total=max_retries, connect_timeout=connect_timeout, read_timeout=read_timeout
            ),
        )
        if path_style_access:
            self._client.disable_virtual_style_endpoint()
        else:
            self._client.enable_virtual_style_endpoint()

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def path_style_access(self) -> bool:
        return self._path_style_access

    def _translate(self, error: Exception, action: str, key: str | None = None) -> Exception:
        """Map an SDK or transport error onto the storage error taxonomy.

        Not-found codes become ``NotFoundError``. Server answers with a 5xx
        status and transport failures become ``BackendUnavailableError``.
        Remaining SDK errors are permanent.
        """
        target = f"{key} in {self._bucket}" if key else self._bucket
        if isinstance(error, S3Error) and error.code in NOT_FOUND_CODES:
            return NotFoundError(f"Not found while trying to {action} {target}: {error.code}")
        if isinstance(error, MinioException) and _status_of(error) < 500:
            return StorageBackendError(f"Failed to {action} {target}: {error}")
        return BackendUnavailableError(
            f"Backend {self._endpoint} unavailable while trying to {action} {target}: {error}"
        )

    def put(self, key: str, data: bytes | BinaryIO, content_type: str | None = None) -> str:
        if isinstance(data, bytes):
            stream = BytesIO(data)
            length = len(data)
        else:
            start_pos = data.tell()
            data.seek(0, 2)
            length = data.tell() - start_pos
            data.seek(start_pos)
            stream = data

        try:
            result = self._client.put_object(
                bucket_name=self._bucket,
                object_name=key,
                data=stream,
                length=length,
                content_type=content_type or "application/octet-stream",
            )
        except (MinioException, TransportError) as e:
            raise self._translate(e, "store", key) from e

        logger.info(f"Stored object: {key} in {self._bucket} (etag: {result.etag})")
        return result.etag

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(bucket_name=self._bucket, object_name=key)
        except (MinioException, TransportError) as e:
            raise self._translate(e, "retrieve", key) from e
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete(self, key: str) -> None:
        try:
            self._client.remove_object(bucket_name=self._bucket, object_name=key)
        except (MinioException, TransportError) as e:
            raise self._translate(e, "delete", key) from e
        logger.info(f"Deleted object: {key} from {self._bucket}")

    def head(self, key: str) -> ObjectHead:
        try:
            stat = self._client.stat_object(bucket_name=self._bucket, object_name=key)
        except (MinioException, TransportError) as e:
            raise self._translate(e, "stat", key) from e

        return ObjectHead(
            key=key,
            size=stat.size,
            etag=stat.etag,
            content_type=stat.content_type,
            last_modified=stat.last_modified,
        )

    def head_bucket(self) -> None:
        try:
            found = self._client.bucket_exists(bucket_name=self._bucket)
        except (MinioException, TransportError) as e:
            raise self._translate(e, "check bucket") from e
        if not found:
            raise NotFoundError(f"Bucket not found: {self._bucket}")

    def ensure_bucket(self, region: str | None = None) -> None:
        """Create the bucket if ``head_bucket`` reports it missing."""
        try:
            self.head_bucket()
            logger.info(f"Using existing bucket: {self._bucket}")
        except NotFoundError:
            try:
                self._client.make_bucket(bucket_name=self._bucket, location=region)
            except (MinioException, TransportError) as e:
                raise self._translate(e, "create bucket") from e
            logger.info(f"Created bucket: {self._bucket}")

    def create_multipart_upload(self, key: str, content_type: str | None = None) -> str:
        headers = {
            "Content-Type": content_type or "application/octet-stream",
            TEMPORARY_TAG_HEADER: TEMPORARY_TAGGING,
        }
        try:
            upload_id = self._client._create_multipart_upload(
                bucket_name=self._bucket, object_name=key, headers=headers
            )
        except (MinioException, TransportError) as e:
            raise self._translate(e, "start multipart upload for", key) from e

        logger.info(f"Started multipart upload {upload_id} for {key}")
        return upload_id

    def generate_presigned_put_url(
        self,
        key: str,
        expiry: timedelta,
        upload_id: str | None = None,
        part_number: int | None = None,
    ) -> str:
        """Sign a PUT URL locally; no request reaches the backend."""
        if expiry <= timedelta(0) or expiry > MAX_PRESIGN_EXPIRY:
            raise ValidationError(f"Presigned URL expiry must be within (0, 7 days]: {expiry}")
        if (upload_id is None) != (part_number is None):
            raise ValidationError("upload_id and part_number must be given together")

        if upload_id is None:
            params = {TEMPORARY_TAG_HEADER: TEMPORARY_TAGGING}
        else:
            params = {"uploadId": upload_id, "partNumber": str(part_number)}
        try:
            return self._client.get_presigned_url(
                method="PUT",
                bucket_name=self._bucket,
                object_name=key,
                expires=expiry,
                extra_query_params=params,
            )
        except (MinioException, TransportError) as e:
            raise self._translate(e, "presign upload for", key) from e

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[CompletedPart]
    ) -> str:
        ordered = [Part(p.part_number, p.etag) for p in sorted(parts, key=lambda p: p.part_number)]
        try:
            result = self._client._complete_multipart_upload(
                bucket_name=self._bucket, object_name=key, upload_id=upload_id, parts=ordered
            )
        except (MinioException, TransportError) as e:
            raise self._translate(e, "complete multipart upload for", key) from e

        logger.info(f"Completed multipart upload {upload_id} for {key} ({len(parts)} parts)")
        return result.etag

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            self._client._abort_multipart_upload(
                bucket_name=self._bucket, object_name=key, upload_id=upload_id
            )
        except (MinioException, TransportError) as e:
            raise self._translate(e, "abort multipart upload for", key) from e
        logger.info(f"Aborted multipart upload {upload_id} for {key}")

    def mark_committed(self, key: str) -> None:
        try:
            self._client.delete_object_tags(bucket_name=self._bucket, object_name=key)
        except (MinioException, TransportError) as e:
            raise self._translate(e, "clear upload tag of", key) from e
        logger.debug(f"Cleared temporary tag of {key} in {self._bucket}")
