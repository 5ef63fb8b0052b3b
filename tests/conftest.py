from __future__ import annotations

import hashlib
import itertools
from datetime import UTC, datetime
from io import BytesIO
from types import SimpleNamespace
from unittest.mock import Mock, patch
from urllib.parse import parse_qs, quote, unquote, urlsplit

import pytest
from minio.error import S3Error

from dvstore.core.storage.bindings import DriverBindings, DvObjectTree
from dvstore.core.storage.registry import StorageDriverRegistry
from dvstore.core.utils.config import InMemoryConfigProvider


def s3_error(code: str, status: int | None = None) -> S3Error:
    return S3Error(
        code=code,
        message=f"{code} raised by test",
        resource="/",
        request_id="",
        host_id="",
        response=Mock(status=status) if status is not None else None,
    )


class FakeMinio:
    """In-memory stand-in for ``minio.Minio`` covering the calls the S3 client makes.

    Presigned URLs are path-style and can be "uploaded to" with ``receive_put``.
    """

    def __init__(self, endpoint: str, **kwargs):
        self.endpoint = endpoint
        self.kwargs = kwargs
        self.virtual_style = True
        self.buckets: dict[str, dict[str, tuple[bytes, str, str]]] = {}
        self.uploads: dict[str, dict] = {}
        self.tags: dict[tuple[str, str], str] = {}
        self._ids = itertools.count(1)

    def disable_virtual_style_endpoint(self):
        self.virtual_style = False

    def enable_virtual_style_endpoint(self):
        self.virtual_style = True

    def _bucket(self, bucket_name):
        if bucket_name not in self.buckets:
            raise s3_error("NoSuchBucket")
        return self.buckets[bucket_name]

    def _store(self, bucket_name, object_name, content: bytes, content_type: str) -> str:
        etag = hashlib.md5(content).hexdigest()
        self._bucket(bucket_name)[object_name] = (content, content_type, etag)
        return etag

    def bucket_exists(self, bucket_name):
        return bucket_name in self.buckets

    def make_bucket(self, bucket_name, location=None):
        self.buckets.setdefault(bucket_name, {})

    def put_object(self, bucket_name, object_name, data, length, content_type=None):
        etag = self._store(bucket_name, object_name, data.read(length), content_type)
        return SimpleNamespace(etag=etag, object_name=object_name)

    def get_object(self, bucket_name, object_name):
        objects = self._bucket(bucket_name)
        if object_name not in objects:
            raise s3_error("NoSuchKey")
        response = Mock()
        response.read.return_value = objects[object_name][0]
        return response

    def remove_object(self, bucket_name, object_name):
        # S3 reports success for absent keys
        self._bucket(bucket_name).pop(object_name, None)
        self.tags.pop((bucket_name, object_name), None)

    def stat_object(self, bucket_name, object_name):
        objects = self._bucket(bucket_name)
        if object_name not in objects:
            raise s3_error("NoSuchKey")
        content, content_type, etag = objects[object_name]
        return SimpleNamespace(
            size=len(content),
            etag=etag,
            content_type=content_type,
            last_modified=datetime(2024, 1, 15, tzinfo=UTC),
        )

    def _create_multipart_upload(self, bucket_name, object_name, headers):
        self._bucket(bucket_name)
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {
            "bucket": bucket_name,
            "key": object_name,
            "parts": {},
            "content_type": headers.get("Content-Type"),
            "tagging": headers.get("x-amz-tagging"),
        }
        return upload_id

    def get_presigned_url(self, method, bucket_name, object_name, expires, extra_query_params=None):
        assert method == "PUT"
        query = f"X-Amz-Expires={int(expires.total_seconds())}&X-Amz-Signature=fake"
        for name, value in (extra_query_params or {}).items():
            query += f"&{name}={quote(value, safe='')}"
        return f"http://{self.endpoint}/{bucket_name}/{quote(object_name)}?{query}"

    def _complete_multipart_upload(self, bucket_name, object_name, upload_id, parts):
        upload = self.uploads.get(upload_id)
        if upload is None:
            raise s3_error("NoSuchUpload")
        content = b""
        for part in parts:
            data, etag = upload["parts"][part.part_number]
            assert etag == part.etag
            content += data
        etag = self._store(bucket_name, object_name, content, upload["content_type"])
        if upload["tagging"]:
            self.tags[(bucket_name, object_name)] = upload["tagging"]
        del self.uploads[upload_id]
        return SimpleNamespace(etag=etag)

    def _abort_multipart_upload(self, bucket_name, object_name, upload_id):
        if self.uploads.pop(upload_id, None) is None:
            raise s3_error("NoSuchUpload")

    def delete_object_tags(self, bucket_name, object_name):
        if object_name not in self._bucket(bucket_name):
            raise s3_error("NoSuchKey", status=404)
        self.tags.pop((bucket_name, object_name), None)

    def receive_put(self, url: str, data: bytes) -> str:
        """Accept bytes PUT to a presigned URL and return the ETag."""
        parts = urlsplit(url)
        bucket_name, _, object_name = parts.path.lstrip("/").partition("/")
        object_name = unquote(object_name)
        query = parse_qs(parts.query)
        if "uploadId" in query:
            upload = self.uploads[query["uploadId"][0]]
            etag = hashlib.md5(data).hexdigest()
            upload["parts"][int(query["partNumber"][0])] = (data, etag)
            return etag
        if "x-amz-tagging" in query:
            self.tags[(bucket_name, object_name)] = query["x-amz-tagging"][0]
        return self._store(bucket_name, object_name, data, "application/octet-stream")

    def content(self, bucket_name: str, object_name: str) -> bytes:
        return self.buckets[bucket_name][object_name][0]


@pytest.fixture
def fake_s3():
    """Patch the MinIO SDK with in-memory servers, one per endpoint.

    Yields a dict of endpoint (host[:port]) -> FakeMinio. Each server starts
    with an empty ``mybucket``.
    """

    class _Servers(dict):
        # Tests may index a server before any S3 client has been built.
        def __missing__(self, endpoint):
            server = FakeMinio(endpoint)
            server.make_bucket("mybucket")
            self[endpoint] = server
            return server

    servers: dict[str, FakeMinio] = _Servers()

    def factory(endpoint, **kwargs):
        if endpoint not in servers:
            server = FakeMinio(endpoint, **kwargs)
            server.make_bucket("mybucket")
            servers[endpoint] = server
        return servers[endpoint]

    with patch("dvstore.core.storage.backends.s3_backend.Minio", side_effect=factory):
        yield servers


@pytest.fixture
def driver_configuration(tmp_path):
    """Driver configuration mirroring configs/storage_drivers.py."""
    return {
        "_s3": {
            "type": "s3",
            "bucket": "mybucket",
            "region": "us-east-1",
            "access_key": "minioadmin",
            "secret_key": "minioadmin",
        },
        "file1": {
            "type": "filesystem",
            "label": "Filesystem",
            "directory": str(tmp_path / "file1"),
        },
        "minio1": {
            "__inherits__": "_s3",
            "label": "MinIO",
            "endpoint": "http://minio:9000",
            "path_style_access": True,
        },
        "localstack1": {
            "__inherits__": "_s3",
            "label": "LocalStack",
            "endpoint": "http://localstack:4566",
            "path_style_access": True,
        },
    }


@pytest.fixture
def settings(tmp_path):
    return InMemoryConfigProvider({"files_directory": str(tmp_path / "local")})


@pytest.fixture
def registry(driver_configuration, settings):
    return StorageDriverRegistry(driver_configuration, settings=settings)


@pytest.fixture
def tree():
    """Collection hierarchy root > child with one dataset in child."""
    tree = DvObjectTree()
    tree.add_collection("root")
    tree.add_collection("child", parent="root")
    tree.add_dataset("doi:10.5072/FK2/ABC123", "child")
    return tree


@pytest.fixture
def bindings(registry, tree):
    return DriverBindings(registry, tree)


class FakeClock:
    """Settable clock for session expiry tests."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_payload():
    """Body of a remote file registration, as sent by an uploading client."""
    return {
        "description": "My description.",
        "directoryLabel": "data/subdir1",
        "categories": ["Data"],
        "restrict": "false",
        "fileName": "file1.txt",
        "mimeType": "text/plain",
        "checksum": {"@type": "SHA-1", "@value": "123456"},
    }


@pytest.fixture
def binary_stream():
    return BytesIO(b"streamed file contents")
