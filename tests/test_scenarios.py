"""End-to-end storage driver scenarios against in-memory S3 servers."""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest

from dvstore.api import StorageApi
from dvstore.client import DirectUploadClient
from dvstore.core.errors import NotFoundError
from dvstore.core.storage.bindings import DvObjectTree
from dvstore.core.storage.identifiers import decode


@pytest.fixture
def api(registry, fake_s3):
    return StorageApi(registry, tree=DvObjectTree())


def _put_to_fake(fake_s3):
    """Route DirectUploadClient PUTs to the fake server that signed the URL."""

    def put(url, data, headers, timeout):
        endpoint = url.split("/")[2]
        etag = fake_s3[endpoint].receive_put(url, data)
        response = Mock(ok=True, status_code=200, headers={"ETag": f'"{etag}"'})
        return response

    return put


class TestStorageDriverScenarios:
    """Collections bound to different drivers, files uploaded both ways."""

    def test_drivers_listed_for_superusers(self, api):
        drivers = api.list_storage_drivers(privileged=True)

        assert drivers["status"] == "OK"
        assert drivers["data"]["Local"] == "local"
        assert drivers["data"]["Filesystem"] == "file1"
        assert drivers["data"]["MinIO"] == "minio1"
        assert drivers["data"]["LocalStack"] == "localstack1"

        denied = api.list_storage_drivers(privileged=False)
        assert denied["status"] == "ERROR"
        assert denied["code"] == 403

    def test_upload_through_application_to_minio(self, api, fake_s3):
        """Bind MinIO, ingest a 1-byte file, delete it, then it's gone."""
        collection = api.tree.add_collection("dv-minio")
        assert api.get_storage_driver(collection)["data"]["message"] == "undefined"

        set_result = api.set_storage_driver(collection, "MinIO", privileged=True)
        assert set_result["status"] == "OK"
        assert api.get_storage_driver(collection)["data"]["message"] == "minio1"

        dataset = api.tree.add_dataset("doi:10.5072/FK2/MINIO1", collection)
        added = api.add_file(dataset, b"a", file_name="a.txt", mime_type="text/plain")
        assert added["status"] == "OK"
        file_json = added["data"]["files"][0]

        identifier = decode(file_json["storageIdentifier"])
        assert file_json["storageIdentifier"].startswith("minio1://mybucket:10.5072/FK2/MINIO1/")
        client = api.registry.get_client("minio1")
        assert client.get(identifier.key) == b"a"

        deleted = api.delete_file(file_json["id"])
        assert deleted["status"] == "OK"
        with pytest.raises(NotFoundError):
            client.get(identifier.key)

        again = api.delete_file(file_json["id"])
        assert again["status"] == "OK"

    def test_direct_upload_to_localstack(self, api, fake_s3):
        """Bind LocalStack, request a URL for ~1 GB, upload, register, delete."""
        collection = api.tree.add_collection("dv-localstack")
        api.set_storage_driver(collection, "LocalStack", privileged=True)
        assert api.get_storage_driver(collection)["data"]["message"] == "localstack1"
        dataset = api.tree.add_dataset("doi:10.5072/FK2/LS0001", collection)

        urls = api.get_upload_urls(dataset, 1_000_000_000)
        assert urls["status"] == "OK"
        upload = urls["data"]
        assert set(upload) == {"url", "partSize", "storageIdentifier"}
        storage_identifier = upload["storageIdentifier"]
        assert storage_identifier.startswith("localstack1://mybucket:10.5072/FK2/LS0001/")

        uploader = DirectUploadClient()
        with patch.object(uploader.session, "put", side_effect=_put_to_fake(fake_s3)):
            result = uploader.upload(upload, b"foobar")
        assert result.etags[1]
        key = decode(storage_identifier).key
        server = fake_s3["localstack:4566"]
        assert server.tags[("mybucket", key)] == "dv-state=temp"

        body = {
            "description": "My description.",
            "directoryLabel": "data/subdir1",
            "categories": ["Data"],
            "restrict": "false",
            "storageIdentifier": storage_identifier,
            "fileName": "file1.txt",
            "mimeType": "text/plain",
            "checksum": {"@type": "SHA-1", "@value": "123456"},
        }
        added = api.add_remote_file(dataset, body)
        assert added["status"] == "OK"
        file_json = added["data"]["files"][0]
        assert file_json["storageIdentifier"] == storage_identifier
        assert file_json["checksum"] == {"type": "SHA-1", "value": "123456"}
        assert file_json["fileSize"] == 6
        assert ("mybucket", key) not in server.tags

        client = api.registry.get_client("localstack1")
        assert client.get(key) == b"foobar"

        api.delete_file(file_json["id"])
        with pytest.raises(NotFoundError):
            client.get(key)

    def test_register_without_size_fails(self, api, fake_s3):
        collection = api.tree.add_collection("dv")
        api.set_storage_driver(collection, "LocalStack", privileged=True)
        dataset = api.tree.add_dataset("doi:10.5072/FK2/NOSIZE", collection)
        upload = api.get_upload_urls(dataset, 6)["data"]
        api.uploads.release(upload["storageIdentifier"])

        result = api.add_remote_file(dataset, {"storageIdentifier": upload["storageIdentifier"]})

        assert result["status"] == "ERROR"
        assert result["code"] == 400
        assert api.list_files(dataset)["data"] == []

    def test_register_with_other_driver_fails(self, api, fake_s3):
        collection = api.tree.add_collection("dv")
        api.set_storage_driver(collection, "LocalStack", privileged=True)
        dataset = api.tree.add_dataset("doi:10.5072/FK2/OTHER1", collection)

        result = api.add_remote_file(
            dataset,
            {"storageIdentifier": "minio1://mybucket:10.5072/FK2/OTHER1/x", "fileSize": 6},
        )

        assert result["status"] == "ERROR"
        assert result["code"] == 409
