"""Tests for the boundary operations and their response envelopes."""

from __future__ import annotations

import pytest

from dvstore.api import StorageApi, api_operation, status_code_for
from dvstore.core.errors import (
    BackendUnavailableError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StorageBackendError,
    StorageError,
    StoragePermissionError,
    UnsupportedOperationError,
    ValidationError,
)
from dvstore.core.storage.registry import MiB, StorageDriverRegistry

DATASET = "doi:10.5072/FK2/ABC123"


@pytest.fixture
def api(registry, tree, fake_s3):
    return StorageApi(registry, tree=tree)


class TestEnvelopes:
    """Test error-to-status mapping."""

    @pytest.mark.parametrize(
        "error,code",
        [
            (ValidationError("x"), 400),
            (ConfigurationError("x"), 400),
            (UnsupportedOperationError("x"), 400),
            (StoragePermissionError("x"), 403),
            (NotFoundError("x"), 404),
            (ConflictError("x"), 409),
            (StorageBackendError("x"), 502),
            (BackendUnavailableError("x"), 503),
            (StorageError("x"), 500),
        ],
    )
    def test_status_codes(self, error, code):
        assert status_code_for(error) == code

    def test_operation_wraps_errors(self):
        @api_operation
        def failing():
            raise NotFoundError("gone")

        assert failing() == {"status": "ERROR", "code": 404, "message": "gone"}

    def test_operation_lets_other_errors_through(self):
        @api_operation
        def broken():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            broken()


class TestDriverAdministration:
    """Test driver listing and binding operations."""

    def test_get_unset_binding(self, api):
        assert api.get_storage_driver("root") == {"status": "OK", "data": {"message": "undefined"}}

    def test_set_binding(self, api):
        result = api.set_storage_driver("root", "LocalStack", privileged=True)

        assert result == {
            "status": "OK",
            "data": {"message": "Storage set to: LocalStack/localstack1"},
        }
        assert api.get_storage_driver("root")["data"]["message"] == "localstack1"

    def test_set_binding_unknown_label(self, api):
        result = api.set_storage_driver("root", "Tape", privileged=True)

        assert result["status"] == "ERROR"
        assert result["code"] == 400

    def test_set_binding_unprivileged(self, api):
        result = api.set_storage_driver("root", "MinIO", privileged=False)

        assert result["code"] == 403
        assert api.get_storage_driver("root")["data"]["message"] == "undefined"

    def test_effective_driver(self, api):
        api.set_storage_driver("root", "MinIO", privileged=True)

        assert api.get_effective_storage_driver(DATASET)["data"] == {
            "name": "minio1",
            "label": "MinIO",
        }

    def test_reset_binding(self, api):
        api.set_storage_driver("root", "MinIO", privileged=True)

        api.reset_storage_driver("root", privileged=True)

        assert api.get_storage_driver("root")["data"]["message"] == "undefined"
        assert api.get_effective_storage_driver(DATASET)["data"]["name"] == "local"

    def test_unknown_collection(self, api):
        assert api.get_storage_driver("missing")["code"] == 404


class TestUploadOperations:
    """Test upload URL and multipart operations."""

    def test_upload_urls_need_size(self, api):
        api.set_storage_driver("root", "MinIO", privileged=True)

        result = api.get_upload_urls(DATASET, None)

        assert result["status"] == "ERROR"
        assert result["code"] == 400

    def test_upload_urls_for_local_driver(self, api):
        result = api.get_upload_urls(DATASET, 10)

        assert result["code"] == 400
        assert "direct upload" in result["message"]

    def test_multipart_round_trip(self, driver_configuration, settings, tree, fake_s3):
        """Test issuing, uploading, completing and registering a multipart file."""
        driver_configuration["minio1"].update(
            {"multipart_threshold": 10 * MiB, "min_part_size": 5 * MiB}
        )
        api = StorageApi(StorageDriverRegistry(driver_configuration, settings=settings), tree=tree)
        api.set_storage_driver("root", "MinIO", privileged=True)

        upload = api.get_upload_urls(DATASET, 11 * MiB)["data"]
        server = fake_s3["minio:9000"]
        part_size = upload["partSize"]
        content = b"x" * (11 * MiB)
        etags = {
            n: server.receive_put(url, content[(int(n) - 1) * part_size : int(n) * part_size])
            for n, url in upload["urls"].items()
        }

        completed = api.complete_multipart_upload(
            upload["storageIdentifier"], upload["uploadId"], etags
        )
        added = api.add_remote_file(DATASET, {"storageIdentifier": upload["storageIdentifier"]})

        assert completed["status"] == "OK"
        assert added["status"] == "OK"
        assert added["data"]["files"][0]["fileSize"] == 11 * MiB

    def test_complete_with_bad_part_numbers(self, api):
        result = api.complete_multipart_upload("minio1://mybucket:k", "u", {"one": "etag"})

        assert result["code"] == 400

    def test_abort_unknown_upload(self, api):
        result = api.abort_multipart_upload("minio1://mybucket:k", "u")

        assert result["code"] == 404


class TestFileOperations:
    """Test file listing and deletion."""

    def test_list_and_delete(self, api):
        api.set_storage_driver("root", "Filesystem", privileged=True)
        added = api.add_file(DATASET, b"data", file_name="data.bin")
        file_id = added["data"]["files"][0]["id"]

        listed = api.list_files(DATASET)["data"]
        assert [f["id"] for f in listed] == [file_id]
        assert listed[0]["fileName"] == "data.bin"
        assert listed[0]["storageIdentifier"].startswith("file1:10.5072/FK2/ABC123/data.bin-")

        assert api.delete_file(file_id)["data"]["message"] == f"File {file_id} deleted"
        assert api.delete_file(file_id)["data"]["message"] == (
            f"File {file_id} was already deleted"
        )
        assert api.list_files(DATASET)["data"] == []
