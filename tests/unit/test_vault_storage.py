"""
Unit tests for S3-compatible vault storage.

The boto3 client is replaced with a MagicMock; only the calls and the error
mapping are checked.
"""

from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from pdf_api.config import ApiSettings
from pdf_api.errors import ApiError, ErrorCode
from pdf_api.storage import VaultStorage, get_vault_storage


def client_error(code, operation="PutObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://vault.example.com/signed"
    return client


@pytest.fixture
def storage(s3_client):
    return VaultStorage(
        bucket="pdfs",
        access_key_id="AKIA",
        secret_access_key="secret",
        key_prefix="tenant-pdfs/",
        client=s3_client,
    )


class TestUpload:
    """Tests for VaultStorage.upload."""

    def test_puts_object_and_signs_url(self, storage, s3_client):
        stored = storage.upload(b"%PDF-1.4", "report.pdf", {"request-id": "req-1"})

        kwargs = s3_client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "pdfs"
        assert kwargs["Key"] == "tenant-pdfs/report.pdf"
        assert kwargs["ContentType"] == "application/pdf"
        assert kwargs["Metadata"]["request-id"] == "req-1"
        assert kwargs["Metadata"]["uploaded-by"] == "pdf-conversion-api"

        assert stored.key == "tenant-pdfs/report.pdf"
        assert stored.size == 8
        assert stored.url == "https://vault.example.com/signed"
        assert stored.to_dict()["provider"] == "s3"

    def test_upload_failure_maps_to_storage_error(self, storage, s3_client):
        s3_client.put_object.side_effect = client_error("AccessDenied")
        with pytest.raises(ApiError) as exc:
            storage.upload(b"%PDF", "report.pdf")
        assert exc.value.code == ErrorCode.STORAGE_UPLOAD_FAILED
        assert exc.value.status_code == 502


class TestSignedUrl:
    """Tests for VaultStorage.signed_url."""

    def test_caps_expiry_at_seven_days(self, storage, s3_client):
        storage.signed_url("k", expires_days=30)
        assert s3_client.generate_presigned_url.call_args.kwargs["ExpiresIn"] == 7 * 24 * 3600

    def test_uses_requested_days(self, storage, s3_client):
        storage.signed_url("k", expires_days=1)
        kwargs = s3_client.generate_presigned_url.call_args.kwargs
        assert kwargs["ExpiresIn"] == 24 * 3600
        assert kwargs["Params"] == {"Bucket": "pdfs", "Key": "k"}


class TestDownloadDelete:
    """Tests for download, delete and connection checks."""

    def test_download_returns_body(self, storage, s3_client):
        s3_client.get_object.return_value = {"Body": BytesIO(b"%PDF-data")}
        assert storage.download("k") == b"%PDF-data"

    def test_missing_object_is_not_found(self, storage, s3_client):
        s3_client.get_object.side_effect = client_error("NoSuchKey", "GetObject")
        with pytest.raises(ApiError) as exc:
            storage.download("k")
        assert exc.value.code == ErrorCode.NOT_FOUND

    def test_delete(self, storage, s3_client):
        storage.delete("k")
        s3_client.delete_object.assert_called_once_with(Bucket="pdfs", Key="k")

    def test_connection_check(self, storage, s3_client):
        assert storage.test_connection()
        s3_client.head_bucket.side_effect = client_error("403", "HeadBucket")
        assert not storage.test_connection()


class TestGetVaultStorage:
    """Tests for building the client from settings."""

    def test_none_when_not_configured(self):
        assert get_vault_storage(ApiSettings()) is None

    @patch("pdf_api.storage.boto3.client")
    def test_builds_client_from_settings(self, mock_client):
        settings = ApiSettings(
            vault_bucket="pdfs",
            vault_access_key_id="AKIA",
            vault_secret_access_key="secret",
            vault_endpoint_url="https://account.r2.cloudflarestorage.com",
            vault_key_prefix="/docs",
        )
        storage = get_vault_storage(settings)

        assert storage.bucket == "pdfs"
        assert storage.key_prefix == "docs/"
        kwargs = mock_client.call_args.kwargs
        assert kwargs["endpoint_url"] == "https://account.r2.cloudflarestorage.com"
        assert kwargs["region_name"] == "auto"
