"""
Vault Storage

S3-compatible object storage for PDFs that callers ask to keep
(save_to_vault). Works against AWS S3 and Cloudflare R2 through boto3.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import ApiSettings
from .errors import ApiError, ErrorCode

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class StoredObject:
    """Where a PDF landed in the vault."""
    key: str
    bucket: str
    size: int
    url: Optional[str] = None
    url_expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": "s3",
            "key": self.key,
            "bucket": self.bucket,
            "size": self.size,
            "url": self.url,
            "urlExpiresAt": self.url_expires_at,
        }


class VaultStorage:
    """Thin boto3 wrapper with the error mapping the API needs."""

    def __init__(
        self,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: Optional[str] = None,
        region: str = "auto",
        key_prefix: str = "pdfs/",
        signed_url_ttl_days: int = 7,
        client=None,
    ):
        self.bucket = bucket
        self.key_prefix = key_prefix
        self.signed_url_ttl_days = signed_url_ttl_days
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )

    def object_key(self, file_name: str) -> str:
        return f"{self.key_prefix}{file_name}"

    def upload(self, pdf_bytes: bytes, file_name: str, metadata: Optional[Dict[str, str]] = None) -> StoredObject:
        """
        Store a PDF and return its location with a pre-signed download URL.

        Raises:
            ApiError: STORAGE_UPLOAD_FAILED
        """
        key = self.object_key(file_name)
        now = datetime.now(timezone.utc)
        object_metadata = {
            "uploaded-by": "pdf-conversion-api",
            "upload-timestamp": now.isoformat(),
        }
        if metadata:
            object_metadata.update({k: str(v) for k, v in metadata.items()})

        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=pdf_bytes,
                ContentType="application/pdf",
                Metadata=object_metadata,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Vault upload failed for {key}: {e}")
            raise ApiError(
                ErrorCode.STORAGE_UPLOAD_FAILED,
                "Failed to store the PDF in the vault",
                details={"internal": str(e)},
            )

        url = self.signed_url(key)
        logger.info(f"Stored {len(pdf_bytes)} bytes at s3://{self.bucket}/{key}")
        return StoredObject(
            key=key,
            bucket=self.bucket,
            size=len(pdf_bytes),
            url=url,
            url_expires_at=self.url_expiry(now),
        )

    def url_expiry(self, issued_at: Optional[datetime] = None) -> datetime:
        issued_at = issued_at or datetime.now(timezone.utc)
        return issued_at + timedelta(days=self.signed_url_ttl_days)

    def signed_url(self, key: str, expires_days: Optional[int] = None) -> str:
        """Pre-signed GET URL (SigV4 caps the lifetime at 7 days)."""
        days = min(expires_days or self.signed_url_ttl_days, 7)
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=days * SECONDS_PER_DAY,
        )

    def download(self, key: str) -> bytes:
        """
        Raises:
            ApiError: NOT_FOUND when the object is gone, STORAGE_UPLOAD_FAILED otherwise
        """
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise ApiError(ErrorCode.NOT_FOUND, "Stored PDF not found")
            raise ApiError(
                ErrorCode.STORAGE_UPLOAD_FAILED,
                "Failed to read the PDF from the vault",
                details={"internal": str(e)},
            )

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
            logger.info(f"Deleted s3://{self.bucket}/{key}")
        except (ClientError, BotoCoreError) as e:
            raise ApiError(
                ErrorCode.STORAGE_UPLOAD_FAILED,
                "Failed to delete the PDF from the vault",
                details={"internal": str(e)},
            )

    def test_connection(self) -> bool:
        """True when the bucket is reachable with the configured credentials."""
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Vault connection test failed: {e}")
            return False


def get_vault_storage(settings: ApiSettings) -> Optional[VaultStorage]:
    """Build the vault client, or None when storage is not configured."""
    if not settings.vault_configured:
        return None
    return VaultStorage(
        bucket=settings.vault_bucket,
        access_key_id=settings.vault_access_key_id,
        secret_access_key=settings.vault_secret_access_key,
        endpoint_url=settings.vault_endpoint_url,
        region=settings.vault_region,
        key_prefix=settings.vault_key_prefix,
        signed_url_ttl_days=settings.vault_signed_url_ttl_days,
    )
