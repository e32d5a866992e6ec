"""
S3 object store client

Mints presigned upload/download URLs and deletes objects. File bytes never
pass through this process; clients PUT/GET against the signed URLs.

Signing is local to botocore and makes no network call.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    ParamValidationError,
    ReadTimeoutError,
)

from app.core.config import StorageConfig, settings
from app.core.errors import UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class PresignedUpload:
    upload_url: str
    public_url: str
    expires_at: datetime


@dataclass
class PresignedDownload:
    download_url: str
    expires_at: datetime


class ObjectStoreError(UpstreamError):
    """Raised when an object store call fails or cannot be signed."""
    pass


class ObjectStoreTimeout(ObjectStoreError, UpstreamTimeout):
    """Raised when an object store call exceeds its connect/read timeout."""
    pass


class ObjectNotFound(ObjectStoreError):
    """Raised when the addressed object does not exist."""
    pass


class ObjectStore:
    """
    Presigned URL issuer and thin S3 wrapper.

    Usage:
        store = ObjectStore(StorageConfig.from_settings(settings))
        upload = store.issue_upload("audio_recordings/v1/a.wav", "audio/wav")
        print(upload.upload_url, upload.expires_at)
    """

    def __init__(self, config: StorageConfig, client: Any | None = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> Any:
        """Get or create the boto3 S3 client (lazy initialization)."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.config.region,
                endpoint_url=self.config.custom_endpoint if self.config.use_custom_endpoint else None,
                aws_access_key_id=self.config.access_key_id,
                aws_secret_access_key=self.config.secret_access_key,
                config=Config(
                    signature_version="s3v4",
                    connect_timeout=self.config.connect_timeout,
                    read_timeout=self.config.read_timeout,
                    retries={"max_attempts": self.config.max_attempts, "mode": "standard"},
                ),
            )
        return self._client

    def public_url(self, key: str) -> str:
        return f"{self.config.base_url}/{quote(key)}"

    def issue_upload(self, key: str, content_type: str, ttl: int | None = None) -> PresignedUpload:
        """
        Presign a PUT for the given key.

        The object is written with a private ACL; the public URL is only the
        addressable location, not a readable link.

        Raises:
            ObjectStoreError: If the URL cannot be signed
        """
        expires_in = ttl if ttl is not None else self.config.upload_url_ttl
        params = {
            "Bucket": self.config.bucket_name,
            "Key": key,
            "ContentType": content_type,
            "ACL": "private",
        }
        upload_url = self._sign("put_object", params, expires_in)
        logger.info(f"Generated presigned upload URL for key: {key}")

        return PresignedUpload(
            upload_url=upload_url,
            public_url=self.public_url(key),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    def issue_download(self, key: str, ttl: int | None = None) -> PresignedDownload:
        """
        Presign a GET for the given key. Existence is not checked.

        Raises:
            ObjectStoreError: If the URL cannot be signed
        """
        expires_in = ttl if ttl is not None else self.config.download_url_ttl
        params = {"Bucket": self.config.bucket_name, "Key": key}
        download_url = self._sign("get_object", params, expires_in)
        logger.info(f"Generated download URL for key: {key}")

        return PresignedDownload(
            download_url=download_url,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    def delete_object(self, key: str) -> None:
        """
        Delete an object.

        Raises:
            ObjectNotFound: If S3 reports the key as absent
            ObjectStoreError: If the call fails
            ObjectStoreTimeout: If the call times out
        """
        self._call("delete_object", Bucket=self.config.bucket_name, Key=key)
        logger.info(f"Deleted object from S3: {key}")

    def _sign(self, operation: str, params: dict, expires_in: int) -> str:
        try:
            return self.client.generate_presigned_url(
                ClientMethod=operation,
                Params=params,
                ExpiresIn=expires_in,
            )
        except (NoCredentialsError, ParamValidationError, BotoCoreError, ClientError) as e:
            logger.error(f"Error signing {operation} for key {params.get('Key')}: {e}")
            raise ObjectStoreError(f"Failed to sign {operation} URL: {e}") from e

    def _call(self, operation: str, **kwargs) -> dict:
        key = kwargs.get("Key")
        try:
            return getattr(self.client, operation)(**kwargs)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object not found: {key}") from e
            logger.error(f"S3 {operation} error for key {key}: {e}")
            raise ObjectStoreError(f"S3 {operation} failed with {code or 'unknown error'}") from e
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            logger.error(f"S3 {operation} timed out for key {key}: {e}")
            raise ObjectStoreTimeout(f"S3 {operation} timed out") from e
        except BotoCoreError as e:
            logger.error(f"S3 {operation} request error for key {key}: {e}")
            raise ObjectStoreError(f"Failed to reach S3: {e}") from e


# Singleton instance for reuse
_default_store: ObjectStore | None = None


def get_object_store() -> ObjectStore:
    """Get the default object store instance."""
    global _default_store
    if _default_store is None:
        _default_store = ObjectStore(StorageConfig.from_settings(settings))
    return _default_store
