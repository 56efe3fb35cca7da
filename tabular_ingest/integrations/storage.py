"""
Blob storage for the original uploaded files.

The orchestrator only needs ``upload(data, blob_name, content_type) -> url``.
:class:`S3BlobStore` works with any S3-compatible provider through boto3
(AWS S3, Backblaze B2, MinIO, Wasabi, ...) and returns a pre-signed download
URL; :class:`LocalBlobStore` writes under a directory for development.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, BotoCoreError

from tabular_ingest.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class BlobStore(ABC):
    @abstractmethod
    async def upload(self, data: bytes, blob_name: str, content_type: Optional[str] = None) -> str:
        """Store ``data`` under ``blob_name`` and return a URL for it."""


def get_storage_client(config: Settings = default_settings):
    """
    Get S3-compatible storage client.

    Returns:
        boto3 S3 client configured for the storage provider

    Raises:
        ValueError: If storage configuration is incomplete
        StorageConnectionError: If the client cannot be created
    """
    if not all([config.storage_access_key_id, config.storage_secret_access_key, config.storage_bucket_name]):
        raise ValueError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    boto_config = Config(
        signature_version='s3v4',
        retries={'max_attempts': config.storage_max_retries, 'mode': 'standard'}
    )

    client_kwargs = {
        'service_name': 's3',
        'aws_access_key_id': config.storage_access_key_id,
        'aws_secret_access_key': config.storage_secret_access_key,
        'config': boto_config,
    }

    # Add endpoint URL for non-AWS providers (B2, MinIO, etc.)
    if config.storage_endpoint_url:
        client_kwargs['endpoint_url'] = config.storage_endpoint_url

    if config.storage_region:
        client_kwargs['region_name'] = config.storage_region

    try:
        return boto3.client(**client_kwargs)
    except Exception as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}")


class S3BlobStore(BlobStore):
    def __init__(self, client=None, bucket: Optional[str] = None, folder: Optional[str] = None,
                 url_expiry_seconds: Optional[int] = None, config: Settings = default_settings):
        self._client = client
        self._config = config
        self.bucket = bucket or config.storage_bucket_name
        self.folder = (folder if folder is not None else config.storage_folder).strip("/")
        self.url_expiry_seconds = url_expiry_seconds or config.blob_url_expiry_seconds

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client(self._config)
        return self._client

    def _key(self, blob_name: str) -> str:
        return f"{self.folder}/{blob_name}" if self.folder else blob_name

    def _upload_sync(self, data: bytes, blob_name: str, content_type: Optional[str]) -> str:
        key = self._key(blob_name)
        put_kwargs = {'Bucket': self.bucket, 'Key': key, 'Body': data}
        if content_type:
            put_kwargs['ContentType'] = content_type

        try:
            self.client.put_object(**put_kwargs)
            return self.client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': key},
                ExpiresIn=self.url_expiry_seconds,
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"Storage upload failed: {error_code} - {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}")
        except BotoCoreError as e:
            logger.error(f"Unexpected error during upload: {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}")

    async def upload(self, data: bytes, blob_name: str, content_type: Optional[str] = None) -> str:
        return await asyncio.to_thread(self._upload_sync, data, blob_name, content_type)


class LocalBlobStore(BlobStore):
    """Writes blobs beneath a local directory and returns ``file://`` URLs."""

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)

    def _upload_sync(self, data: bytes, blob_name: str) -> str:
        target = (self.root / blob_name).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageUploadError(f"Blob name escapes storage root: {blob_name}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Local storage write failed for {blob_name}: {e}")
            raise StorageUploadError(f"Upload failed: {str(e)}")
        return target.as_uri()

    async def upload(self, data: bytes, blob_name: str, content_type: Optional[str] = None) -> str:
        return await asyncio.to_thread(self._upload_sync, data, blob_name)


def build_blob_store(config: Settings = default_settings) -> BlobStore:
    provider = (config.storage_provider or "").strip().lower()
    if provider == "local":
        return LocalBlobStore(os.path.abspath(config.local_storage_dir))
    return S3BlobStore(config=config)
