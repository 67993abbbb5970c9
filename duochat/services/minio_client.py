"""
MinIO client for chat media uploads.
Stores image and audio payloads and hands back the durable URL that
becomes the content of an image/audio message.
"""
import io
import logging
import os
from typing import Optional
from uuid import uuid4

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from duochat.core.config import settings
from duochat.core.errors import CollaboratorFailure

logger = logging.getLogger(__name__)

UPLOAD_PREFIX = "uploads"


class BlobStorage:
    """Upload-only view of the media bucket."""

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None):
        """Initialize MinIO client; the bucket is created on first upload."""
        self.bucket = bucket or settings.minio_bucket
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure
        )
        self._bucket_ready = False

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created MinIO bucket: {self.bucket}")
        self._bucket_ready = True

    def object_url(self, object_name: str) -> str:
        """Durable URL of a stored object."""
        if settings.minio_public_url:
            base = settings.minio_public_url.rstrip("/")
        else:
            scheme = "https" if settings.minio_secure else "http"
            base = f"{scheme}://{settings.minio_endpoint}"
        return f"{base}/{self.bucket}/{object_name}"

    def upload(self, data: bytes, content_type: str = "application/octet-stream", filename: str = "") -> str:
        """
        Store a payload under ``uploads/<uuid><ext>``.

        Args:
            data: Raw file content
            content_type: MIME type of the payload
            filename: Original client filename, only its extension is kept

        Returns:
            Durable URL of the stored object

        Raises:
            CollaboratorFailure: if MinIO rejects or cannot receive the upload
        """
        extension = os.path.splitext(filename or "")[1].lower()
        object_name = f"{UPLOAD_PREFIX}/{uuid4().hex}{extension}"

        try:
            self._ensure_bucket()
            self.client.put_object(
                self.bucket,
                object_name,
                io.BytesIO(data),
                len(data),
                content_type=content_type
            )
        except (S3Error, HTTPError) as e:
            logger.error(f"Failed to upload object {object_name}: {e}")
            raise CollaboratorFailure(f"Upload failed: {e}") from e

        logger.info(f"Uploaded object: {object_name} ({len(data)} bytes)")
        return self.object_url(object_name)


# Global blob storage instance (initialized on first use)
_blob_storage: Optional[BlobStorage] = None


def get_blob_storage() -> BlobStorage:
    """
    Get or create global BlobStorage instance.

    Returns:
        BlobStorage instance
    """
    global _blob_storage
    if _blob_storage is None:
        _blob_storage = BlobStorage()
    return _blob_storage
