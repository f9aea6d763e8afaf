"""
Blob storage for uploaded and generated images.
Any S3-compatible object store works (AWS S3, Cloudflare R2, MinIO).
"""

import os
import uuid
import logging
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_MB = int(os.environ.get("MAX_FILE_SIZE_MB", "10"))
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/heic": "heic",
}

UPLOADED_FOLDER = "uploaded"
GENERATED_FOLDER = "generated"


class BlobStorageError(Exception):
    """The blob store rejected or failed a request."""


class UploadValidationError(ValueError):
    """An upload was rejected before anything was written."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def validate_upload(data: bytes, content_type: Optional[str]) -> None:
    """
    Check type and size of an upload.
    Raises: UploadValidationError (413 for oversize, 400 otherwise)
    """
    if not content_type or content_type.lower() not in ALLOWED_CONTENT_TYPES:
        raise UploadValidationError(
            "Invalid file type. Only JPEG, PNG, and HEIC files are allowed."
        )
    if len(data) == 0:
        raise UploadValidationError("Empty image file")
    if len(data) > MAX_FILE_SIZE_BYTES:
        raise UploadValidationError(
            f"File too large (max {MAX_FILE_SIZE_MB}MB)", status_code=413
        )


def make_blob_path(folder: str, user_id: str, content_type: str) -> str:
    """Logical object key: <folder>/<user_id>/<uuid>.<ext>"""
    extension = ALLOWED_CONTENT_TYPES.get(content_type.lower(), "bin")
    return f"{folder}/{user_id}/{uuid.uuid4().hex}.{extension}"


class BlobUploader:
    """Stores bytes under a path and returns a publicly retrievable URL."""

    def __init__(self, s3_client, bucket: str, public_base_url: str):
        self.s3 = s3_client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path.lstrip('/')}"

    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes and return the public URL of the stored object."""
        key = path.lstrip("/")
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Blob upload failed for {key}: {e}")
            raise BlobStorageError(f"Failed to upload file to storage: {e}") from e
        logger.info(f"Stored blob {key} ({len(data)} bytes, {content_type})")
        return self.public_url(key)

    def delete(self, path: str) -> None:
        key = path.lstrip("/")
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Blob delete failed for {key}: {e}")
            raise BlobStorageError(f"Failed to delete file from storage: {e}") from e
        logger.info(f"Deleted blob {key}")


def build_blob_uploader(
    bucket: str,
    access_key_id: str,
    secret_access_key: str,
    endpoint_url: Optional[str] = None,
    region: Optional[str] = None,
    public_base_url: Optional[str] = None,
) -> Optional[BlobUploader]:
    """Create an uploader from credentials, or None if storage is not configured."""
    if not (bucket and access_key_id and secret_access_key):
        logger.warning("Blob storage not fully configured (bucket or credentials missing).")
        return None

    s3 = boto3.client(
        "s3",
        endpoint_url=endpoint_url or None,
        region_name=region or None,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        config=Config(signature_version="s3v4"),
    )
    if not public_base_url:
        public_base_url = f"https://{bucket}.s3.{region or 'us-east-1'}.amazonaws.com"
    logger.info(f"Initialized S3 client for bucket {bucket}")
    return BlobUploader(s3, bucket, public_base_url)
