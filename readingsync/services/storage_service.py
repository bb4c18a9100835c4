import logging
import mimetypes
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError

from readingsync.config import settings

logger = logging.getLogger(__name__)


class PhotoValidationError(ValueError):
    """Rejected upload: wrong content type or too large"""


class StorageError(Exception):
    """The object store could not complete the operation"""


def photo_key(tenant_id, client_id: str, content_type: str) -> str:
    """Deterministic key so a retried upload overwrites the same object"""
    extension = mimetypes.guess_extension(content_type) or ".jpg"
    if extension == ".jpe":
        extension = ".jpg"
    return f"readings/{tenant_id}/{client_id}/photo{extension}"


class StorageService:
    """S3 operations for reading photos"""

    def __init__(self, s3_client=None, bucket_name: Optional[str] = None):
        self.s3_client = s3_client or boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=settings.S3_REGION,
            config=BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
            ),
        )
        self.bucket_name = bucket_name or settings.S3_BUCKET_NAME
        self._bucket_checked = False

    def _ensure_bucket_exists(self):
        """Create the bucket on first use if it is missing"""
        if self._bucket_checked:
            return
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code not in ("404", "NoSuchBucket"):
                logger.error(f"Bucket check failed for {self.bucket_name}: {e}")
                raise StorageError(str(e)) from e
            try:
                create_params = {"Bucket": self.bucket_name}
                if settings.S3_REGION and settings.S3_REGION != "us-east-1":
                    create_params["CreateBucketConfiguration"] = {"LocationConstraint": settings.S3_REGION}
                self.s3_client.create_bucket(**create_params)
                logger.info(f"Bucket {self.bucket_name} created")
            except ClientError as create_error:
                logger.error(f"Bucket creation failed: {create_error}")
                raise StorageError(str(create_error)) from create_error
        self._bucket_checked = True

    def upload_reading_photo(self, tenant_id, client_id: str, content: bytes, content_type: Optional[str]) -> dict:
        """Store the photo attached to a queued reading"""
        content_type = content_type or "image/jpeg"
        if content_type not in settings.ALLOWED_PHOTO_TYPES:
            raise PhotoValidationError(f"Unsupported photo type: {content_type}")
        if not content:
            raise PhotoValidationError("Empty photo upload")
        if len(content) > settings.MAX_UPLOAD_SIZE:
            raise PhotoValidationError(
                f"Photo too large: {len(content)} bytes (max: {settings.MAX_UPLOAD_SIZE})"
            )

        self._ensure_bucket_exists()
        key = photo_key(tenant_id, client_id, content_type)
        uploaded_at = datetime.now(timezone.utc)

        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=content,
                ContentType=content_type,
                Metadata={
                    "client-id": client_id,
                    "upload-timestamp": uploaded_at.isoformat(),
                },
            )
        except ClientError as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise StorageError(str(e)) from e

        logger.info(f"Photo stored at {key} ({len(content)} bytes)")
        return {
            "path": key,
            "size": len(content),
            "content_type": content_type,
            "uploaded_at": uploaded_at,
        }

    def generate_presigned_download_url(self, file_key: str, expires_in: int = 3600) -> str:
        """Presigned URL to view a stored photo"""
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": file_key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            logger.error(f"Presigned URL generation failed for {file_key}: {e}")
            raise StorageError(str(e)) from e


@lru_cache
def get_storage_service() -> StorageService:
    return StorageService()
