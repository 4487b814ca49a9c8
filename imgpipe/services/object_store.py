"""S3-compatible object storage for staging and result images.

Objects are keyed by image id inside one of two buckets. The store works
against AWS S3 or a MinIO endpoint (``s3_endpoint_url``) and only relies on
object bytes; the content type is written but never read back.
"""

from __future__ import annotations

from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from imgpipe.core.errors import ObjectNotFoundError, ObjectStoreError
from imgpipe.core.logging import get_logger

logger = get_logger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    """Thin adapter translating botocore failures into pipeline errors."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "S3ObjectStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
        )
        return cls(client)

    def get(self, bucket: str, key: str) -> bytes:
        """Return the object's bytes."""

        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(bucket, key) from exc
            raise ObjectStoreError(f"Failed to read {bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Failed to read {bucket}/{key}: {exc}") from exc

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self._client.put_object(Bucket=bucket, Key=key, Body=data, **extra)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Failed to write {bucket}/{key}: {exc}") from exc
        logger.debug("object_stored", bucket=bucket, key=key, bytes=len(data))

    def delete(self, bucket: str, key: str) -> None:
        """Remove an object. Deleting a missing key is not an error in S3."""

        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Failed to delete {bucket}/{key}: {exc}") from exc
        logger.debug("object_deleted", bucket=bucket, key=key)

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise ObjectStoreError(f"Failed to inspect {bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Failed to inspect {bucket}/{key}: {exc}") from exc
        return True

    def ensure_bucket(self, bucket: str) -> None:
        """Create the bucket if it does not exist yet."""

        try:
            self._client.head_bucket(Bucket=bucket)
            return
        except ClientError as exc:
            if _error_code(exc) not in _NOT_FOUND_CODES:
                raise ObjectStoreError(f"Failed to inspect bucket {bucket}: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Failed to inspect bucket {bucket}: {exc}") from exc

        try:
            self._client.create_bucket(Bucket=bucket)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Failed to create bucket {bucket}: {exc}") from exc
        logger.info("bucket_created", bucket=bucket)
