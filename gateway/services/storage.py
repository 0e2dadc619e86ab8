"""
Object Storage - Private bucket for generated artifacts.

Artifacts are never public. Readers get short-lived presigned URLs minted
per request; the database only ever stores the object path.

boto3 is synchronous, so every call runs in a worker thread.
"""

import asyncio
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from gateway.config import Settings, settings as default_settings
from gateway.exceptions import StorageError
from gateway.observability.logging import get_logger

logger = get_logger(__name__)

STORAGE_POINTER_PREFIX = "storage:"
# DeleteObjects accepts at most this many keys per call
DELETE_BATCH_SIZE = 1000


def to_pointer(path: str) -> str:
    """Cache pointer for an object path."""
    return f"{STORAGE_POINTER_PREFIX}{path}"


def pointer_path(pointer: str) -> str | None:
    """Object path of a storage pointer, or None for inline/URL pointers."""
    if pointer.startswith(STORAGE_POINTER_PREFIX):
        return pointer[len(STORAGE_POINTER_PREFIX):]
    return None


class ObjectStorage:
    """S3-compatible private artifact storage."""

    def __init__(self, client: Any | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings
        self.bucket = self.settings.storage_bucket
        self._client = client

    @property
    def client(self) -> Any:
        """Lazily created boto3 S3 client."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.settings.storage_region,
                endpoint_url=self.settings.storage_endpoint_url,
            )
        return self._client

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store bytes at `path`, overwriting. Returns the object path."""
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("storage_upload_failed", path=path, error=str(e))
            raise StorageError(f"upload of {path} failed: {e}") from e

        logger.info("storage_uploaded", path=path, size_bytes=len(data))
        return path

    async def create_signed_url(self, path: str, expires_in: int | None = None) -> str:
        """Mint a presigned GET URL for `path`."""
        ttl = expires_in or self.settings.signed_url_ttl_seconds
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=ttl,
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("storage_sign_failed", path=path, error=str(e))
            raise StorageError(f"signing {path} failed: {e}") from e

    async def delete(self, paths: list[str]) -> None:
        """Delete objects; missing objects are not an error."""
        if not paths:
            return
        for offset in range(0, len(paths), DELETE_BATCH_SIZE):
            batch = paths[offset : offset + DELETE_BATCH_SIZE]
            try:
                await asyncio.to_thread(
                    self.client.delete_objects,
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": p} for p in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as e:
                logger.error(
                    "storage_delete_failed", count=len(batch), deleted=offset, error=str(e)
                )
                raise StorageError(f"delete of {len(batch)} objects failed: {e}") from e

        logger.info("storage_deleted", count=len(paths))
