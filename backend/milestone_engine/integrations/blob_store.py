"""Blob store for milestone photos.

The engine only ever keeps the URL returned by ``store``; photo bytes never
touch the database.
"""

from __future__ import annotations

import asyncio
import mimetypes
import uuid
from typing import Protocol

import boto3
import structlog

logger = structlog.get_logger(__name__)

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/heic"})
MAX_PHOTO_BYTES = 10 * 1024 * 1024


class BlobStore(Protocol):
    async def store(self, data: bytes, content_type: str) -> str:
        """Persist ``data`` and return a public URL."""
        ...


class S3BlobStore:
    """Stores milestone photos as S3 objects.

    boto3 is synchronous, so uploads run via asyncio.to_thread() to keep the
    event loop free.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        public_base_url: str = "",
        prefix: str = "milestones/",
        client=None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._public_base_url = public_base_url.rstrip("/")
        self._prefix = prefix
        self._client = client

    async def store(self, data: bytes, content_type: str) -> str:
        key = f"{self._prefix}{uuid.uuid4().hex}{mimetypes.guess_extension(content_type) or ''}"
        await asyncio.to_thread(self._put_s3, key, data, content_type)
        logger.info("milestone_photo_stored", s3_key=key, size_bytes=len(data))
        return self._url_for(key)

    # ------------------------------------------------------------------
    # Private helpers (run inside asyncio.to_thread)
    # ------------------------------------------------------------------

    def _s3(self):
        if self._client is None:
            self._client = boto3.client("s3", region_name=self._region)
        return self._client

    def _put_s3(self, key: str, data: bytes, content_type: str) -> None:
        self._s3().put_object(Bucket=self._bucket, Key=key, Body=data, ContentType=content_type)

    def _url_for(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"
