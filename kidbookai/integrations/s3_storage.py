"""
S3-backed object storage for reference photos and training archives.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import boto3

logger = logging.getLogger(__name__)


class S3ObjectStorage:
    """
    Thin async wrapper around a boto3 S3 client.

    Parameters
    ----------
    bucket:
        Target bucket. Falls back to ``AWS_S3_BUCKET``.
    region:
        AWS region. Falls back to ``AWS_REGION`` and then ``us-east-1``.
    acl:
        Canned ACL applied to uploaded objects; ``None`` leaves the bucket default.
    client:
        Optional pre-configured boto3 client. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        bucket: str | None = None,
        region: str | None = None,
        acl: str | None = "public-read",
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket or os.getenv("AWS_S3_BUCKET")
        if not self._bucket:
            raise ValueError("S3 bucket is required. Set AWS_S3_BUCKET or pass bucket.")
        self._region = region or os.getenv("AWS_REGION") or "us-east-1"
        self._acl = acl
        self._client = client or boto3.client("s3", region_name=self._region)

    @property
    def bucket(self) -> str:
        return self._bucket

    def public_url(self, key: str) -> str:
        return f"https://{self._bucket}.s3.amazonaws.com/{key}"

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        extra: dict[str, Any] = {"ContentType": content_type or "application/octet-stream"}
        if self._acl:
            extra["ACL"] = self._acl
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self._bucket,
            Key=key,
            Body=data,
            **extra,
        )
        logger.debug("Uploaded s3://%s/%s (%d bytes)", self._bucket, key, len(data))
        return self.public_url(key)

    async def delete(self, key: str) -> None:
        if not key:
            return
        await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket, Key=key)
