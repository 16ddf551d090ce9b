"""
S3 Storage — Staging and Durable Stores

Both stores share one bucket and are partitioned by prefix:

    s3://<BUCKET>/<staging_prefix>/<owner_id>/<uuid>_<name>     original bytes
    s3://<BUCKET>/<documents_prefix>/<owner_id>/<uuid>_<name>   canonical PDF

Object lifecycle:
  - Staging objects live for the duration of one pipeline run. The
    orchestrator deletes each one exactly once; the staging sweeper
    (workers/tasks.py) removes anything a crashed worker left behind.
  - Deleting a key that no longer exists is treated as success
    (NoSuchKey / 404), which keeps cleanup idempotent under retry.
  - Durable objects are never deleted by the pipeline.
"""

from __future__ import annotations

import logging
from datetime import datetime

import aioboto3
from botocore.exceptions import ClientError

from app.core.config import settings
from app.storage.base import DurableStore, StagingStore, StoredObject, build_key

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


class _S3Base:
    """Shared session + client helper."""

    def __init__(self, bucket: str | None = None, prefix: str = "") -> None:
        self._bucket = bucket or settings.s3_bucket
        self._prefix = prefix
        self._session = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=settings.aws_region,
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    async def _put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        return StoredObject(
            ref=key,
            bucket=self._bucket,
            size_bytes=len(data),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
        )


class S3StagingStore(_S3Base, StagingStore):

    def __init__(self, bucket: str | None = None) -> None:
        super().__init__(bucket, settings.staging_prefix)

    async def put(
        self,
        data: bytes,
        owner_id: str,
        filename: str,
        content_type: str,
    ) -> StoredObject:
        key = build_key(self._prefix, owner_id, filename)
        obj = await self._put(key, data, content_type, {"owner_id": owner_id})
        logger.info("Staged | owner=%s key=%s size=%d", owner_id, key, len(data))
        return obj

    async def delete(self, ref: str) -> None:
        async with self._client() as s3:
            try:
                await s3.delete_object(Bucket=self._bucket, Key=ref)
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in _NOT_FOUND_CODES:
                    logger.info("Staging delete: already gone | key=%s", ref)
                    return
                raise
        logger.info("Staging delete ok | key=%s", ref)

    async def list_older_than(self, cutoff: datetime) -> list[str]:
        refs: list[str] = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self._bucket, Prefix=f"{self._prefix}/"):
                for item in page.get("Contents", []):
                    if item["LastModified"] < cutoff:
                        refs.append(item["Key"])
        return refs


class S3DurableStore(_S3Base, DurableStore):

    def __init__(self, bucket: str | None = None) -> None:
        super().__init__(bucket, settings.documents_prefix)

    async def put(
        self,
        data: bytes,
        owner_id: str,
        filename: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        key = build_key(self._prefix, owner_id, filename)
        obj = await self._put(
            key, data, content_type,
            {"owner_id": owner_id, **(metadata or {})},
        )
        logger.info("Durable upload ok | owner=%s key=%s size=%d", owner_id, key, len(data))
        return obj

    async def get(self, ref: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=ref)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in _NOT_FOUND_CODES:
                    raise FileNotFoundError(f"Object not found: {ref}") from exc
                raise

    async def url_for(self, ref: str, expires_in: int = 900) -> str:
        """Short-lived presigned GET URL scoped to the exact key."""
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": ref},
                ExpiresIn=expires_in,
            )
