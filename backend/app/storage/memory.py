"""
In-memory Staging and Durable Stores.

Used with STORAGE_BACKEND=memory for local development and by the test
suite. Behaviour mirrors the S3 stores, including idempotent delete.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.storage.base import DurableStore, StagingStore, StoredObject, build_key

logger = logging.getLogger(__name__)


@dataclass
class _Blob:
    data:          bytes
    content_type:  str
    metadata:      dict[str, str] = field(default_factory=dict)
    last_modified: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _stored(key: str, blob: _Blob) -> StoredObject:
    return StoredObject(
        ref=key,
        bucket="memory",
        size_bytes=len(blob.data),
        content_type=blob.content_type,
        etag=hashlib.md5(blob.data, usedforsecurity=False).hexdigest(),
    )


class InMemoryStagingStore(StagingStore):

    def __init__(self, prefix: str = "staging") -> None:
        self._prefix = prefix
        self.objects: dict[str, _Blob] = {}
        self.delete_calls: list[str] = []

    async def put(self, data, owner_id, filename, content_type) -> StoredObject:
        key = build_key(self._prefix, owner_id, filename)
        self.objects[key] = _Blob(data=data, content_type=content_type)
        return _stored(key, self.objects[key])

    async def delete(self, ref: str) -> None:
        self.delete_calls.append(ref)
        if self.objects.pop(ref, None) is None:
            logger.info("Staging delete: already gone | key=%s", ref)

    async def list_older_than(self, cutoff: datetime) -> list[str]:
        return [k for k, b in self.objects.items() if b.last_modified < cutoff]


class InMemoryDurableStore(DurableStore):

    def __init__(self, prefix: str = "documents") -> None:
        self._prefix = prefix
        self.objects: dict[str, _Blob] = {}

    async def put(self, data, owner_id, filename, content_type, metadata=None) -> StoredObject:
        key = build_key(self._prefix, owner_id, filename)
        self.objects[key] = _Blob(data=data, content_type=content_type, metadata=dict(metadata or {}))
        return _stored(key, self.objects[key])

    async def get(self, ref: str) -> bytes:
        try:
            return self.objects[ref].data
        except KeyError:
            raise FileNotFoundError(f"Object not found: {ref}") from None

    async def url_for(self, ref: str, expires_in: int = 900) -> str:
        return f"memory://{ref}"
