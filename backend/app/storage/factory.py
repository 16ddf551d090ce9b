"""
Storage Factory

Selects the staging / durable backends (s3 | memory) based on config.
The rest of the app only imports these functions — never the concrete
classes directly.
"""

from __future__ import annotations

from app.core.config import settings
from app.storage.base import DurableStore, StagingStore


def get_staging_store() -> StagingStore:
    backend = settings.storage_backend.lower()

    if backend == "s3":
        from app.storage.s3 import S3StagingStore
        return S3StagingStore()

    if backend == "memory":
        from app.storage.memory import InMemoryStagingStore
        return InMemoryStagingStore(prefix=settings.staging_prefix)

    raise ValueError(
        f"Unknown storage backend: '{backend}'. "
        f"Valid options: 's3', 'memory'"
    )


def get_durable_store() -> DurableStore:
    backend = settings.storage_backend.lower()

    if backend == "s3":
        from app.storage.s3 import S3DurableStore
        return S3DurableStore()

    if backend == "memory":
        from app.storage.memory import InMemoryDurableStore
        return InMemoryDurableStore(prefix=settings.documents_prefix)

    raise ValueError(
        f"Unknown storage backend: '{backend}'. "
        f"Valid options: 's3', 'memory'"
    )
