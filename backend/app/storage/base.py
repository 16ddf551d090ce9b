"""
Blob Storage — Abstract Base

Two roles, two interfaces:

  StagingStore  — temporary home of the original upload bytes while one
                  pipeline run is in flight. Exactly one delete() is issued
                  per staged object; delete() on a missing ref is a no-op.

  DurableStore  — permanent home of the canonical artifact. put() is
                  all-or-nothing from the caller's view.

Backends (S3, in-memory) implement these; the pipeline only speaks this
protocol.
"""

from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class StoredObject:
    """Represents a stored blob — returned by every put()."""
    ref:          str        # backend-specific key
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str = ""


def build_key(prefix: str, owner_id: str, filename: str) -> str:
    """
    <prefix>/<owner_id>/<uuid>_<sanitized filename>

    The uuid segment makes concurrent uploads of the same filename land on
    distinct keys.
    """
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe_name = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)[:200] or "upload"
    safe_owner = re.sub(r"[^a-zA-Z0-9_\-]", "_", owner_id) or "anonymous"
    return f"{prefix}/{safe_owner}/{uuid.uuid4().hex}_{safe_name}"


class StagingStore(ABC):

    @abstractmethod
    async def put(
        self,
        data: bytes,
        owner_id: str,
        filename: str,
        content_type: str,
    ) -> StoredObject:
        """Write the original bytes; returns the staging ref."""

    @abstractmethod
    async def delete(self, ref: str) -> None:
        """Remove a staged object. Missing objects are not an error."""

    @abstractmethod
    async def list_older_than(self, cutoff: datetime) -> list[str]:
        """Refs of staged objects last modified before `cutoff`."""


class DurableStore(ABC):

    @abstractmethod
    async def put(
        self,
        data: bytes,
        owner_id: str,
        filename: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        """Write the canonical artifact."""

    @abstractmethod
    async def get(self, ref: str) -> bytes:
        """Read an artifact back. Raises FileNotFoundError if missing."""

    @abstractmethod
    async def url_for(self, ref: str, expires_in: int = 900) -> str:
        """Retrievable URL for an artifact."""
