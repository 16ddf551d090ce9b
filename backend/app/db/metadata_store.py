"""
Metadata Store — document-record persistence.

Interface:
    create(record) -> id          only called after the durable write succeeded
    update(id, patch) -> record   only MUTABLE_RECORD_FIELDS may change
    get(id) -> record | None
    list_for_owner(owner_id) -> [record]
    record_reprocessing(id, event)

SqlMetadataStore opens one transaction per call, so each call is safe to
retry through the executor: a failed attempt rolls back completely.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import DocumentNotFoundError, ValidationError
from app.db.session import session_scope
from app.models.documents import Document, ReprocessingEvent
from app.schemas.documents import MUTABLE_RECORD_FIELDS, DocumentRecord

logger = logging.getLogger(__name__)


@dataclass
class ReprocessingEntry:
    engine:          str
    category:        str
    confidence:      float
    tags:            list[str] = field(default_factory=list)
    agreement_score: float | None = None
    recommendation:  str | None = None


def _check_patch(patch: dict[str, Any]) -> None:
    illegal = set(patch) - MUTABLE_RECORD_FIELDS
    if illegal:
        raise ValidationError(
            f"Fields cannot be updated after creation: {', '.join(sorted(illegal))}",
            field=sorted(illegal)[0],
        )


class MetadataStore(ABC):

    @abstractmethod
    async def create(self, record: DocumentRecord) -> uuid.UUID: ...

    @abstractmethod
    async def update(self, document_id: uuid.UUID, patch: dict[str, Any]) -> DocumentRecord: ...

    @abstractmethod
    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None: ...

    @abstractmethod
    async def list_for_owner(self, owner_id: str) -> list[DocumentRecord]: ...

    @abstractmethod
    async def record_reprocessing(self, document_id: uuid.UUID, entry: ReprocessingEntry) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

def _to_record(doc: Document) -> DocumentRecord:
    return DocumentRecord(
        id=doc.id,
        owner_id=doc.owner_id,
        display_name=doc.display_name,
        storage_ref=doc.storage_ref,
        storage_url=doc.storage_url,
        mime_type=doc.mime_type,
        size_bytes=doc.size_bytes,
        canonical=doc.canonical,
        status=doc.status,
        category=doc.category,
        tags=list(doc.tags or []),
        language=doc.language,
        extracted_text=doc.extracted_text,
        summary=doc.summary,
        extracted_dates=list(doc.extracted_dates or []),
        suggested_name=doc.suggested_name,
        confidence=dict(doc.confidence or {}),
        metadata=dict(doc.doc_metadata or {}),
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


class SqlMetadataStore(MetadataStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, record: DocumentRecord) -> uuid.UUID:
        document_id = record.id or uuid.uuid4()
        doc = Document(
            id=document_id,
            owner_id=record.owner_id,
            display_name=record.display_name,
            storage_ref=record.storage_ref,
            storage_url=record.storage_url,
            mime_type=record.mime_type,
            size_bytes=record.size_bytes,
            canonical=record.canonical,
            status=record.status.value,
            category=record.category.value,
            tags=record.tags,
            language=record.language,
            extracted_text=record.extracted_text,
            summary=record.summary,
            extracted_dates=record.extracted_dates,
            suggested_name=record.suggested_name,
            confidence=record.confidence,
            doc_metadata=record.metadata,
        )
        async with session_scope(self._session_factory) as session:
            # A retried create whose first attempt committed is a no-op
            if await session.get(Document, document_id) is not None:
                logger.info("Record already exists | doc=%s", document_id)
                return document_id
            session.add(doc)
        logger.info("Record created | doc=%s owner=%s", document_id, record.owner_id)
        return document_id

    async def update(self, document_id: uuid.UUID, patch: dict[str, Any]) -> DocumentRecord:
        _check_patch(patch)
        async with session_scope(self._session_factory) as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                raise DocumentNotFoundError(document_id)
            for key, value in patch.items():
                if key == "metadata":
                    doc.doc_metadata = {**(doc.doc_metadata or {}), **value}
                elif hasattr(value, "value"):
                    setattr(doc, key, value.value)
                else:
                    setattr(doc, key, value)
            doc.updated_at = datetime.now(timezone.utc)
        record = _to_record(doc)
        logger.info("Record updated | doc=%s fields=%s", document_id, sorted(patch))
        return record

    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None:
        async with self._session_factory() as session:
            doc = await session.get(Document, document_id)
            return _to_record(doc) if doc else None

    async def list_for_owner(self, owner_id: str) -> list[DocumentRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document)
                .where(Document.owner_id == owner_id)
                .order_by(Document.created_at.desc())
            )
            return [_to_record(d) for d in result.scalars().all()]

    async def record_reprocessing(self, document_id: uuid.UUID, entry: ReprocessingEntry) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(ReprocessingEvent(
                document_id=document_id,
                engine=entry.engine,
                category=entry.category,
                confidence=entry.confidence,
                tags=entry.tags,
                agreement_score=entry.agreement_score,
                recommendation=entry.recommendation,
            ))


# ---------------------------------------------------------------------------
# In-memory implementation (local dev / tests)
# ---------------------------------------------------------------------------

class InMemoryMetadataStore(MetadataStore):

    def __init__(self) -> None:
        self.records: dict[uuid.UUID, DocumentRecord] = {}
        self.history: dict[uuid.UUID, list[ReprocessingEntry]] = {}

    async def create(self, record: DocumentRecord) -> uuid.UUID:
        document_id = record.id or uuid.uuid4()
        now = datetime.now(timezone.utc)
        self.records[document_id] = record.model_copy(
            update={"id": document_id, "created_at": now, "updated_at": now}
        )
        return document_id

    async def update(self, document_id: uuid.UUID, patch: dict[str, Any]) -> DocumentRecord:
        _check_patch(patch)
        current = self.records.get(document_id)
        if current is None:
            raise DocumentNotFoundError(document_id)
        changes = dict(patch)
        if "metadata" in changes:
            changes["metadata"] = {**current.metadata, **changes["metadata"]}
        changes["updated_at"] = datetime.now(timezone.utc)
        # Re-validate so tag dedupe / confidence clamping still apply
        updated = DocumentRecord.model_validate({**current.model_dump(), **changes})
        self.records[document_id] = updated
        return updated

    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None:
        return self.records.get(document_id)

    async def list_for_owner(self, owner_id: str) -> list[DocumentRecord]:
        return [r for r in self.records.values() if r.owner_id == owner_id]

    async def record_reprocessing(self, document_id: uuid.UUID, entry: ReprocessingEntry) -> None:
        self.history.setdefault(document_id, []).append(entry)
