"""
SQLAlchemy ORM Models — Documents & Reprocessing History

Using SQLAlchemy 2.x mapped classes for full async support.

A row in `documents` only ever exists for an artifact that is already in
the Durable Store: the orchestrator inserts it after the durable write
succeeds, never before.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.schemas.documents import Category

_CATEGORY_CHECK = ", ".join(f"'{c.value}'" for c in Category)


# ---------------------------------------------------------------------------
# Declarative base, shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One stored, enriched document.

    status:
        ready    — enrichment succeeded
        degraded — enrichment exhausted retries; default metadata stored

    storage_ref and owner_id are immutable after insert; reprocessing only
    updates the enrichment columns and metadata.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('ready', 'degraded')",
            name="documents_status_check",
        ),
        CheckConstraint(
            f"category IN ({_CATEGORY_CHECK})",
            name="documents_category_check",
        ),
        Index("idx_documents_owner_id", "owner_id"),
        Index("idx_documents_category", "owner_id", "category"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)

    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    storage_ref: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Durable Store key: documents/<owner_id>/<uuid>_<name>",
    )
    storage_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="MIME type of the original upload (the stored artifact may be a PDF)",
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    canonical: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="False when normalization failed and the original bytes were stored",
    )

    status: Mapped[str] = mapped_column(Text, nullable=False, default="ready", server_default="ready")

    # Enrichment output
    category: Mapped[str] = mapped_column(
        Text, nullable=False, default="uncategorized", server_default="uncategorized",
    )
    tags: Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    language: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_dates: Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    suggested_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Per-field confidence scores in [0, 1]",
    )

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} owner={self.owner_id} "
            f"status={self.status} category={self.category!r}>"
        )


# ---------------------------------------------------------------------------
# Reprocessing history — reprocessing_events
# ---------------------------------------------------------------------------

class ReprocessingEvent(Base):
    """Append-only record of every reprocessing run against a document."""

    __tablename__ = "reprocessing_events"
    __table_args__ = (
        Index("idx_reprocessing_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    engine:          Mapped[str]             = mapped_column(Text, nullable=False)
    category:        Mapped[str]             = mapped_column(Text, nullable=False)
    confidence:      Mapped[float]           = mapped_column(Float, nullable=False, default=0.0)
    tags:            Mapped[list]            = mapped_column(JSONB, nullable=False, default=list)
    agreement_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    recommendation:  Mapped[Optional[str]]   = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
