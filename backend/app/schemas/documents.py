"""
Document Pipeline — Pydantic Schemas

Covers:
  - The Document Record (what the Metadata Store persists and the API returns)
  - The Enrichment Result produced by the Enrichment Service Client
  - Progress events streamed to callers while a pipeline run is in flight
  - Reprocessing and translation request/response bodies
  - Structured error bodies (400, 404, 500, 502, 503)

Design decisions:
  - Category is a closed set; anything outside it is rejected at the model.
  - Tags are deduplicated on assignment, insertion order irrelevant.
  - Confidence scores are clamped to [0.0, 1.0].
  - Extracted dates are capped at 10 entries.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Closed category set
# ---------------------------------------------------------------------------

class Category(str, Enum):
    PERSONAL      = "personal"
    FINANCIAL     = "financial"
    LEGAL         = "legal"
    MEDICAL       = "medical"
    EDUCATION     = "education"
    INSURANCE     = "insurance"
    TRAVEL        = "travel"
    TAX           = "tax"
    BANKING       = "banking"
    EMPLOYMENT    = "employment"
    UTILITIES     = "utilities"
    REAL_ESTATE   = "real_estate"
    TECHNICAL     = "technical"
    GOVERNMENT    = "government"
    PHOTOS        = "photos"
    UNCATEGORIZED = "uncategorized"


CATEGORY_VALUES: frozenset[str] = frozenset(c.value for c in Category)

# Categories treated as "no real classification yet"
GENERIC_CATEGORIES: frozenset[str] = frozenset(
    {"", "personal", "uncategorized", "document", "other", "unknown", "misc", "miscellaneous"}
)

MAX_EXTRACTED_DATES = 10


class RecordStatus(str, Enum):
    """
    READY    — enrichment succeeded
    DEGRADED — enrichment exhausted its retries; default metadata stored
    """
    READY    = "ready"
    DEGRADED = "degraded"


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        v = v.strip()
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out


# ---------------------------------------------------------------------------
# Enrichment Result — never persisted on its own
# ---------------------------------------------------------------------------

class EnrichmentResult(BaseModel):
    category:        Category          = Category.UNCATEGORIZED
    confidence:      float             = Field(0.0, ge=0.0, le=1.0)
    tags:            list[str]         = Field(default_factory=list)
    language:        str | None        = None
    summary:         str | None        = None
    extracted_dates: list[str]         = Field(default_factory=list)
    suggested_name:  str | None        = None
    engine:          str               = Field("primary", description="Source-engine identifier")

    # Carried along so the orchestrator can persist them on the record
    extracted_text:  str               = ""
    field_confidence: dict[str, float] = Field(default_factory=dict)
    details:         dict[str, Any]    = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, v: list[str]) -> list[str]:
        return _dedupe(v)

    @field_validator("extracted_dates")
    @classmethod
    def _cap_dates(cls, v: list[str]) -> list[str]:
        return _dedupe(v)[:MAX_EXTRACTED_DATES]


# ---------------------------------------------------------------------------
# Document Record
# ---------------------------------------------------------------------------

class DocumentRecord(BaseModel):
    """
    Created only after the canonical artifact is durably stored.
    Reprocessing may change category / tags / summary / metadata fields;
    storage_ref and owner_id never change after creation.
    """
    id:              UUID | None       = Field(None, description="Assigned by the Metadata Store")
    owner_id:        str
    display_name:    str
    storage_ref:     str               = Field(..., description="Durable Store key of the canonical artifact")
    storage_url:     str | None        = None
    mime_type:       str               = Field(..., description="Original MIME type")
    size_bytes:      int               = Field(..., ge=0)
    canonical:       bool              = Field(True, description="False when the original bytes were stored verbatim")
    status:          RecordStatus      = RecordStatus.READY
    category:        Category          = Category.UNCATEGORIZED
    tags:            list[str]         = Field(default_factory=list)
    language:        str | None        = None
    extracted_text:  str | None        = None
    summary:         str | None        = None
    extracted_dates: list[str]         = Field(default_factory=list)
    suggested_name:  str | None        = None
    confidence:      dict[str, float]  = Field(default_factory=dict)
    metadata:        dict[str, Any]    = Field(default_factory=dict)
    created_at:      datetime | None   = None
    updated_at:      datetime | None   = None

    model_config = {"from_attributes": True}

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, v: list[str]) -> list[str]:
        return _dedupe(v)

    @field_validator("extracted_dates")
    @classmethod
    def _cap_dates(cls, v: list[str]) -> list[str]:
        return _dedupe(v)[:MAX_EXTRACTED_DATES]

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: dict[str, float]) -> dict[str, float]:
        return {k: min(1.0, max(0.0, float(s))) for k, s in v.items()}


# Fields reprocessing is allowed to touch
MUTABLE_RECORD_FIELDS: frozenset[str] = frozenset(
    {
        "category", "tags", "summary", "language", "extracted_dates",
        "suggested_name", "confidence", "metadata", "status",
    }
)


# ---------------------------------------------------------------------------
# Progress events — streamed as SSE
# ---------------------------------------------------------------------------

class ProgressEvent(BaseModel):
    """
    event: pipeline_progress
    data: <json of this model>
    """
    event:   str   = "pipeline_progress"
    stage:   str   = Field(..., description="staging | enriching | normalizing | persisting | cleanup | done")
    percent: float = Field(0.0, ge=0.0, le=100.0)
    message: str   = ""


# ---------------------------------------------------------------------------
# Reprocessing
# ---------------------------------------------------------------------------

class ReprocessMode(str, Enum):
    PRIMARY   = "primary"
    SECONDARY = "secondary"
    BOTH      = "both"


class Recommendation(str, Enum):
    PREFER_PRIMARY   = "prefer_primary"
    PREFER_SECONDARY = "prefer_secondary"
    SIMILAR          = "similar"
    LOW_AGREEMENT    = "low_agreement"


class EnsembleResult(BaseModel):
    selected:        EnrichmentResult
    results:         list[EnrichmentResult]
    agreement_score: float | None = Field(None, ge=0.0, le=1.0)
    recommendation:  Recommendation | None = None
    reason:          str = ""


class ReprocessRequest(BaseModel):
    mode:            ReprocessMode = ReprocessMode.PRIMARY
    use_stored_text: bool          = Field(False, description="Re-enrich from extracted_text without re-downloading")


class BatchReprocessRequest(BaseModel):
    urls: list[str]       = Field(..., min_length=1, description="Document URLs to re-enrich")
    mode: ReprocessMode   = ReprocessMode.PRIMARY


class BatchItemResult(BaseModel):
    url:     str
    success: bool
    result:  EnrichmentResult | None = None
    error:   str | None = None


class BatchReprocessResult(BaseModel):
    results:   list[BatchItemResult]
    processed: int
    via_batch: bool = Field(False, description="True when the remote batch call succeeded")


class CategoryImprovementReport(BaseModel):
    processed: int = 0
    improved:  int = 0
    errors:    list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------

class TranslateRequest(BaseModel):
    text:        str        = Field(..., min_length=1)
    target_lang: str        = Field(..., min_length=2, max_length=8)
    source_lang: str | None = Field(None, description="Omit for auto-detection")


class TranslationResult(BaseModel):
    translated_text: str
    detected_source: str
    target_lang:     str
    confidence:      float = Field(0.0, ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class PipelineErrors:
    """Factories for every documented error case."""

    @staticmethod
    def validation(message: str, field: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message=message,
            details=[ErrorDetail(field=field, message=message, code="VALIDATION_ERROR")],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def service_unavailable(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="SERVICE_UNAVAILABLE",
            message="An upstream service is temporarily unavailable. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="SERVICE_UNAVAILABLE")]
                if detail else []
            ),
        )

    @staticmethod
    def upstream_rejected(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="UPSTREAM_REJECTED",
            message="An upstream service rejected the request.",
            details=(
                [ErrorDetail(field=None, message=detail, code="UPSTREAM_REJECTED")]
                if detail else []
            ),
        )

    @staticmethod
    def storage_error(stage: str, detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message=f"Failed to store the document during {stage}. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail else []
            ),
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )
