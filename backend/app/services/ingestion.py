"""
Document Ingestion Service

Drives one upload through a linear state machine:

    STAGING → ENRICHING → NORMALIZING → PERSISTING → CLEANUP → DONE
                  │
                  └─ retries exhausted / permanent fault → DEGRADED
                     (the upload still completes with default metadata)

    STAGING / NORMALIZING / PERSISTING unreachable → FAILED

Stage contracts:
  STAGING      original bytes → Staging Store. Failure is fatal; nothing
               to clean up yet.
  ENRICHING    EnrichmentClient.enrich() through the RetryExecutor with
               ENRICHMENT_POLICY. Never aborts the upload.
  NORMALIZING  FormatNormalizer; falls back to the original bytes with
               canonical=False, never aborts.
  PERSISTING   canonical bytes → Durable Store, then MetadataStore.create
               through the executor with PERSISTENCE_POLICY. The record id
               is assigned up front so a retried create stays idempotent.
  CLEANUP      exactly one Staging Store delete, in a `finally`, on every
               exit path after STAGING succeeded. Errors are logged only.

Progress events carry monotonically non-decreasing percentages:
  staging 10 · enriching 30–55 · normalizing 60 · persisting 80–98 ·
  cleanup 95 (clamped) · done 100

Invariants:
  - No Document Record exists before the durable write succeeded.
  - No pipeline instance shares mutable state with another.
  - No mid-pipeline cancellation: the executor timeout is the only one.
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Callable

from app.core.config import settings
from app.core.exceptions import (
    CleanupError,
    PermanentServiceError,
    PersistenceError,
    RetryExhaustedError,
    ValidationError,
)
from app.db.metadata_store import MetadataStore
from app.enrichment.classification import sanitize_name
from app.enrichment.client import EnrichmentClient
from app.processing.extractor import DOCX_MIME
from app.processing.normalizer import FormatNormalizer, NormalizedDocument
from app.resilience.executor import (
    ENRICHMENT_POLICY,
    PERSISTENCE_POLICY,
    Attempt,
    RetryExecutor,
    RetryPolicy,
)
from app.schemas.documents import (
    Category,
    DocumentRecord,
    EnrichmentResult,
    ProgressEvent,
    RecordStatus,
)
from app.storage.base import DurableStore, StagingStore, StoredObject

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    STAGING     = "staging"
    ENRICHING   = "enriching"
    NORMALIZING = "normalizing"
    PERSISTING  = "persisting"
    CLEANUP     = "cleanup"
    DONE        = "done"
    DEGRADED    = "degraded"
    FAILED      = "failed"


STAGE_PERCENT: dict[PipelineStage, float] = {
    PipelineStage.STAGING:     10.0,
    PipelineStage.ENRICHING:   30.0,
    PipelineStage.NORMALIZING: 60.0,
    PipelineStage.PERSISTING:  80.0,
    PipelineStage.CLEANUP:     95.0,
    PipelineStage.DONE:        100.0,
}

# Sub-stages reported by EnrichmentClient.enrich()
ENRICHMENT_SUB_STAGE_PERCENT: dict[str, float] = {
    "extracting":  35.0,
    "language":    42.0,
    "classifying": 48.0,
    "summarizing": 52.0,
}
ENRICHMENT_DONE_PERCENT = 55.0
DURABLE_WRITTEN_PERCENT = 88.0
RECORD_CREATED_PERCENT  = 98.0

DEGRADED_TAG = "unprocessed"

TEXT_HEAVY_CHARS = 500
HIGH_CONFIDENCE  = 0.8
LOW_CONFIDENCE   = 0.5


# ---------------------------------------------------------------------------
# Request / outcome
# ---------------------------------------------------------------------------

@dataclass
class IngestionRequest:
    owner_id:     str
    filename:     str
    data:         bytes
    mime_type:    str = ""
    display_name: str | None = None


@dataclass
class IngestionOutcome:
    record:    DocumentRecord
    stage:     PipelineStage           # DONE or DEGRADED
    degraded:  bool
    canonical: bool
    progress:  list[ProgressEvent] = field(default_factory=list)


ProgressSink = Callable[[ProgressEvent], None]


class ProgressTracker:
    """Clamps percentages so a run never reports going backwards."""

    def __init__(self, sink: ProgressSink | None = None) -> None:
        self._sink = sink
        self._percent = 0.0
        self.events: list[ProgressEvent] = []

    @property
    def percent(self) -> float:
        return self._percent

    def emit(self, stage: PipelineStage, percent: float, message: str = "") -> ProgressEvent:
        self._percent = max(self._percent, min(percent, 100.0))
        event = ProgressEvent(stage=stage.value, percent=self._percent, message=message)
        self.events.append(event)
        if self._sink is not None:
            self._sink(event)
        return event


# ---------------------------------------------------------------------------
# MIME sniffing
# ---------------------------------------------------------------------------

# Checked against the first bytes of the upload; binary signatures win
# over the client-declared type.
_MAGIC_BYTES: tuple[tuple[bytes, str], ...] = (
    (b"%PDF",               "application/pdf"),
    (b"\x89PNG\r\n\x1a\n",  "image/png"),
    (b"\xff\xd8\xff",       "image/jpeg"),
    (b"GIF87a",             "image/gif"),
    (b"GIF89a",             "image/gif"),
    (b"PK\x03\x04",         "application/zip"),
)

_GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


def _looks_like_text(head: bytes) -> bool:
    if not head or b"\x00" in head:
        return False
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte char cut at the sniff boundary is still text
        return exc.start >= len(head) - 3
    return True


def sniff_mime_type(filename: str, head: bytes, declared: str = "") -> str:
    declared = (declared or "").split(";")[0].strip().lower()
    ext = PurePosixPath(filename or "").suffix.lower()

    for magic, mime in _MAGIC_BYTES:
        if head.startswith(magic):
            if mime == "application/zip" and (ext == ".docx" or declared == DOCX_MIME):
                return DOCX_MIME
            return mime

    if declared not in _GENERIC_TYPES:
        return declared

    guessed, _ = mimetypes.guess_type(filename or "")
    if guessed:
        return guessed
    if _looks_like_text(head):
        return "text/plain"
    return "application/octet-stream"


# ---------------------------------------------------------------------------
# Tags and names
# ---------------------------------------------------------------------------

def pipeline_tags(
    enrichment: EnrichmentResult | None,
    mime_type: str,
    now: datetime,
) -> list[str]:
    if enrichment is None:
        return [DEGRADED_TAG]

    tags = list(enrichment.tags)
    if enrichment.language:
        tags.append(f"lang:{enrichment.language}")
    tags.extend([str(now.year), "processed", "ai-enhanced"])
    if len(enrichment.extracted_text) > TEXT_HEAVY_CHARS:
        tags.append("text-heavy")
    if mime_type.startswith("image/"):
        tags.append("image-only")
    if enrichment.confidence >= HIGH_CONFIDENCE:
        tags.append("high-confidence")
    elif enrichment.confidence < LOW_CONFIDENCE:
        tags.append("low-confidence")
    return tags


def display_name_for(filename: str, suggested_name: str | None, explicit: str | None = None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    if suggested_name:
        stem = sanitize_name(suggested_name)
        if stem:
            return f"{stem}{PurePosixPath(filename).suffix.lower()}"
    return filename


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class IngestionOrchestrator:
    """
    Long-lived and stateless between runs; construct once at startup.
    Every collaborator is injected.
    """

    def __init__(
        self,
        staging:     StagingStore,
        durable:     DurableStore,
        metadata:    MetadataStore,
        enrichment:  EnrichmentClient,
        normalizer:  FormatNormalizer,
        executor:    RetryExecutor,
        enrichment_policy:  RetryPolicy = ENRICHMENT_POLICY,
        persistence_policy: RetryPolicy = PERSISTENCE_POLICY,
        max_upload_bytes:   int = settings.max_upload_bytes,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._staging = staging
        self._durable = durable
        self._metadata = metadata
        self._enrichment = enrichment
        self._normalizer = normalizer
        self._executor = executor
        self._enrichment_policy = enrichment_policy
        self._persistence_policy = persistence_policy
        self._max_upload_bytes = max_upload_bytes
        self._clock = clock

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def ingest(
        self,
        request: IngestionRequest,
        on_progress: ProgressSink | None = None,
    ) -> IngestionOutcome:
        self._validate(request)
        mime_type = sniff_mime_type(request.filename, request.data[:16], request.mime_type)
        progress = ProgressTracker(on_progress)

        logger.info(
            "Ingest start | owner=%s file=%s type=%s size=%d",
            request.owner_id, request.filename, mime_type, len(request.data),
        )

        # --- STAGING ------------------------------------------------------
        progress.emit(PipelineStage.STAGING, STAGE_PERCENT[PipelineStage.STAGING], "Staging original")
        try:
            staged = await self._staging.put(request.data, request.owner_id, request.filename, mime_type)
        except Exception as exc:
            logger.error("Ingest failed | stage=staging owner=%s error=%s", request.owner_id, exc)
            raise PersistenceError(f"Staging write failed: {exc}", stage=PipelineStage.STAGING.value) from exc

        try:
            outcome = await self._run(request, mime_type, progress)
        except Exception as exc:
            logger.error(
                "Ingest failed | owner=%s file=%s stage=%s error=%s",
                request.owner_id, request.filename, PipelineStage.FAILED.value, exc,
            )
            raise
        finally:
            await self._cleanup(staged, progress)

        progress.emit(PipelineStage.DONE, STAGE_PERCENT[PipelineStage.DONE], "Done")
        outcome.progress = list(progress.events)
        logger.info(
            "Ingest complete | doc=%s owner=%s stage=%s canonical=%s category=%s",
            outcome.record.id, request.owner_id, outcome.stage.value,
            outcome.canonical, outcome.record.category.value,
        )
        return outcome

    def _validate(self, request: IngestionRequest) -> None:
        if not request.owner_id or not request.owner_id.strip():
            raise ValidationError("owner_id is required", field="owner_id")
        if not request.filename or not request.filename.strip():
            raise ValidationError("filename is required", field="filename")
        if not request.data:
            raise ValidationError("Uploaded file is empty", field="file")
        if len(request.data) > self._max_upload_bytes:
            raise ValidationError(
                f"File exceeds {self._max_upload_bytes} bytes", field="file"
            )

    # ------------------------------------------------------------------
    # ENRICHING → NORMALIZING → PERSISTING
    # ------------------------------------------------------------------

    async def _run(
        self,
        request: IngestionRequest,
        mime_type: str,
        progress: ProgressTracker,
    ) -> IngestionOutcome:
        enrichment, degraded_reason = await self._enrich(request, mime_type, progress)

        progress.emit(PipelineStage.NORMALIZING, STAGE_PERCENT[PipelineStage.NORMALIZING], "Normalizing")
        normalized = await self._normalizer.normalize(request.data, mime_type, request.filename)

        record = await self._persist(request, mime_type, enrichment, degraded_reason, normalized, progress)

        degraded = enrichment is None
        return IngestionOutcome(
            record=record,
            stage=PipelineStage.DEGRADED if degraded else PipelineStage.DONE,
            degraded=degraded,
            canonical=normalized.canonical,
        )

    async def _enrich(
        self,
        request: IngestionRequest,
        mime_type: str,
        progress: ProgressTracker,
    ) -> tuple[EnrichmentResult | None, str | None]:
        progress.emit(PipelineStage.ENRICHING, STAGE_PERCENT[PipelineStage.ENRICHING], "Enriching")

        def on_attempt(attempt: Attempt) -> None:
            progress.emit(
                PipelineStage.ENRICHING,
                STAGE_PERCENT[PipelineStage.ENRICHING],
                f"Enrichment attempt {attempt.number}/{attempt.max_retries}",
            )

        def operation(attempt: Attempt):
            def report(sub_stage: str) -> None:
                attempt.report(sub_stage)
                progress.emit(
                    PipelineStage.ENRICHING,
                    ENRICHMENT_SUB_STAGE_PERCENT.get(sub_stage, STAGE_PERCENT[PipelineStage.ENRICHING]),
                    sub_stage,
                )

            return self._enrichment.enrich(request.data, mime_type, request.filename, report=report)

        try:
            result = await self._executor.execute(
                operation, self._enrichment_policy, on_progress=on_attempt, label="enrichment"
            )
        except (RetryExhaustedError, PermanentServiceError) as exc:
            logger.warning(
                "Enrichment degraded | owner=%s file=%s error=%s",
                request.owner_id, request.filename, exc,
            )
            progress.emit(PipelineStage.DEGRADED, ENRICHMENT_DONE_PERCENT, "Enrichment unavailable")
            return None, str(exc)

        progress.emit(PipelineStage.ENRICHING, ENRICHMENT_DONE_PERCENT, "Enriched")
        return result, None

    async def _persist(
        self,
        request: IngestionRequest,
        mime_type: str,
        enrichment: EnrichmentResult | None,
        degraded_reason: str | None,
        normalized: NormalizedDocument,
        progress: ProgressTracker,
    ) -> DocumentRecord:
        progress.emit(PipelineStage.PERSISTING, STAGE_PERCENT[PipelineStage.PERSISTING], "Storing document")
        try:
            stored = await self._durable.put(
                normalized.data,
                request.owner_id,
                normalized.filename,
                normalized.mime_type,
                metadata={"original-filename": request.filename, "original-type": mime_type},
            )
            url = await self._durable.url_for(stored.ref)
        except Exception as exc:
            raise PersistenceError(
                f"Durable write failed: {exc}", stage=PipelineStage.PERSISTING.value
            ) from exc
        progress.emit(PipelineStage.PERSISTING, DURABLE_WRITTEN_PERCENT, "Saving metadata")

        record = self._build_record(request, mime_type, enrichment, degraded_reason, normalized, stored, url)

        try:
            document_id = await self._executor.execute(
                lambda attempt: self._metadata.create(record),
                self._persistence_policy,
                label="metadata.create",
            )
        except (RetryExhaustedError, PermanentServiceError) as exc:
            # The record was never created; the durable object stays for operator cleanup
            logger.error(
                "Record create failed, durable object orphaned | ref=%s owner=%s error=%s",
                stored.ref, request.owner_id, exc,
            )
            raise PersistenceError(
                f"Metadata write failed: {exc}", stage=PipelineStage.PERSISTING.value
            ) from exc

        progress.emit(PipelineStage.PERSISTING, RECORD_CREATED_PERCENT, "Saved")
        return record.model_copy(update={"id": document_id})

    def _build_record(
        self,
        request: IngestionRequest,
        mime_type: str,
        enrichment: EnrichmentResult | None,
        degraded_reason: str | None,
        normalized: NormalizedDocument,
        stored: StoredObject,
        url: str,
    ) -> DocumentRecord:
        now = self._clock()
        metadata = {
            "original_filename": request.filename,
            "original_mime_type": mime_type,
            "normalization": normalized.method,
            "stored_mime_type": normalized.mime_type,
            "stored_size_bytes": stored.size_bytes,
        }

        if enrichment is None:
            metadata["degraded_reason"] = degraded_reason
            return DocumentRecord(
                id=uuid.uuid4(),
                owner_id=request.owner_id,
                display_name=display_name_for(request.filename, None, request.display_name),
                storage_ref=stored.ref,
                storage_url=url,
                mime_type=mime_type,
                size_bytes=len(request.data),
                canonical=normalized.canonical,
                status=RecordStatus.DEGRADED,
                category=Category.UNCATEGORIZED,
                tags=pipeline_tags(None, mime_type, now),
                metadata=metadata,
            )

        metadata["engine"] = enrichment.engine
        metadata["enrichment"] = enrichment.details
        return DocumentRecord(
            id=uuid.uuid4(),
            owner_id=request.owner_id,
            display_name=display_name_for(request.filename, enrichment.suggested_name, request.display_name),
            storage_ref=stored.ref,
            storage_url=url,
            mime_type=mime_type,
            size_bytes=len(request.data),
            canonical=normalized.canonical,
            status=RecordStatus.READY,
            category=enrichment.category,
            tags=pipeline_tags(enrichment, mime_type, now),
            language=enrichment.language,
            extracted_text=enrichment.extracted_text or None,
            summary=enrichment.summary,
            extracted_dates=enrichment.extracted_dates,
            suggested_name=enrichment.suggested_name,
            confidence=enrichment.field_confidence,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # CLEANUP
    # ------------------------------------------------------------------

    async def _cleanup(self, staged: StoredObject, progress: ProgressTracker) -> None:
        progress.emit(PipelineStage.CLEANUP, STAGE_PERCENT[PipelineStage.CLEANUP], "Cleaning up")
        try:
            await self._staging.delete(staged.ref)
        except Exception as exc:
            error = CleanupError(f"Staging delete failed: {exc}", ref=staged.ref)
            logger.error("Cleanup failed | ref=%s error=%s", error.ref, error)
