"""
Unit Tests — IngestionOrchestrator
══════════════════════════════════

Coverage targets:
  ✅ Happy path: record created only after the durable write, READY status
  ✅ Exactly one staging delete on EVERY exit path after staging succeeded
  ✅ Enrichment exhaustion / permanent fault → DEGRADED record, upload completes
  ✅ One AI operation down → its local fallback, record still READY
  ✅ Durable or metadata failure → PersistenceError, no record
  ✅ Normalization failure → original bytes stored, canonical=False
  ✅ Progress percentages never decrease and end at 100
  ✅ Validation: empty file, missing owner, oversize
  ✅ MIME sniffing and pipeline tags
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import (
    PermanentServiceError,
    PersistenceError,
    TransientServiceError,
    ValidationError,
)
from app.processing.extractor import DOCX_MIME
from app.schemas.documents import Category, EnrichmentResult, RecordStatus
from app.services.ingestion import (
    DEGRADED_TAG,
    IngestionRequest,
    PipelineStage,
    ProgressTracker,
    display_name_for,
    pipeline_tags,
    sniff_mime_type,
)

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

LONG_INVOICE = (
    b"Invoice 2024-001 for consulting services delivered in March. "
    b"Amount due: $1,250.00 payable by 15/03/2024. "
    b"Payment is expected within thirty days of the invoice date. "
    b"Late payments incur a fee of two percent per month on the outstanding balance."
)


def txt_request(data: bytes, /, **overrides) -> IngestionRequest:
    fields = {"owner_id": "user-1", "filename": "invoice.txt", "data": data, "mime_type": "text/plain"}
    fields.update(overrides)
    return IngestionRequest(**fields)


def percents(outcome_or_events) -> list[float]:
    events = getattr(outcome_or_events, "progress", outcome_or_events)
    return [e.percent for e in events]


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestIngestHappyPath:

    async def test_record_created_after_durable_write(
        self, make_orchestrator, enrichment_client, staging, durable, metadata, sample_txt_bytes,
    ):
        orchestrator = make_orchestrator(enrichment_client, clock=lambda: FIXED_NOW)
        outcome = await orchestrator.ingest(txt_request(sample_txt_bytes))

        record = outcome.record
        assert outcome.stage is PipelineStage.DONE
        assert not outcome.degraded
        assert record.status is RecordStatus.READY
        assert record.category is Category.FINANCIAL
        assert record.language == "en"
        assert record.storage_ref in durable.objects
        assert record.storage_url == f"memory://{record.storage_ref}"
        assert metadata.records[record.id].storage_ref == record.storage_ref
        assert record.mime_type == "text/plain"
        assert record.size_bytes == len(sample_txt_bytes)

    async def test_tags_and_display_name(self, make_orchestrator, enrichment_client, sample_txt_bytes):
        orchestrator = make_orchestrator(enrichment_client, clock=lambda: FIXED_NOW)
        record = (await orchestrator.ingest(txt_request(sample_txt_bytes))).record

        for tag in ("financial", "lang:en", "2024", "processed", "ai-enhanced", "high-confidence"):
            assert tag in record.tags
        assert record.display_name == "Financial_Document_15_03_2024.txt"
        assert record.extracted_dates == ["15/03/2024"]

    async def test_explicit_display_name_wins(self, orchestrator, sample_txt_bytes):
        outcome = await orchestrator.ingest(txt_request(sample_txt_bytes, display_name="  March invoice "))
        assert outcome.record.display_name == "March invoice"

    async def test_stored_artifact_is_canonical_pdf(self, orchestrator, durable, sample_txt_bytes):
        outcome = await orchestrator.ingest(txt_request(sample_txt_bytes))
        stored = durable.objects[outcome.record.storage_ref]
        assert outcome.canonical
        assert stored.content_type == "application/pdf"
        assert stored.metadata["original-filename"] == "invoice.txt"
        assert outcome.record.storage_ref.endswith("invoice.pdf")

    async def test_staging_deleted_exactly_once(self, orchestrator, staging, sample_txt_bytes):
        await orchestrator.ingest(txt_request(sample_txt_bytes))
        assert len(staging.delete_calls) == 1
        assert staging.objects == {}

    async def test_progress_is_monotonic_and_complete(self, orchestrator, sample_txt_bytes):
        seen = []
        outcome = await orchestrator.ingest(txt_request(sample_txt_bytes), on_progress=seen.append)

        values = percents(seen)
        assert values == sorted(values)
        assert values[0] == 10.0
        assert values[-1] == 100.0
        assert seen == outcome.progress
        stages = {e.stage for e in seen}
        assert {"staging", "enriching", "normalizing", "persisting", "cleanup", "done"} <= stages

    async def test_image_upload_sniffed_and_tagged(self, orchestrator, ocr, sample_png_bytes):
        outcome = await orchestrator.ingest(
            IngestionRequest("user-1", "photo.png", sample_png_bytes, "application/octet-stream")
        )
        record = outcome.record
        assert record.mime_type == "image/png"
        assert ocr.calls == 1
        assert record.category is Category.PHOTOS
        assert {"image-only", "low-confidence"} <= set(record.tags)


# ─────────────────────────────────────────────────────────────────────────────
# Partial enrichment: one AI operation down, the rest kept
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestIngestPartialEnrichment:

    @pytest.mark.parametrize("failing_op", ["summarize", "detect_language"])
    async def test_single_operation_outage_keeps_record_ready(
        self, make_orchestrator, make_client, make_provider, failing_op,
    ):
        provider = make_provider(
            fail_with=PermanentServiceError("HTTP 503 model down", service="fake"),
            fail_ops={failing_op},
        )
        outcome = await make_orchestrator(make_client(provider)).ingest(txt_request(LONG_INVOICE))

        record = outcome.record
        assert not outcome.degraded
        assert record.status is RecordStatus.READY
        assert record.category is Category.FINANCIAL
        assert record.language == "en"
        assert record.summary
        assert DEGRADED_TAG not in record.tags
        assert provider.calls.count(failing_op) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Degraded enrichment
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestIngestDegraded:

    async def test_permanent_fault_degrades_without_retry(
        self, make_orchestrator, make_client, failing_provider, staging, metadata, sample_txt_bytes,
    ):
        outcome = await make_orchestrator(make_client(failing_provider)).ingest(txt_request(sample_txt_bytes))

        record = outcome.record
        assert outcome.degraded
        assert outcome.stage is PipelineStage.DEGRADED
        assert record.status is RecordStatus.DEGRADED
        assert record.category is Category.UNCATEGORIZED
        assert record.tags == [DEGRADED_TAG]
        assert record.language is None
        assert "HTTP 401" in record.metadata["degraded_reason"]
        assert failing_provider.calls == ["detect_language", "extract_entities"]
        assert record.id in metadata.records
        assert len(staging.delete_calls) == 1

    async def test_exhausted_retries_degrade(
        self, make_orchestrator, make_client, make_provider, sleep_mock, sample_txt_bytes,
    ):
        provider = make_provider(fail_with=TransientServiceError("503 Service Unavailable"))
        seen = []
        outcome = await make_orchestrator(make_client(provider)).ingest(
            txt_request(sample_txt_bytes), on_progress=seen.append
        )

        assert outcome.degraded
        assert provider.calls.count("detect_language") == 3
        assert sleep_mock.await_count == 2
        messages = [e.message for e in seen]
        assert "Enrichment attempt 3/3" in messages
        assert any(e.stage == "degraded" for e in seen)
        assert percents(seen) == sorted(percents(seen))


# ─────────────────────────────────────────────────────────────────────────────
# Failure paths
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestIngestFailures:

    async def test_staging_failure_is_fatal_and_nothing_to_clean(
        self, orchestrator, staging, metadata, sample_txt_bytes,
    ):
        staging.put = AsyncMock(side_effect=OSError("bucket unreachable"))
        with pytest.raises(PersistenceError) as exc_info:
            await orchestrator.ingest(txt_request(sample_txt_bytes))
        assert exc_info.value.stage == "staging"
        assert staging.delete_calls == []
        assert metadata.records == {}

    async def test_durable_failure_cleans_up_and_creates_no_record(
        self, orchestrator, staging, durable, metadata, sample_txt_bytes,
    ):
        durable.put = AsyncMock(side_effect=OSError("write refused"))
        with pytest.raises(PersistenceError) as exc_info:
            await orchestrator.ingest(txt_request(sample_txt_bytes))
        assert exc_info.value.stage == "persisting"
        assert len(staging.delete_calls) == 1
        assert metadata.records == {}

    async def test_metadata_failure_retried_then_fatal(
        self, orchestrator, staging, durable, metadata, sample_txt_bytes,
    ):
        metadata.create = AsyncMock(side_effect=TransientServiceError("database unavailable"))
        with pytest.raises(PersistenceError):
            await orchestrator.ingest(txt_request(sample_txt_bytes))
        assert metadata.create.await_count == 3
        assert len(durable.objects) == 1
        assert len(staging.delete_calls) == 1

    async def test_unexpected_error_still_cleans_up(
        self, make_orchestrator, enrichment_client, staging, sample_txt_bytes,
    ):
        normalizer = MagicMock()
        normalizer.normalize = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            await make_orchestrator(enrichment_client, normalizer).ingest(txt_request(sample_txt_bytes))
        assert len(staging.delete_calls) == 1

    async def test_cleanup_failure_does_not_fail_upload(self, orchestrator, staging, sample_txt_bytes):
        staging.delete = AsyncMock(side_effect=OSError("delete refused"))
        outcome = await orchestrator.ingest(txt_request(sample_txt_bytes))
        assert outcome.record.id is not None
        staging.delete.assert_awaited_once()

    async def test_normalization_failure_stores_original(
        self, make_orchestrator, make_normalizer, enrichment_client, durable, sample_txt_bytes,
    ):
        orchestrator = make_orchestrator(enrichment_client, make_normalizer(fail=True))
        outcome = await orchestrator.ingest(txt_request(sample_txt_bytes))

        assert not outcome.canonical
        assert outcome.record.canonical is False
        assert outcome.record.metadata["normalization"] == "verbatim"
        stored = durable.objects[outcome.record.storage_ref]
        assert stored.data == sample_txt_bytes
        assert stored.content_type == "text/plain"


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestIngestValidation:

    @pytest.mark.parametrize("overrides, field", [
        ({"data": b""}, "file"),
        ({"owner_id": "  "}, "owner_id"),
        ({"filename": ""}, "filename"),
    ])
    async def test_rejected_before_staging(self, orchestrator, staging, sample_txt_bytes, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.ingest(txt_request(sample_txt_bytes, **overrides))
        assert exc_info.value.field == field
        assert staging.objects == {}

    async def test_oversize_rejected(self, make_orchestrator, enrichment_client, sample_txt_bytes):
        orchestrator = make_orchestrator(enrichment_client, max_upload_bytes=10)
        with pytest.raises(ValidationError):
            await orchestrator.ingest(txt_request(sample_txt_bytes))


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSniffMimeType:

    @pytest.mark.parametrize("filename, head, declared, expected", [
        ("a.txt", b"%PDF-1.7", "text/plain", "application/pdf"),
        ("a.bin", b"\x89PNG\r\n\x1a\n....", "", "image/png"),
        ("a.jpg", b"\xff\xd8\xff\xe0", "application/octet-stream", "image/jpeg"),
        ("letter.docx", b"PK\x03\x04rest", "application/zip", DOCX_MIME),
        ("bundle.zip", b"PK\x03\x04rest", "", "application/zip"),
        ("data.csv", b"a,b,c", "text/csv; charset=utf-8", "text/csv"),
        ("config.json", b"{\"a\": 1}", "application/octet-stream", "application/json"),
        ("README", b"plain words", "", "text/plain"),
        ("blob", b"\x00\x01\x02\x03", "", "application/octet-stream"),
    ])
    def test_sniff(self, filename, head, declared, expected):
        assert sniff_mime_type(filename, head, declared) == expected

    def test_multibyte_char_cut_at_boundary_is_text(self):
        head = "Résumé".encode("utf-8")[:2]
        assert sniff_mime_type("notes", head) == "text/plain"


@pytest.mark.unit
class TestPipelineTags:

    def test_degraded(self):
        assert pipeline_tags(None, "text/plain", FIXED_NOW) == [DEGRADED_TAG]

    def test_enriched(self):
        result = EnrichmentResult(
            category=Category.PHOTOS,
            confidence=0.3,
            tags=["photos"],
            language="fr",
            extracted_text="x" * 600,
        )
        tags = pipeline_tags(result, "image/jpeg", FIXED_NOW)
        assert tags == [
            "photos", "lang:fr", "2024", "processed", "ai-enhanced",
            "text-heavy", "image-only", "low-confidence",
        ]

    def test_display_name(self):
        assert display_name_for("scan.PDF", "Jane Doe/Invoice") == "Jane_Doe_Invoice.pdf"
        assert display_name_for("scan.pdf", None) == "scan.pdf"
        assert display_name_for("scan.pdf", "x", explicit="Mine") == "Mine"

    def test_progress_tracker_clamps(self):
        tracker = ProgressTracker()
        tracker.emit(PipelineStage.PERSISTING, 98.0)
        event = tracker.emit(PipelineStage.CLEANUP, 95.0)
        assert event.percent == 98.0
        assert tracker.emit(PipelineStage.DONE, 150.0).percent == 100.0
