"""
Unit Tests — Ensemble merge and ReprocessingCoordinator
═══════════════════════════════════════════════════════

Coverage targets:
  ✅ merge_results: selection, tie → primary, recommendation table order
  ✅ Only mutable fields change; storage_ref / owner_id stay put
  ✅ Degraded records come back READY without the "unprocessed" tag
  ✅ One engine failing in two-engine mode keeps the other's result
  ✅ Missing durable artifact falls back to the stored text
  ✅ improve_categories only touches generic categories
  ✅ improve_categories writes through the persistence retry policy
  ✅ Batch: remote call first, sequential per-URL fallback, processed = N
"""

from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock

import httpx
import pytest

from app.core.exceptions import (
    DocumentNotFoundError,
    PermanentServiceError,
    TransientServiceError,
    ValidationError,
)
from app.schemas.documents import (
    Category,
    DocumentRecord,
    EnrichmentResult,
    Recommendation,
    RecordStatus,
    ReprocessMode,
)
from app.services.reprocessing import (
    ReprocessingCoordinator,
    agreement_score,
    merge_results,
    tag_overlap,
)


def result(engine="primary", category=Category.FINANCIAL, confidence=0.8, tags=None, summary="Summary.") -> EnrichmentResult:
    return EnrichmentResult(
        engine=engine,
        category=category,
        confidence=confidence,
        tags=tags if tags is not None else ["financial", "invoice"],
        summary=summary,
    )


async def seed(metadata, durable, data: bytes, **fields) -> DocumentRecord:
    stored = await durable.put(data, "user-1", "notes.txt", "text/plain")
    values = {
        "id": uuid.uuid4(),
        "owner_id": "user-1",
        "display_name": "notes.txt",
        "storage_ref": stored.ref,
        "mime_type": "text/plain",
        "size_bytes": len(data),
        "canonical": False,
        "extracted_text": data.decode(),
        "metadata": {"original_filename": "notes.txt"},
    }
    values.update(fields)
    record = DocumentRecord(**values)
    await metadata.create(record)
    return record


@pytest.fixture
def build_coordinator(metadata, durable, executor, enrichment_client, fast_policy):
    def _build(secondary=None, handler=None, batch_url="") -> ReprocessingCoordinator:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
        return ReprocessingCoordinator(
            metadata=metadata,
            durable=durable,
            primary=enrichment_client,
            executor=executor,
            secondary=secondary,
            batch_url=batch_url,
            http_client=http_client,
            enrichment_policy=fast_policy,
            persistence_policy=fast_policy,
        )
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Ensemble
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestMergeResults:

    def test_single_result(self):
        only = result()
        ensemble = merge_results([only])
        assert ensemble.selected is only
        assert ensemble.agreement_score is None
        assert ensemble.recommendation is None

    def test_empty_is_an_error(self):
        with pytest.raises(ValueError):
            merge_results([])

    def test_confidence_gap_prefers_primary(self):
        ensemble = merge_results([result(confidence=0.9), result("secondary", confidence=0.6)])
        assert ensemble.recommendation is Recommendation.PREFER_PRIMARY
        assert ensemble.selected.engine == "primary"

    def test_confidence_gap_prefers_secondary(self):
        ensemble = merge_results([result(confidence=0.4), result("secondary", confidence=0.85)])
        assert ensemble.recommendation is Recommendation.PREFER_SECONDARY
        assert ensemble.selected.engine == "secondary"

    def test_tie_goes_to_primary(self):
        ensemble = merge_results([result(confidence=0.7), result("secondary", confidence=0.7)])
        assert ensemble.selected.engine == "primary"

    def test_extra_summary_prefers_secondary(self):
        ensemble = merge_results([result(summary=None), result("secondary", confidence=0.75)])
        assert ensemble.recommendation is Recommendation.PREFER_SECONDARY
        assert ensemble.selected.engine == "primary"

    def test_low_agreement(self):
        ensemble = merge_results([
            result(category=Category.LEGAL, tags=["contract"]),
            result("secondary", category=Category.MEDICAL, tags=["clinic"], confidence=0.75),
        ])
        assert ensemble.recommendation is Recommendation.LOW_AGREEMENT
        assert ensemble.agreement_score == 0.0

    def test_similar(self):
        ensemble = merge_results([result(), result("secondary", tags=["Invoice", "FINANCIAL"])])
        assert ensemble.recommendation is Recommendation.SIMILAR
        assert ensemble.agreement_score == 1.0

    def test_agreement_and_overlap(self):
        assert tag_overlap(["a", "B"], ["b", "c"]) == pytest.approx(1 / 3)
        assert tag_overlap([], ["a"]) == 0.0
        assert agreement_score(result(tags=["a", "b"]), result(tags=["b", "c"])) == 0.6667


# ─────────────────────────────────────────────────────────────────────────────
# Single-document reprocessing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestReprocess:

    async def test_degraded_record_becomes_ready(self, coordinator, metadata, durable, sample_txt_bytes):
        record = await seed(
            metadata, durable, sample_txt_bytes,
            status=RecordStatus.DEGRADED, tags=["unprocessed"], category=Category.UNCATEGORIZED,
        )

        ensemble = await coordinator.reprocess(record.id)

        updated = metadata.records[record.id]
        assert ensemble.selected.category is Category.FINANCIAL
        assert updated.status is RecordStatus.READY
        assert updated.category is Category.FINANCIAL
        assert "unprocessed" not in updated.tags
        assert "reprocessed" in updated.tags
        assert updated.storage_ref == record.storage_ref
        assert updated.owner_id == record.owner_id
        assert updated.metadata["original_filename"] == "notes.txt"
        assert updated.metadata["reprocess_mode"] == "primary"
        assert [e.engine for e in metadata.history[record.id]] == ["primary"]

    async def test_two_engines(self, build_coordinator, make_client, make_provider, metadata, durable, sample_txt_bytes):
        secondary = make_client(make_provider(name="other"), engine="secondary")
        record = await seed(metadata, durable, sample_txt_bytes)

        ensemble = await build_coordinator(secondary=secondary).reprocess(record.id, ReprocessMode.BOTH)

        assert [r.engine for r in ensemble.results] == ["primary", "secondary"]
        assert ensemble.recommendation is Recommendation.SIMILAR
        assert len(metadata.history[record.id]) == 2
        assert metadata.records[record.id].metadata["agreement_score"] == 1.0

    async def test_one_engine_failing_keeps_the_other(
        self, build_coordinator, make_client, failing_provider, metadata, durable, sample_txt_bytes,
    ):
        secondary = make_client(failing_provider, engine="secondary")
        record = await seed(metadata, durable, sample_txt_bytes)

        ensemble = await build_coordinator(secondary=secondary).reprocess(record.id, ReprocessMode.BOTH)

        assert [r.engine for r in ensemble.results] == ["primary"]
        assert "1 engine(s) failed" in ensemble.reason
        assert metadata.records[record.id].category is Category.FINANCIAL

    async def test_all_engines_failing_raises(
        self, build_coordinator, make_client, failing_provider, metadata, durable, sample_txt_bytes,
    ):
        secondary = make_client(failing_provider, engine="secondary")
        record = await seed(metadata, durable, sample_txt_bytes)
        with pytest.raises(PermanentServiceError):
            await build_coordinator(secondary=secondary).reprocess(record.id, ReprocessMode.SECONDARY)
        assert record.id not in metadata.history

    async def test_secondary_mode_needs_secondary_engine(self, coordinator, metadata, durable, sample_txt_bytes):
        record = await seed(metadata, durable, sample_txt_bytes)
        with pytest.raises(ValidationError):
            await coordinator.reprocess(record.id, ReprocessMode.BOTH)

    async def test_unknown_document(self, coordinator):
        with pytest.raises(DocumentNotFoundError):
            await coordinator.reprocess(uuid.uuid4())

    async def test_missing_artifact_uses_stored_text(self, coordinator, metadata, durable, sample_txt_bytes):
        record = await seed(metadata, durable, sample_txt_bytes)
        durable.objects.clear()

        ensemble = await coordinator.reprocess(record.id)
        assert ensemble.selected.details["extraction_method"] == "stored"

    async def test_reprocess_text_skips_download(self, coordinator, metadata, durable, sample_txt_bytes):
        record = await seed(metadata, durable, sample_txt_bytes)
        durable.get = AsyncMock()

        await coordinator.reprocess_text(record.id)
        durable.get.assert_not_awaited()

    async def test_reprocess_text_without_text(self, coordinator, metadata, durable, sample_txt_bytes):
        record = await seed(metadata, durable, sample_txt_bytes, extracted_text=None)
        with pytest.raises(ValidationError):
            await coordinator.reprocess_text(record.id)


# ─────────────────────────────────────────────────────────────────────────────
# Category improvement
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestImproveCategories:

    async def test_only_generic_categories_are_touched(self, coordinator, metadata, durable):
        improvable = await seed(metadata, durable, b"Invoice total due", category=Category.PERSONAL)
        hopeless = await seed(metadata, durable, b"hello there", category=Category.UNCATEGORIZED)
        settled = await seed(metadata, durable, b"Invoice", category=Category.LEGAL)

        report = await coordinator.improve_categories("user-1")

        assert (report.processed, report.improved, report.errors) == (2, 1, [])
        assert metadata.records[improvable.id].category is Category.FINANCIAL
        assert "financial" in metadata.records[improvable.id].tags
        assert metadata.records[hopeless.id].category is Category.UNCATEGORIZED
        assert metadata.records[settled.id].category is Category.LEGAL

    async def test_update_errors_are_reported(self, coordinator, metadata, durable):
        record = await seed(metadata, durable, b"Invoice total due", category=Category.PERSONAL)
        metadata.update = AsyncMock(side_effect=RuntimeError("db down"))

        report = await coordinator.improve_categories("user-1")

        assert report.improved == 0
        assert len(report.errors) == 1
        assert report.errors[0].startswith(f"{record.id}: ")
        assert "db down" in report.errors[0]
        # Unclassified fault: first attempt plus one retry
        assert metadata.update.await_count == 2

    async def test_rejected_update_is_not_retried(self, coordinator, metadata, durable):
        record = await seed(metadata, durable, b"Invoice total due", category=Category.PERSONAL)
        metadata.update = AsyncMock(side_effect=ValidationError("owner_id is immutable", field="owner_id"))

        report = await coordinator.improve_categories("user-1")

        assert report.errors == [f"{record.id}: owner_id is immutable"]
        assert metadata.update.await_count == 1

    async def test_transient_update_failure_is_retried(self, coordinator, metadata, durable, sleep_mock):
        record = await seed(metadata, durable, b"Invoice total due", category=Category.PERSONAL)
        real_update = metadata.update
        failures = [TransientServiceError("503 Service Unavailable")]

        async def flaky_update(document_id, patch):
            if failures:
                raise failures.pop()
            return await real_update(document_id, patch)

        metadata.update = AsyncMock(side_effect=flaky_update)

        report = await coordinator.improve_categories("user-1")

        assert (report.improved, report.errors) == (1, [])
        assert metadata.update.await_count == 2
        assert metadata.records[record.id].category is Category.FINANCIAL
        sleep_mock.assert_awaited_once()


# ─────────────────────────────────────────────────────────────────────────────
# Batch
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestReprocessBatch:

    URLS = ["https://files.test/a/invoice.txt", "https://files.test/b/missing.txt"]

    async def test_remote_batch_call(self, build_coordinator):
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={
                "results": [{"url": u, "success": True} for u in self.URLS],
                "processed": 2,
            })

        batch = await build_coordinator(handler=handler, batch_url="https://batch.test/run").reprocess_batch(self.URLS)

        assert batch.via_batch
        assert batch.processed == 2
        assert sent == {"urls": self.URLS, "mode": "primary"}

    async def test_fallback_processes_every_url(self, build_coordinator, sample_txt_bytes):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "batch.test":
                return httpx.Response(503)
            if request.url.path.endswith("invoice.txt"):
                return httpx.Response(200, content=sample_txt_bytes, headers={"content-type": "text/plain; charset=utf-8"})
            return httpx.Response(404)

        batch = await build_coordinator(handler=handler, batch_url="https://batch.test/run").reprocess_batch(self.URLS)

        assert not batch.via_batch
        assert batch.processed == len(self.URLS)
        ok, missing = batch.results
        assert ok.success and ok.result.category is Category.FINANCIAL
        assert not missing.success and "404" in missing.error

    async def test_no_batch_url_goes_straight_to_per_url(self, build_coordinator, sample_txt_bytes):
        calls = []

        def handler(request):
            calls.append(request.method)
            return httpx.Response(200, content=sample_txt_bytes, headers={"content-type": "text/plain"})

        batch = await build_coordinator(handler=handler).reprocess_batch(self.URLS[:1])
        assert calls == ["GET"]
        assert batch.results[0].success

    async def test_empty_batch_rejected(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.reprocess_batch([])
