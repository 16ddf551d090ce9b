"""
Reprocessing Coordinator

Re-runs enrichment for documents that are already stored, on one or two
independent engines.

  reprocess(id, mode)          durable bytes → engine(s) → ensemble → update
  reprocess_text(id, mode)     same, from the stored extracted_text
  improve_categories(owner)    keyword re-classification of generic records
  reprocess_batch(urls, mode)  one remote batch call, else sequential per-URL

Ensemble (two-engine mode):
  selected        higher confidence; ties go to the first engine (primary)
  agreement       0.5 × (categories equal) + 0.5 × Jaccard(lower-cased tags)
  recommendation  first matching row:
                    confidence gap > 0.2          → prefer the more confident
                    only secondary has a summary  → prefer_secondary
                    agreement < 0.3               → low_agreement (secondary
                                                    is the tiebreaker)
                    otherwise                     → similar

Updates touch only mutable record fields; storage_ref and owner_id never
change. Every engine result is written to the reprocessing history.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from urllib.parse import urlparse

import httpx

from app.core.exceptions import DocumentNotFoundError, ValidationError
from app.db.metadata_store import MetadataStore, ReprocessingEntry
from app.enrichment.classification import classify_by_keywords
from app.enrichment.client import EnrichmentClient
from app.resilience.executor import ENRICHMENT_POLICY, PERSISTENCE_POLICY, RetryExecutor, RetryPolicy
from app.schemas.documents import (
    GENERIC_CATEGORIES,
    BatchItemResult,
    BatchReprocessResult,
    CategoryImprovementReport,
    DocumentRecord,
    EnrichmentResult,
    EnsembleResult,
    Recommendation,
    RecordStatus,
    ReprocessMode,
)
from app.services.ingestion import DEGRADED_TAG
from app.storage.base import DurableStore

logger = logging.getLogger(__name__)

CONFIDENCE_GAP = 0.2
LOW_AGREEMENT = 0.3


# ---------------------------------------------------------------------------
# Ensemble
# ---------------------------------------------------------------------------

def tag_overlap(first: list[str], second: list[str]) -> float:
    """Jaccard similarity of lower-cased tag sets; 0.0 when either is empty."""
    a = {t.lower() for t in first}
    b = {t.lower() for t in second}
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def agreement_score(primary: EnrichmentResult, secondary: EnrichmentResult) -> float:
    category_match = 0.5 if primary.category == secondary.category else 0.0
    return round(category_match + 0.5 * tag_overlap(primary.tags, secondary.tags), 4)


def merge_results(
    results: list[EnrichmentResult],
    confidence_gap: float = CONFIDENCE_GAP,
) -> EnsembleResult:
    if not results:
        raise ValueError("merge_results() needs at least one result")
    if len(results) == 1:
        return EnsembleResult(selected=results[0], results=results, reason="Single engine")

    primary, secondary = results[0], results[1]
    selected = secondary if secondary.confidence > primary.confidence else primary
    agreement = agreement_score(primary, secondary)
    gap = abs(primary.confidence - secondary.confidence)

    if gap > confidence_gap:
        if primary.confidence > secondary.confidence:
            recommendation = Recommendation.PREFER_PRIMARY
            reason = (
                f"{primary.engine} has higher confidence "
                f"({primary.confidence:.0%} vs {secondary.confidence:.0%})"
            )
        else:
            recommendation = Recommendation.PREFER_SECONDARY
            reason = (
                f"{secondary.engine} has higher confidence "
                f"({secondary.confidence:.0%} vs {primary.confidence:.0%})"
            )
    elif secondary.summary and not primary.summary:
        recommendation = Recommendation.PREFER_SECONDARY
        reason = f"{secondary.engine} provides an additional summary"
    elif agreement < LOW_AGREEMENT:
        recommendation = Recommendation.LOW_AGREEMENT
        reason = f"Engines disagree significantly; {secondary.engine} breaks the tie"
    else:
        recommendation = Recommendation.SIMILAR
        reason = "Both engines provided similar results"

    return EnsembleResult(
        selected=selected,
        results=results,
        agreement_score=agreement,
        recommendation=recommendation,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class ReprocessingCoordinator:

    def __init__(
        self,
        metadata:  MetadataStore,
        durable:   DurableStore,
        primary:   EnrichmentClient,
        executor:  RetryExecutor,
        secondary: EnrichmentClient | None = None,
        batch_url: str = "",
        http_client: httpx.AsyncClient | None = None,
        enrichment_policy:  RetryPolicy = ENRICHMENT_POLICY,
        persistence_policy: RetryPolicy = PERSISTENCE_POLICY,
    ) -> None:
        self._metadata = metadata
        self._durable = durable
        self._primary = primary
        self._secondary = secondary
        self._executor = executor
        self._batch_url = batch_url
        self._http = http_client or httpx.AsyncClient(timeout=60.0)
        self._enrichment_policy = enrichment_policy
        self._persistence_policy = persistence_policy

    async def aclose(self) -> None:
        await self._http.aclose()

    def _engines(self, mode: ReprocessMode) -> list[EnrichmentClient]:
        if mode is ReprocessMode.PRIMARY:
            return [self._primary]
        if self._secondary is None:
            raise ValidationError(f"Reprocess mode '{mode.value}' needs a secondary engine", field="mode")
        if mode is ReprocessMode.SECONDARY:
            return [self._secondary]
        return [self._primary, self._secondary]

    # ------------------------------------------------------------------
    # Engine fan-out
    # ------------------------------------------------------------------

    async def _run_engines(self, mode: ReprocessMode, call) -> EnsembleResult:
        """
        Run `call(client)` on every engine of `mode` concurrently. One engine
        failing in two-engine mode leaves the other's result standing.
        """
        engines = self._engines(mode)
        outcomes = await asyncio.gather(
            *(
                self._executor.execute(
                    lambda attempt, client=client: call(client, attempt),
                    self._enrichment_policy,
                    label=f"reprocess.{client.engine}",
                )
                for client in engines
            ),
            return_exceptions=True,
        )

        results: list[EnrichmentResult] = []
        errors: list[BaseException] = []
        for client, outcome in zip(engines, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Engine failed | engine=%s error=%s", client.engine, outcome)
                errors.append(outcome)
            else:
                results.append(outcome)

        if not results:
            raise errors[0]

        ensemble = merge_results(results)
        if errors:
            ensemble.reason = f"{ensemble.reason}; {len(errors)} engine(s) failed: {errors[0]}"
        return ensemble

    async def _ensemble_for_bytes(
        self,
        data: bytes,
        mime_type: str,
        filename: str,
        mode: ReprocessMode,
    ) -> EnsembleResult:
        return await self._run_engines(
            mode,
            lambda client, attempt: client.enrich(data, mime_type, filename, report=attempt.report),
        )

    async def _ensemble_for_text(
        self,
        text: str,
        mime_type: str,
        filename: str,
        mode: ReprocessMode,
    ) -> EnsembleResult:
        return await self._run_engines(
            mode,
            lambda client, attempt: client.enrich_text(text, mime_type, filename, report=attempt.report),
        )

    # ------------------------------------------------------------------
    # Single document
    # ------------------------------------------------------------------

    async def _load(self, document_id: uuid.UUID) -> DocumentRecord:
        record = await self._metadata.get(document_id)
        if record is None:
            raise DocumentNotFoundError(document_id)
        return record

    async def reprocess(self, document_id: uuid.UUID, mode: ReprocessMode = ReprocessMode.PRIMARY) -> EnsembleResult:
        record = await self._load(document_id)
        filename = record.metadata.get("original_filename", record.display_name)
        logger.info("Reprocess start | doc=%s mode=%s", document_id, mode.value)

        try:
            data = await self._durable.get(record.storage_ref)
        except FileNotFoundError:
            logger.warning("Stored artifact missing, using stored text | doc=%s ref=%s", document_id, record.storage_ref)
            return await self._reprocess_from_text(record, mode)

        mime_type = "application/pdf" if record.canonical else record.mime_type
        ensemble = await self._ensemble_for_bytes(data, mime_type, filename, mode)
        await self._apply(record, ensemble, mode)
        return ensemble

    async def reprocess_text(self, document_id: uuid.UUID, mode: ReprocessMode = ReprocessMode.PRIMARY) -> EnsembleResult:
        record = await self._load(document_id)
        logger.info("Reprocess from text | doc=%s mode=%s", document_id, mode.value)
        return await self._reprocess_from_text(record, mode)

    async def _reprocess_from_text(self, record: DocumentRecord, mode: ReprocessMode) -> EnsembleResult:
        if not record.extracted_text:
            raise ValidationError("Document has no stored text to reprocess", field="extracted_text")
        filename = record.metadata.get("original_filename", record.display_name)
        ensemble = await self._ensemble_for_text(record.extracted_text, record.mime_type, filename, mode)
        await self._apply(record, ensemble, mode)
        return ensemble

    async def _apply(self, record: DocumentRecord, ensemble: EnsembleResult, mode: ReprocessMode) -> None:
        selected = ensemble.selected
        tags = [t for t in record.tags if t != DEGRADED_TAG] + selected.tags + ["reprocessed"]

        patch: dict = {
            "category": selected.category,
            "tags": list(dict.fromkeys(tags)),
            "summary": selected.summary or record.summary,
            "confidence": {**record.confidence, **selected.field_confidence},
            "status": RecordStatus.READY,
            "metadata": {
                "reprocessed_at": datetime.now(timezone.utc).isoformat(),
                "reprocess_mode": mode.value,
                "reprocess_engine": selected.engine,
                "agreement_score": ensemble.agreement_score,
                "recommendation": ensemble.recommendation.value if ensemble.recommendation else None,
                "recommendation_reason": ensemble.reason,
            },
        }
        if selected.language:
            patch["language"] = selected.language
        if selected.extracted_dates:
            patch["extracted_dates"] = selected.extracted_dates
        if selected.suggested_name:
            patch["suggested_name"] = selected.suggested_name

        await self._executor.execute(
            lambda attempt: self._metadata.update(record.id, patch),
            self._persistence_policy,
            label="metadata.update",
        )

        for result in ensemble.results:
            await self._metadata.record_reprocessing(
                record.id,
                ReprocessingEntry(
                    engine=result.engine,
                    category=result.category.value,
                    confidence=result.confidence,
                    tags=result.tags,
                    agreement_score=ensemble.agreement_score,
                    recommendation=ensemble.recommendation.value if ensemble.recommendation else None,
                ),
            )

        logger.info(
            "Reprocess complete | doc=%s category=%s engine=%s agreement=%s recommendation=%s",
            record.id, selected.category.value, selected.engine,
            ensemble.agreement_score, ensemble.recommendation,
        )

    # ------------------------------------------------------------------
    # Category improvement sweep
    # ------------------------------------------------------------------

    async def improve_categories(self, owner_id: str) -> CategoryImprovementReport:
        report = CategoryImprovementReport()

        for record in await self._metadata.list_for_owner(owner_id):
            if record.category.value not in GENERIC_CATEGORIES:
                continue
            report.processed += 1

            text = " ".join(filter(None, [record.extracted_text, record.summary, record.display_name]))
            category, confidence = classify_by_keywords(text, record.display_name, record.mime_type)
            if category.value in GENERIC_CATEGORIES:
                continue

            patch = {
                "category": category,
                "tags": list(dict.fromkeys([*record.tags, category.value])),
                "confidence": {**record.confidence, "category": confidence},
                "metadata": {"category_improved_at": datetime.now(timezone.utc).isoformat()},
            }
            try:
                await self._executor.execute(
                    lambda attempt: self._metadata.update(record.id, patch),
                    self._persistence_policy,
                    label="metadata.update",
                )
            except Exception as exc:
                logger.warning("Category improvement failed | doc=%s error=%s", record.id, exc)
                report.errors.append(f"{record.id}: {exc}")
                continue
            report.improved += 1

        logger.info(
            "Category sweep | owner=%s processed=%d improved=%d errors=%d",
            owner_id, report.processed, report.improved, len(report.errors),
        )
        return report

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def reprocess_batch(
        self,
        urls: list[str],
        mode: ReprocessMode = ReprocessMode.PRIMARY,
    ) -> BatchReprocessResult:
        if not urls:
            raise ValidationError("At least one URL is required", field="urls")
        self._engines(mode)

        if self._batch_url:
            try:
                resp = await self._http.post(self._batch_url, json={"urls": urls, "mode": mode.value})
                resp.raise_for_status()
                result = BatchReprocessResult.model_validate(resp.json())
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "Batch reprocess failed, falling back to per-document | urls=%d error=%s",
                    len(urls), exc,
                )
            else:
                logger.info("Batch reprocess ok | urls=%d processed=%d", len(urls), result.processed)
                return result.model_copy(update={"via_batch": True})

        # Sequential on purpose: the provider is already struggling
        results = [await self._reprocess_url(url, mode) for url in urls]
        logger.info(
            "Per-document reprocess done | urls=%d ok=%d",
            len(urls), sum(1 for r in results if r.success),
        )
        return BatchReprocessResult(results=results, processed=len(urls), via_batch=False)

    async def _reprocess_url(self, url: str, mode: ReprocessMode) -> BatchItemResult:
        try:
            resp = await self._http.get(url)
            resp.raise_for_status()
            mime_type = resp.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
            filename = PurePosixPath(urlparse(url).path).name or "document"
            ensemble = await self._ensemble_for_bytes(resp.content, mime_type, filename, mode)
        except Exception as exc:
            logger.warning("Per-document reprocess failed | url=%s error=%s", url, exc)
            return BatchItemResult(url=url, success=False, error=str(exc))
        return BatchItemResult(url=url, success=True, result=ensemble.selected)
