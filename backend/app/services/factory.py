"""
Service Factory

Builds the long-lived pipeline services from Settings. The API lifespan
hook and the Celery tasks both go through build_services(), so the two
processes wire collaborators identically.

    services = build_services(settings)
    outcome = await services.orchestrator.ingest(request)
    await services.aclose()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.core.config import Settings
from app.db.metadata_store import InMemoryMetadataStore, MetadataStore, SqlMetadataStore
from app.enrichment.cache import TTLCache
from app.enrichment.client import EnrichmentClient
from app.enrichment.provider import EnrichmentProvider, HuggingFaceProvider, RemoteEngineProvider
from app.processing.extractor import TextExtractor
from app.processing.normalizer import FormatNormalizer
from app.processing.ocr import get_ocr_strategy
from app.resilience.executor import RetryExecutor, policies
from app.services.ingestion import IngestionOrchestrator
from app.services.reprocessing import ReprocessingCoordinator
from app.services.sweeper import StagingSweeper
from app.storage.base import DurableStore, StagingStore
from app.storage.factory import get_durable_store, get_staging_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    staging:      StagingStore
    durable:      DurableStore
    metadata:     MetadataStore
    enrichment:   EnrichmentClient
    orchestrator: IngestionOrchestrator
    coordinator:  ReprocessingCoordinator
    sweeper:      StagingSweeper
    providers:    list[EnrichmentProvider] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.coordinator.aclose()
        for provider in self.providers:
            await provider.aclose()


def get_metadata_store(settings: Settings) -> MetadataStore:
    backend = settings.metadata_backend.lower()

    if backend == "sql":
        from app.db.session import AsyncSessionLocal
        return SqlMetadataStore(AsyncSessionLocal)

    if backend == "memory":
        return InMemoryMetadataStore()

    raise ValueError(
        f"Unknown metadata backend: '{backend}'. "
        f"Valid options: 'sql', 'memory'"
    )


def build_services(settings: Settings) -> Services:
    staging = get_staging_store()
    durable = get_durable_store()
    metadata = get_metadata_store(settings)
    executor = RetryExecutor()
    enrichment_policy, persistence_policy = policies(settings)

    extractor = TextExtractor(get_ocr_strategy(settings.ocr_backend, settings.aws_region))
    # Shared by both engines: a translation or language list is engine-agnostic
    translation_cache = TTLCache(settings.cache_ttl_seconds, name="translation")
    language_cache = TTLCache(settings.cache_ttl_seconds, name="languages")

    primary_provider = HuggingFaceProvider(
        api_token=settings.hf_api_token,
        base_url=settings.hf_inference_url,
        language_model=settings.hf_language_model,
        ner_model=settings.hf_ner_model,
        classification_model=settings.hf_classification_model,
        summarization_model=settings.hf_summarization_model,
        translation_model=settings.hf_translation_model,
        timeout=settings.enrichment_http_timeout,
    )
    providers: list[EnrichmentProvider] = [primary_provider]
    primary = EnrichmentClient(
        primary_provider, extractor, translation_cache, language_cache,
        max_analyzable_chars=settings.max_analyzable_chars,
        engine="primary",
    )

    secondary: EnrichmentClient | None = None
    if settings.two_engine_enabled:
        secondary_provider = RemoteEngineProvider(
            settings.secondary_engine_url,
            api_key=settings.secondary_engine_api_key,
            timeout=settings.enrichment_http_timeout,
        )
        providers.append(secondary_provider)
        secondary = EnrichmentClient(
            secondary_provider, extractor, translation_cache, language_cache,
            max_analyzable_chars=settings.max_analyzable_chars,
            engine="secondary",
        )

    orchestrator = IngestionOrchestrator(
        staging=staging,
        durable=durable,
        metadata=metadata,
        enrichment=primary,
        normalizer=FormatNormalizer(),
        executor=executor,
        enrichment_policy=enrichment_policy,
        persistence_policy=persistence_policy,
        max_upload_bytes=settings.max_upload_bytes,
    )
    coordinator = ReprocessingCoordinator(
        metadata=metadata,
        durable=durable,
        primary=primary,
        executor=executor,
        secondary=secondary,
        batch_url=settings.batch_reprocess_url,
        enrichment_policy=enrichment_policy,
        persistence_policy=persistence_policy,
    )

    logger.info(
        "Services built | storage=%s metadata=%s ocr=%s two_engine=%s batch=%s",
        settings.storage_backend, settings.metadata_backend, settings.ocr_backend,
        settings.two_engine_enabled, bool(settings.batch_reprocess_url),
    )
    return Services(
        staging=staging,
        durable=durable,
        metadata=metadata,
        enrichment=primary,
        orchestrator=orchestrator,
        coordinator=coordinator,
        sweeper=StagingSweeper(staging),
        providers=providers,
    )
