"""
FastAPI dependencies.

Services are built once in the lifespan hook (app.main) and stored on
app.state; routes only ever read them through these functions, which
tests override with `app.dependency_overrides`.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from app.db.metadata_store import MetadataStore
from app.enrichment.client import EnrichmentClient
from app.services.ingestion import IngestionOrchestrator
from app.services.reprocessing import ReprocessingCoordinator


def get_orchestrator(request: Request) -> IngestionOrchestrator:
    return request.app.state.services.orchestrator


def get_coordinator(request: Request) -> ReprocessingCoordinator:
    return request.app.state.services.coordinator


def get_metadata_store(request: Request) -> MetadataStore:
    return request.app.state.services.metadata


def get_enrichment_client(request: Request) -> EnrichmentClient:
    return request.app.state.services.enrichment


Orchestrator = Annotated[IngestionOrchestrator, Depends(get_orchestrator)]
Coordinator = Annotated[ReprocessingCoordinator, Depends(get_coordinator)]
Metadata = Annotated[MetadataStore, Depends(get_metadata_store)]
Enrichment = Annotated[EnrichmentClient, Depends(get_enrichment_client)]
