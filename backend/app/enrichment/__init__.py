"""
Enrichment Package

AI-derived metadata for stored documents: extracted text, language,
category, tags, summary, key dates and a suggested name.

Public API::

    from app.enrichment import EnrichmentClient, HuggingFaceProvider, TTLCache

    client = EnrichmentClient(provider, extractor, TTLCache(600), TTLCache(600))
    result = await client.enrich(data, "application/pdf", "scan.pdf")
"""

from app.enrichment.cache import TTLCache
from app.enrichment.client import Classification, EnrichmentClient
from app.enrichment.provider import (
    EnrichmentProvider,
    HuggingFaceProvider,
    RemoteEngineProvider,
)

__all__ = [
    "TTLCache",
    "Classification",
    "EnrichmentClient",
    "EnrichmentProvider",
    "HuggingFaceProvider",
    "RemoteEngineProvider",
]
