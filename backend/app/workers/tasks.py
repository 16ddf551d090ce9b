"""
Celery Tasks — Background Pipeline Jobs

Task: reprocess_documents
  Batch re-enrichment of documents by URL through the ReprocessingCoordinator:
  one remote batch call, falling back to sequential per-URL enrichment.

Task: sweep_staging
  Beat-scheduled (every 15 minutes). Deletes staging objects older than
  max_age_minutes that an interrupted pipeline run left behind.

Each task builds its own services and closes them before returning, so no
HTTP client or event loop outlives a task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from celery import Task

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Batch reprocessing
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.reprocess_documents",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def reprocess_documents(self: Task, *, urls: list[str], mode: str = "primary") -> dict[str, Any]:
    """Re-enrich documents by URL; returns BatchReprocessResult as JSON."""
    return run_async(_reprocess_documents_async(urls, mode))


async def _reprocess_documents_async(urls: list[str], mode: str) -> dict[str, Any]:
    from app.core.config import settings
    from app.schemas.documents import ReprocessMode
    from app.services.factory import build_services

    services = build_services(settings)
    try:
        result = await services.coordinator.reprocess_batch(urls, ReprocessMode(mode))
    finally:
        await services.aclose()

    logger.info(
        "Batch task done | urls=%d via_batch=%s ok=%d",
        len(urls), result.via_batch, sum(1 for r in result.results if r.success),
    )
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Staging sweeper — runs every 15 minutes via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.sweep_staging",
    bind=False,
    acks_late=True,
    soft_time_limit=300,
    time_limit=330,
)
def sweep_staging(max_age_minutes: int | None = None) -> dict[str, Any]:
    """Delete staging objects older than max_age_minutes; returns {deleted, errors}."""
    return run_async(_sweep_staging_async(max_age_minutes))


async def _sweep_staging_async(max_age_minutes: int | None) -> dict[str, Any]:
    from app.core.config import settings
    from app.services.sweeper import StagingSweeper
    from app.storage.factory import get_staging_store

    if max_age_minutes is None:
        max_age_minutes = settings.staging_sweep_max_age_minutes

    report = await StagingSweeper(get_staging_store()).sweep(max_age_minutes)
    return report.as_dict()
