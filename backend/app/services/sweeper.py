"""
Staging Sweeper

The orchestrator deletes every staged object it creates, but a process
killed mid-run leaves its original bytes behind. This periodic job removes
staging objects older than a grace period.

Per-object delete failures are collected in the report, never raised, so
one stuck key cannot stop the rest of the sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.storage.base import StagingStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    deleted: int = 0
    errors:  list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"deleted": self.deleted, "errors": list(self.errors)}


class StagingSweeper:

    def __init__(
        self,
        staging: StagingStore,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._staging = staging
        self._clock = clock

    async def sweep(self, max_age_minutes: int = 60) -> SweepReport:
        if max_age_minutes < 0:
            raise ValueError("max_age_minutes must be >= 0")

        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        report = SweepReport()

        for ref in await self._staging.list_older_than(cutoff):
            try:
                await self._staging.delete(ref)
            except Exception as exc:
                logger.warning("Sweep delete failed | key=%s error=%s", ref, exc)
                report.errors.append(f"{ref}: {exc}")
                continue
            report.deleted += 1

        logger.info(
            "Staging sweep | cutoff=%s deleted=%d errors=%d",
            cutoff.isoformat(), report.deleted, len(report.errors),
        )
        return report
