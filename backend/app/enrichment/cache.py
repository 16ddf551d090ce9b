"""
Result Cache — TTL-bounded memoization in front of the Enrichment Client.

Used for translation results (key: text, source language, target language)
and the supported-language list (single key).

Semantics:
  - get() within the TTL window returns the stored value; nothing upstream
    is called.
  - After expiry, get_or_refresh() calls the loader once and *replaces*
    the entry with a new CacheEntry. Entries are immutable.
  - Concurrent misses of the same key share one loader call: the first
    caller loads, later callers await its result (or its exception). A
    cancelled load is retried by the next waiter.

One instance is constructed at startup and injected into the client;
clear() exists for tests and operator-triggered invalidation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 10 * 60


@dataclass(frozen=True)
class CacheEntry:
    key:        Hashable
    value:      Any
    written_at: float
    ttl:        float

    def is_fresh(self, now: float) -> bool:
        return now - self.written_at < self.ttl


class TTLCache:

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._name = name
        self._entries: dict[Hashable, CacheEntry] = {}
        self._pending: dict[Hashable, asyncio.Future] = {}

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, written_at=self._clock(), ttl=self._ttl)

    async def get_or_refresh(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        while True:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                logger.debug("Cache hit | cache=%s", self._name)
                return entry.value

            pending = self._pending.get(key)
            if pending is None:
                break
            try:
                logger.debug("Cache refresh in flight, waiting | cache=%s", self._name)
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # The loading caller was cancelled; take over the refresh.

        logger.debug("Cache %s | cache=%s", "expired" if entry else "miss", self._name)
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()  # mark retrieved; waiters re-raise it
            raise
        else:
            self.set(key, value)
            future.set_result(value)
            return value
        finally:
            if self._pending.get(key) is future:
                del self._pending[key]

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Cache cleared | cache=%s", self._name)

    def __len__(self) -> int:
        return len(self._entries)
