"""
Shared key set cache.

One cache instance is shared by every verification in a process. Entries live
for a fixed TTL measured from the fetch that produced them. Concurrent misses
for the same authority join a single in-flight fetch; a failed fetch leaves
nothing behind, so the next lookup tries again.
"""

import asyncio
import time
from typing import Callable, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector

from .fetcher import JWKSFetcher
from .models import CacheEntry, KeySet

logger = get_logger("auth.jwks.cache")


class KeySetCache:
    """TTL cache of key sets keyed by authority URL."""

    def __init__(
        self,
        fetcher: JWKSFetcher,
        *,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.fetcher = fetcher
        self.ttl = ttl
        self.clock = clock
        self.metrics = metrics or fetcher.metrics or get_metrics_collector("auth")
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    async def get(self, authority_url: str) -> KeySet:
        """Return the key set for ``authority_url``, fetching it when stale.

        Raises the fetcher's KeySetFetchError when no fresh entry exists and
        the fetch fails. A stale entry is never served.
        """
        entry = self._entries.get(authority_url)
        if entry is not None and self.clock() < entry.expires_at:
            self.metrics.increment_counter("jwks_cache_total", result="hit")
            return entry.key_set

        task = self._inflight.get(authority_url)
        if task is None:
            self.metrics.increment_counter("jwks_cache_total", result="miss")
            task = asyncio.ensure_future(self._refresh(authority_url))
            self._inflight[authority_url] = task
            task.add_done_callback(lambda done, url=authority_url: self._forget(url, done))
        else:
            self.metrics.increment_counter("jwks_cache_total", result="coalesced")

        # A cancelled caller must not cancel the fetch other callers are awaiting.
        return await asyncio.shield(task)

    async def _refresh(self, authority_url: str) -> KeySet:
        key_set = await self.fetcher.fetch(authority_url)
        self._entries[authority_url] = CacheEntry(key_set=key_set, expires_at=self.clock() + self.ttl)
        logger.debug("Key set cached", authority_url=authority_url, kids=key_set.kids, ttl=self.ttl)
        return key_set

    def _forget(self, authority_url: str, task: asyncio.Future) -> None:
        if self._inflight.get(authority_url) is task:
            del self._inflight[authority_url]
        # Retrieve the exception so an unawaited failure is not reported by the loop.
        if not task.cancelled():
            task.exception()

    def peek(self, authority_url: str) -> Optional[KeySet]:
        """Return the cached key set without fetching, fresh or not."""
        entry = self._entries.get(authority_url)
        return entry.key_set if entry is not None else None

    def invalidate(self, authority_url: str) -> bool:
        """Drop one authority's entry. The next lookup refetches."""
        removed = self._entries.pop(authority_url, None) is not None
        if removed:
            logger.info("Key set invalidated", authority_url=authority_url)
        return removed

    def clear(self) -> None:
        """Drop every entry."""
        self._entries.clear()
        logger.info("Key set cache cleared")

    def __len__(self) -> int:
        return len(self._entries)
