"""
Cache orchestration policy.

Binds lookup, fetch and write into one decision per request:

- miss: fetch from the origin, write, serve
- fresh hit (age < expiry): serve; schedule a background refresh when
  age >= refresh
- stale hit (age >= expiry): same as a miss

A failed fetch never touches the store, so an existing stale entry
survives an origin outage.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from shared.errors import FetchError, StorageError
from shared.logging import get_logger
from .keys import ResourceKey
from .refresh_queue import RefreshJob, RefreshQueue
from .single_flight import SingleFlight
from .store import CacheEntry, CacheStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from service_proxy.app.adapters.origin_client import OriginClient
    from shared.metrics import MetricsCollector


class CacheOutcome(str, Enum):
    """How a request was resolved."""
    HIT = "hit"
    REFRESH = "refresh"
    MISS = "miss"
    STALE = "stale"


@dataclass
class CacheResult:
    """Content served for a key plus the entry it came from."""
    key: ResourceKey
    content: bytes
    entry: CacheEntry
    outcome: CacheOutcome

    @property
    def from_cache(self) -> bool:
        return self.outcome in (CacheOutcome.HIT, CacheOutcome.REFRESH)


class CacheOrchestrator:
    """Decides hit, refresh or fill for each request."""

    def __init__(
        self,
        store: CacheStore,
        origin: "OriginClient",
        refresh_queue: RefreshQueue,
        *,
        expiry_seconds: float,
        refresh_seconds: float,
        coalesce_fetches: bool = True,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        if refresh_seconds > expiry_seconds:
            raise ValueError("refresh_seconds must not exceed expiry_seconds")

        self.store = store
        self.origin = origin
        self.refresh_queue = refresh_queue
        self.expiry_seconds = expiry_seconds
        self.refresh_seconds = refresh_seconds
        self.metrics = metrics
        self.logger = get_logger("proxy.orchestrator")
        self._clock = clock
        self._flights: Optional[SingleFlight] = SingleFlight() if coalesce_fetches else None

    async def get(self, key: ResourceKey) -> CacheResult:
        """Resolve ``key`` to content, filling from the origin when needed.

        Raises ``FetchError`` when a required fill cannot reach the origin and
        ``StorageError`` when fetched content cannot be committed.
        """
        cached = await self.store.lookup_and_read(key)

        if cached is None:
            self._record(CacheOutcome.MISS)
            return await self._fill(key, CacheOutcome.MISS)

        entry, content = cached
        if self.is_stale(entry.age):
            self.logger.info("Cache entry expired", key=key.path, age_seconds=round(entry.age, 3))
            self._record(CacheOutcome.STALE)
            return await self._fill(key, CacheOutcome.STALE)

        outcome = CacheOutcome.HIT
        if self.needs_refresh(entry.age):
            outcome = CacheOutcome.REFRESH
            self.schedule_refresh(entry)

        self._record(outcome)
        return CacheResult(key=key, content=content, entry=entry, outcome=outcome)

    def is_stale(self, age: float) -> bool:
        return age >= self.expiry_seconds

    def needs_refresh(self, age: float) -> bool:
        return age >= self.refresh_seconds

    def schedule_refresh(self, entry: CacheEntry) -> bool:
        """Hand ``entry`` to the refresh workers without waiting."""
        queued = self.refresh_queue.submit(RefreshJob(key=entry.key, modified_at=entry.modified_at))
        if queued:
            self.logger.info("Refreshing cache asynchronously", key=entry.key.path)
        return queued

    async def refresh(self, job: RefreshJob) -> None:
        """Background refresh handler; failures are logged, never raised."""
        age = self._clock() - job.modified_at
        if not self.needs_refresh(age):
            self._record_refresh("skipped")
            return

        try:
            await self._fetch_and_store(job.key)
        except (FetchError, StorageError) as exc:
            self.logger.warning(
                "Failed to refresh cache",
                key=job.key.path,
                code=exc.code,
                error=exc.message,
                details=exc.details,
            )
            self._record_refresh("error")
            return

        self.logger.info("Cache refreshed", key=job.key.path)
        self._record_refresh("ok")

    async def _fill(self, key: ResourceKey, outcome: CacheOutcome) -> CacheResult:
        entry, content = await self._fetch_and_store(key)
        return CacheResult(key=key, content=content, entry=entry, outcome=outcome)

    async def _fetch_and_store(self, key: ResourceKey):
        if self._flights is None:
            return await self._fetch_and_store_once(key)
        return await self._flights.do(key, lambda: self._fetch_and_store_once(key))

    async def _fetch_and_store_once(self, key: ResourceKey):
        content = await self.origin.fetch(key)
        entry = await self.store.write(key, content)
        return entry, content

    def _record(self, outcome: CacheOutcome) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_requests_total", outcome=outcome.value)

    def _record_refresh(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_refresh_total", result=result)
