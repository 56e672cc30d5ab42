"""
Unit tests for the cache orchestrator.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import FetchError, OriginStatusError, OriginTransportError
from shared.metrics import MetricsCollector
from shared.test_helpers import HOUR, FrozenClock, seed_entry
from service_proxy.app.caching.keys import ResourceKey
from service_proxy.app.caching.orchestrator import CacheOrchestrator, CacheOutcome
from service_proxy.app.caching.refresh_queue import RefreshJob, RefreshQueue
from service_proxy.app.caching.store import CacheStore

A_PNG = ResourceKey.from_path("/a.png")


class TestCacheOrchestrator:
    """Test cases for CacheOrchestrator."""

    @pytest.fixture
    def clock(self):
        return FrozenClock()

    @pytest.fixture
    def cache_root(self, tmp_path):
        return tmp_path / "cache"

    @pytest.fixture
    def store(self, cache_root, clock):
        store = CacheStore(cache_root, clock=clock)
        store.ensure_root()
        return store

    @pytest.fixture
    def origin(self):
        origin = MagicMock()
        origin.fetch = AsyncMock(return_value=b"X")
        return origin

    @pytest.fixture
    def refresh_queue(self):
        return RefreshQueue(workers=1, maxsize=10)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("proxy")

    def _orchestrator(self, store, origin, refresh_queue, clock, *, expiry=72 * HOUR, refresh=24 * HOUR, **kwargs):
        return CacheOrchestrator(
            store,
            origin,
            refresh_queue,
            expiry_seconds=expiry,
            refresh_seconds=refresh,
            clock=clock,
            **kwargs
        )

    @pytest.mark.asyncio
    async def test_miss_fetches_once_and_stores(self, store, origin, refresh_queue, clock, metrics):
        """Empty store: one fetch, content served and persisted with age 0."""
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock, metrics=metrics)

        result = await orchestrator.get(A_PNG)

        assert result.content == b"X"
        assert result.outcome == CacheOutcome.MISS
        origin.fetch.assert_awaited_once_with(A_PNG)
        entry = await store.lookup(A_PNG)
        assert entry is not None
        assert entry.age == pytest.approx(0.0)
        assert metrics.registry.get_sample_value("cache_requests_total", {"outcome": "miss"}) == 1.0

    @pytest.mark.asyncio
    async def test_fresh_hit_does_not_fetch(self, store, origin, refresh_queue, clock, cache_root):
        """Entry 1h old, expiry and refresh 72h: served from store, no fetch."""
        seed_entry(cache_root, "/a.png", b"cached", modified_at=clock.now - HOUR)
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock, expiry=72 * HOUR, refresh=72 * HOUR)

        result = await orchestrator.get(A_PNG)

        assert result.content == b"cached"
        assert result.outcome == CacheOutcome.HIT
        assert result.from_cache
        origin.fetch.assert_not_awaited()
        assert refresh_queue.depth == 0

    @pytest.mark.asyncio
    async def test_upstream_404_surfaces_fetch_error_and_stores_nothing(self, store, origin, refresh_queue, clock):
        origin.fetch.side_effect = OriginStatusError(404)
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock)
        key = ResourceKey.from_path("/missing.png")

        with pytest.raises(FetchError):
            await orchestrator.get(key)

        assert await store.lookup(key) is None

    @pytest.mark.asyncio
    async def test_stale_entry_survives_failed_fill(self, store, origin, refresh_queue, clock, cache_root):
        """Entry 80h old with 72h expiry: fill runs, failure keeps the old entry."""
        location = seed_entry(cache_root, "/a.png", b"stale", modified_at=clock.now - 80 * HOUR)
        origin.fetch.side_effect = OriginTransportError("connection refused")
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock)

        with pytest.raises(OriginTransportError):
            await orchestrator.get(A_PNG)

        origin.fetch.assert_awaited_once()
        assert location.read_bytes() == b"stale"
        entry = await store.lookup(A_PNG)
        assert entry.modified_at == clock.now - 80 * HOUR

    @pytest.mark.asyncio
    async def test_stale_entry_is_refilled(self, store, origin, refresh_queue, clock, cache_root):
        seed_entry(cache_root, "/a.png", b"stale", modified_at=clock.now - 80 * HOUR)
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock)

        result = await orchestrator.get(A_PNG)

        assert result.outcome == CacheOutcome.STALE
        assert result.content == b"X"
        _, content = await store.lookup_and_read(A_PNG)
        assert content == b"X"

    @pytest.mark.asyncio
    async def test_age_equal_to_expiry_is_stale(self, store, origin, refresh_queue, clock, cache_root):
        seed_entry(cache_root, "/a.png", b"old", modified_at=clock.now - 72 * HOUR)
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock, expiry=72 * HOUR, refresh=72 * HOUR)

        result = await orchestrator.get(A_PNG)

        assert result.outcome == CacheOutcome.STALE
        origin.fetch.assert_awaited_once_with(A_PNG)

    @pytest.mark.asyncio
    async def test_age_just_below_expiry_is_served(self, store, origin, refresh_queue, clock, cache_root):
        seed_entry(cache_root, "/a.png", b"old", modified_at=clock.now - 72 * HOUR + 1)
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock, expiry=72 * HOUR, refresh=72 * HOUR)

        result = await orchestrator.get(A_PNG)

        assert result.content == b"old"
        origin.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_window_serves_old_content_and_queues_refresh(self, store, origin, refresh_queue, clock, cache_root):
        seed_entry(cache_root, "/a.png", b"old", modified_at=clock.now - 30 * HOUR)
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock)

        result = await orchestrator.get(A_PNG)

        assert result.content == b"old"
        assert result.outcome == CacheOutcome.REFRESH
        assert refresh_queue.depth == 1
        origin.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_background_refresh_fetches_exactly_once(self, store, origin, refresh_queue, clock, cache_root):
        """Requests arriving while the refresh is in flight get the old bytes."""
        seed_entry(cache_root, "/a.png", b"old", modified_at=clock.now - 30 * HOUR)
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_fetch(key):
            started.set()
            await release.wait()
            return b"new"

        origin.fetch.side_effect = slow_fetch
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock)
        await refresh_queue.start(orchestrator.refresh)

        first = await orchestrator.get(A_PNG)
        await asyncio.wait_for(started.wait(), timeout=5.0)
        second = await asyncio.wait_for(orchestrator.get(A_PNG), timeout=5.0)

        assert first.content == b"old"
        assert second.content == b"old"

        release.set()
        await asyncio.wait_for(refresh_queue.join(), timeout=5.0)
        await refresh_queue.stop()

        assert origin.fetch.await_count == 1
        entry, content = await store.lookup_and_read(A_PNG)
        assert content == b"new"
        assert entry.age == 0.0

    @pytest.mark.asyncio
    async def test_refresh_skips_when_captured_age_is_not_due(self, store, origin, refresh_queue, clock):
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock)

        await orchestrator.refresh(RefreshJob(key=A_PNG, modified_at=clock.now - HOUR))

        origin.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_failure_is_logged_not_raised(self, store, origin, refresh_queue, clock, cache_root, metrics):
        seed_entry(cache_root, "/a.png", b"old", modified_at=clock.now - 30 * HOUR)
        origin.fetch.side_effect = OriginStatusError(500)
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock, metrics=metrics)

        await orchestrator.refresh(RefreshJob(key=A_PNG, modified_at=clock.now - 30 * HOUR))

        _, content = await store.lookup_and_read(A_PNG)
        assert content == b"old"
        assert metrics.registry.get_sample_value("cache_refresh_total", {"result": "error"}) == 1.0

    @pytest.mark.asyncio
    async def test_concurrent_misses_are_coalesced(self, store, origin, refresh_queue, clock):
        release = asyncio.Event()

        async def slow_fetch(key):
            await release.wait()
            return b"X"

        origin.fetch.side_effect = slow_fetch
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock)

        tasks = [asyncio.create_task(orchestrator.get(A_PNG)) for _ in range(4)]
        await asyncio.sleep(0.05)
        release.set()
        results = await asyncio.gather(*tasks)

        assert [result.content for result in results] == [b"X"] * 4
        assert origin.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_without_coalescing_fetch_each(self, store, origin, refresh_queue, clock):
        release = asyncio.Event()

        async def slow_fetch(key):
            await release.wait()
            return b"X"

        origin.fetch.side_effect = slow_fetch
        orchestrator = self._orchestrator(store, origin, refresh_queue, clock, coalesce_fetches=False)

        tasks = [asyncio.create_task(orchestrator.get(A_PNG)) for _ in range(3)]
        await asyncio.sleep(0.05)
        release.set()
        await asyncio.gather(*tasks)

        assert origin.fetch.await_count == 3

    def test_refresh_longer_than_expiry_is_rejected(self, store, origin, refresh_queue, clock):
        with pytest.raises(ValueError):
            self._orchestrator(store, origin, refresh_queue, clock, expiry=HOUR, refresh=2 * HOUR)
