"""
Unit tests for CachedQuery observers.
"""

import asyncio

import pytest

from portal.schoolsync.cache.query import CachedQuery
from portal.schoolsync.cache.store import CacheStore
from portal.schoolsync.config import RetryConfig
from portal.schoolsync.errors import HttpStatusError

PENDING = ("users", "pending")


@pytest.fixture
def store():
    return CacheStore(retry=RetryConfig(max_retries=0, base_delay=0, max_jitter=0))


class TestCachedQuery:
    """Tests for CachedQuery."""

    @pytest.mark.asyncio
    async def test_start_fetches_missing_entry(self, store):
        async def fetch(key):
            return [{"id": "u1"}]

        query = CachedQuery(store, PENDING, fetch)
        state = await query.start()
        assert state.data == [{"id": "u1"}]
        assert not state.is_loading
        assert not state.is_error
        assert query.is_active

    @pytest.mark.asyncio
    async def test_start_uses_fresh_cache(self, store):
        calls = 0

        async def fetch(key):
            nonlocal calls
            calls += 1
            return []

        store.set(PENDING, ["cached"])
        query = CachedQuery(store, PENDING, fetch)
        state = await query.start()
        assert state.data == ["cached"]
        assert calls == 0

    @pytest.mark.asyncio
    async def test_loading_while_first_fetch_in_flight(self, store):
        release = asyncio.Event()

        async def fetch(key):
            await release.wait()
            return ["data"]

        query = CachedQuery(store, PENDING, fetch)
        task = asyncio.ensure_future(query.start())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert query.state.is_loading
        release.set()
        await task
        assert not query.state.is_loading

    @pytest.mark.asyncio
    async def test_fetch_error_reported_in_state(self, store):
        async def fetch(key):
            raise HttpStatusError(500, {"message": "boom"})

        query = CachedQuery(store, PENDING, fetch)
        state = await query.start()
        assert state.is_error
        assert state.data is None

    @pytest.mark.asyncio
    async def test_on_change_receives_state(self, store):
        seen = []
        store.set(PENDING, [1])
        query = CachedQuery(store, PENDING, on_change=seen.append)
        await query.start()
        store.patch(PENDING, lambda old: [*old, 2])
        assert seen[-1].data == [1, 2]
        assert seen[-1].version == 2

    @pytest.mark.asyncio
    async def test_close_releases_subscription(self, store):
        store.set(PENDING, [])
        query = CachedQuery(store, PENDING)
        await query.start()
        assert store.has_listeners(PENDING)
        query.close()
        query.close()
        assert not store.has_listeners(PENDING)
