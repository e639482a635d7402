"""Tests for the balance cache wrappers and the read-through balance lookup."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

from credit_engine.core.cache import (
    InMemoryBalanceCache,
    NullBalanceCache,
    balance_cache_key,
    cache_get,
    cache_invalidate,
    cache_set,
)
from credit_engine.core.config import settings
from credit_engine.services.balance_store import get_balance
from tests.conftest import fund


class TestInMemoryCache:
    async def test_set_get_delete(self):
        cache = InMemoryBalanceCache()
        await cache.set("k", {"a": 1}, ttl_seconds=30)

        assert await cache.get("k") == {"a": 1}
        await cache.delete("k")
        assert await cache.get("k") is None

    async def test_expired_entry_is_dropped(self):
        cache = InMemoryBalanceCache()
        await cache.set("k", {"a": 1}, ttl_seconds=-1)
        assert await cache.get("k") is None

    async def test_null_cache_never_hits(self):
        cache = NullBalanceCache()
        await cache.set("k", {"a": 1}, ttl_seconds=30)
        assert await cache.get("k") is None


class TestFailureTolerance:
    async def test_broken_cache_reads_as_miss(self):
        cache = AsyncMock()
        cache.get.side_effect = ConnectionError("redis down")
        assert await cache_get(cache, "k") is None

    async def test_broken_cache_writes_are_swallowed(self):
        cache = AsyncMock()
        cache.set.side_effect = ConnectionError("redis down")
        cache.delete.side_effect = ConnectionError("redis down")

        await cache_set(cache, "k", {"a": 1})
        await cache_invalidate(cache, "k", "j")

        assert cache.delete.await_count == 2

    async def test_slow_cache_times_out(self, monkeypatch):
        monkeypatch.setattr(settings, "BALANCE_CACHE_TIMEOUT_SECONDS", 0.01)

        async def slow_get(key):
            await asyncio.sleep(1)
            return {"never": True}

        cache = AsyncMock()
        cache.get.side_effect = slow_get
        assert await cache_get(cache, "k") is None


class TestReadThrough:
    async def test_second_read_is_served_from_cache(self, db, tenant_id):
        cache = InMemoryBalanceCache()
        await fund(db, tenant_id, 50)

        first = await get_balance(db, tenant_id, cache=cache)
        second = await get_balance(db, tenant_id, cache=cache)

        assert not first.cached
        assert second.cached
        assert second == first

    async def test_database_used_when_cache_is_down(self, db, tenant_id):
        cache = AsyncMock()
        cache.get.side_effect = ConnectionError("redis down")
        cache.set.side_effect = ConnectionError("redis down")
        await fund(db, tenant_id, 50)

        view = await get_balance(db, tenant_id, cache=cache)

        assert view.available_credits == Decimal("50")

    async def test_corrupt_entry_falls_back_to_database(self, db, tenant_id):
        cache = InMemoryBalanceCache()
        await fund(db, tenant_id, 50)
        await cache.set(balance_cache_key(tenant_id, tenant_id), {"tenant_id": "garbage"}, ttl_seconds=30)

        view = await get_balance(db, tenant_id, cache=cache)

        assert not view.cached
        assert view.available_credits == Decimal("50")
