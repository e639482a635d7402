"""Read-through cache for balance reads.

The engine only ever talks to a ``BalanceCache``; which one is injected is the
caller's business. Every call goes through ``cache_get`` / ``cache_set`` /
``cache_invalidate`` so a slow or broken cache degrades to a database read.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog

from credit_engine.core.config import settings

logger = structlog.get_logger()


def balance_cache_key(tenant_id: Any, entity_id: Any) -> str:
    return f"credits:balance:{tenant_id}:{entity_id}"


class BalanceCache(Protocol):
    async def get(self, key: str) -> dict | None: ...

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class NullBalanceCache:
    """Cache that never hits. Default for services and tests."""

    async def get(self, key: str) -> dict | None:
        return None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None


class InMemoryBalanceCache:
    """Process-local cache with per-entry expiry. Used for single-process deployments and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, dict]] = {}  # key -> (expiry, value)

    async def get(self, key: str) -> dict | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at < time.monotonic():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        self._entries[key] = (time.monotonic() + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class RedisBalanceCache:
    def __init__(self, url: str, timeout_seconds: float) -> None:
        self._client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )

    async def get(self, key: str) -> dict | None:
        raw = await self._client.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self._client.set(key, json.dumps(value, default=str), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


async def cache_get(cache: BalanceCache, key: str) -> dict | None:
    try:
        return await asyncio.wait_for(cache.get(key), timeout=settings.BALANCE_CACHE_TIMEOUT_SECONDS)
    except Exception:
        logger.warning("credits.cache.get_failed", key=key, exc_info=True)
        return None


async def cache_set(cache: BalanceCache, key: str, value: dict) -> None:
    try:
        await asyncio.wait_for(
            cache.set(key, value, settings.BALANCE_CACHE_TTL_SECONDS),
            timeout=settings.BALANCE_CACHE_TIMEOUT_SECONDS,
        )
    except Exception:
        logger.warning("credits.cache.set_failed", key=key, exc_info=True)


async def cache_invalidate(cache: BalanceCache, *keys: str) -> None:
    for key in keys:
        try:
            await asyncio.wait_for(cache.delete(key), timeout=settings.BALANCE_CACHE_TIMEOUT_SECONDS)
        except Exception:
            logger.warning("credits.cache.invalidate_failed", key=key, exc_info=True)


_shared_cache: BalanceCache | None = None


def get_balance_cache() -> BalanceCache:
    """FastAPI dependency returning the process-wide cache."""
    global _shared_cache
    if _shared_cache is None:
        if settings.BALANCE_CACHE_ENABLED:
            _shared_cache = RedisBalanceCache(settings.REDIS_URL, settings.BALANCE_CACHE_TIMEOUT_SECONDS)
        else:
            _shared_cache = NullBalanceCache()
    return _shared_cache
