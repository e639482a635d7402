"""Periodic credit expiry tasks.

Runs on the 'credits' queue. The sweep is idempotent, so an overlapping or
repeated run only finds grants that are still unprocessed.
"""

import asyncio

from credit_engine.core.cache import NullBalanceCache, RedisBalanceCache
from credit_engine.core.config import settings
from credit_engine.core.database import worker_async_session
from credit_engine.workers.celery_app import celery_app


def _worker_cache():
    # Each task owns its event loop, so the API's shared client cannot be reused
    if settings.BALANCE_CACHE_ENABLED:
        return RedisBalanceCache(settings.REDIS_URL, settings.BALANCE_CACHE_TIMEOUT_SECONDS)
    return NullBalanceCache()


@celery_app.task(name="tasks.credit_expiry_sweep", queue="credits", soft_time_limit=600, time_limit=660)
def credit_expiry_sweep(batch_size: int = 500):
    """Expire lapsed credit grants."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_execute_sweep(batch_size))
    finally:
        loop.close()


async def _execute_sweep(batch_size: int) -> dict:
    from credit_engine.services.expiry_service import process_expired_credits

    cache = _worker_cache()
    try:
        async with worker_async_session() as session:
            result = await process_expired_credits(session, cache=cache, batch_size=batch_size)
    finally:
        if isinstance(cache, RedisBalanceCache):
            await cache.close()
    return {
        "expired_count": result["expired_count"],
        "total_expired": str(result["total_expired"]),
        "affected_balances": result["affected_balances"],
    }


@celery_app.task(name="tasks.credit_expiry_warnings", queue="credits", soft_time_limit=300, time_limit=360)
def credit_expiry_warnings(days_ahead: int | None = None):
    """Notify tenants about credits lapsing soon."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_execute_warnings(days_ahead))
    finally:
        loop.close()


async def _execute_warnings(days_ahead: int | None) -> dict:
    from credit_engine.services.expiry_service import send_expiry_warnings

    async with worker_async_session() as session:
        return await send_expiry_warnings(session, days_ahead=days_ahead)
