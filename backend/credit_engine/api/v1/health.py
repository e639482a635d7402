from typing import Annotated

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.config import settings
from credit_engine.core.database import get_db
from credit_engine.schemas.common import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(db: Annotated[AsyncSession, Depends(get_db)]):
    db_status = "ok"
    redis_status = "ok"

    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    if settings.BALANCE_CACHE_ENABLED:
        try:
            r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
            await r.ping()
            await r.aclose()
        except Exception:
            redis_status = "error"
    else:
        redis_status = "disabled"

    overall = "ok" if db_status == "ok" and redis_status in ("ok", "disabled") else "degraded"
    return HealthResponse(status=overall, database=db_status, redis=redis_status)
