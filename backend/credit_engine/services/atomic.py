"""Run one logical credit operation as a single retried transaction."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from credit_engine.core.config import settings
from credit_engine.services.credit_result import ConcurrencyConflict, CreditErrorKind, CreditResult, Err

logger = structlog.get_logger()

# serialization_failure, deadlock_detected, unique_violation
_RETRYABLE_SQLSTATES = {"40001", "40P01", "23505"}


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (ConcurrencyConflict, StaleDataError)):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    state = _sqlstate(exc)
    if state is not None:
        return state in _RETRYABLE_SQLSTATES
    # Drivers without SQLSTATE (sqlite) only report it in the message
    message = str(exc.orig).lower()
    if isinstance(exc, IntegrityError):
        return "unique" in message
    return "deadlock" in message or "database is locked" in message


async def run_atomic(
    db: AsyncSession,
    work: Callable[[], Awaitable[CreditResult]],
    *,
    label: str,
    max_attempts: int | None = None,
) -> CreditResult:
    """Run `work` and commit when it returns Ok, roll back otherwise.

    `work` must not commit. Any data it puts in the result has to be plain
    values, since a rollback expires every loaded instance.
    """
    attempts = max(1, max_attempts or settings.CREDIT_TX_MAX_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            result = await work()
            if result.ok:
                await db.commit()
            else:
                await db.rollback()
            return result
        except (DBAPIError, ConcurrencyConflict, StaleDataError) as exc:
            await db.rollback()
            if not is_retryable(exc):
                raise
            logger.warning("credits.tx.conflict", label=label, attempt=attempt, error=str(exc))
        except Exception:
            await db.rollback()
            raise

    logger.error("credits.tx.retries_exhausted", label=label, attempts=attempts)
    return Err(CreditErrorKind.CONCURRENCY_CONFLICT, attempts=attempts)
