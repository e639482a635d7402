"""Durable per-entity credit balances.

Reads never fail: an entity that was never funded gets a synthetic zero
balance. Mutations happen on a row locked with SELECT ... FOR UPDATE inside
the caller's transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.cache import BalanceCache, balance_cache_key, cache_get, cache_invalidate, cache_set
from credit_engine.core.config import settings
from credit_engine.models.base import utcnow
from credit_engine.models.credit_balance import CreditBalance
from credit_engine.services.credit_result import CreditEngineError, CreditErrorKind, CreditResult, Err, Ok

logger = structlog.get_logger()

ZERO = Decimal("0")
DEFAULT_ENTITY_TYPE = "organization"


class NegativeBalanceError(CreditEngineError):
    """A delta was applied without checking sufficiency first."""


def primary_entity(tenant_id: uuid.UUID, entity_id: uuid.UUID | None) -> uuid.UUID:
    """The tenant's own entity shares the tenant id."""
    return entity_id or tenant_id


@dataclass(frozen=True)
class BalanceView:
    tenant_id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    available_credits: Decimal = ZERO
    reserved_credits: Decimal = ZERO
    total_consumed: Decimal = ZERO
    total_expired: Decimal = ZERO
    is_active: bool = True
    version: int = 0
    last_updated_at: datetime | None = None
    exists: bool = False
    cached: bool = field(default=False, compare=False)

    @property
    def status(self) -> str:
        return "active" if self.is_active else "inactive"

    @property
    def alerts(self) -> list[dict[str, Any]]:
        critical = Decimal(str(settings.CREDIT_CRITICAL_BALANCE_THRESHOLD))
        low = Decimal(str(settings.CREDIT_LOW_BALANCE_THRESHOLD))
        if self.available_credits <= critical:
            return [{
                "level": "critical",
                "message": "Credit balance is critically low",
                "threshold": float(critical),
                "available_credits": float(self.available_credits),
            }]
        if self.available_credits <= low:
            return [{
                "level": "low",
                "message": "Credit balance is running low",
                "threshold": float(low),
                "available_credits": float(self.available_credits),
            }]
        return []

    @classmethod
    def from_row(cls, row: CreditBalance) -> BalanceView:
        return cls(
            tenant_id=row.tenant_id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            available_credits=Decimal(row.available_credits),
            reserved_credits=Decimal(row.reserved_credits),
            total_consumed=Decimal(row.total_consumed),
            total_expired=Decimal(row.total_expired),
            is_active=row.is_active,
            version=row.version,
            last_updated_at=row.last_updated_at,
            exists=True,
        )

    @classmethod
    def zero(cls, tenant_id: uuid.UUID, entity_type: str, entity_id: uuid.UUID) -> BalanceView:
        return cls(tenant_id=tenant_id, entity_type=entity_type, entity_id=entity_id)

    def to_cache(self) -> dict[str, Any]:
        return {
            "tenant_id": str(self.tenant_id),
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id),
            "available_credits": str(self.available_credits),
            "reserved_credits": str(self.reserved_credits),
            "total_consumed": str(self.total_consumed),
            "total_expired": str(self.total_expired),
            "is_active": self.is_active,
            "version": self.version,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "exists": self.exists,
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> BalanceView:
        updated = data.get("last_updated_at")
        return cls(
            tenant_id=uuid.UUID(data["tenant_id"]),
            entity_type=data["entity_type"],
            entity_id=uuid.UUID(data["entity_id"]),
            available_credits=Decimal(data["available_credits"]),
            reserved_credits=Decimal(data["reserved_credits"]),
            total_consumed=Decimal(data["total_consumed"]),
            total_expired=Decimal(data["total_expired"]),
            is_active=bool(data["is_active"]),
            version=int(data["version"]),
            last_updated_at=datetime.fromisoformat(updated) if updated else None,
            exists=bool(data["exists"]),
            cached=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "available_credits": self.available_credits,
            "reserved_credits": self.reserved_credits,
            "total_consumed": self.total_consumed,
            "total_expired": self.total_expired,
            "is_active": self.is_active,
            "status": self.status,
            "version": self.version,
            "last_updated_at": self.last_updated_at,
            "alerts": self.alerts,
        }


async def _fetch(db: AsyncSession, tenant_id: uuid.UUID, entity_id: uuid.UUID) -> CreditBalance | None:
    result = await db.execute(
        select(CreditBalance).where(
            CreditBalance.tenant_id == tenant_id,
            CreditBalance.entity_id == entity_id,
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_balance(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_type: str = DEFAULT_ENTITY_TYPE,
    entity_id: uuid.UUID | None = None,
    cache: BalanceCache | None = None,
) -> BalanceView:
    """Current balance, consulting the cache first when one is given."""
    entity_id = primary_entity(tenant_id, entity_id)
    key = balance_cache_key(tenant_id, entity_id)

    if cache is not None:
        hit = await cache_get(cache, key)
        if hit is not None:
            try:
                return BalanceView.from_cache(hit)
            except (KeyError, TypeError, ValueError, ArithmeticError):
                logger.warning("credits.cache.bad_entry", key=key)

    row = await _fetch(db, tenant_id, entity_id)
    view = BalanceView.from_row(row) if row else BalanceView.zero(tenant_id, entity_type, entity_id)

    if cache is not None:
        await cache_set(cache, key, view.to_cache())
    return view


async def lock_balance(db: AsyncSession, tenant_id: uuid.UUID, entity_id: uuid.UUID) -> CreditBalance | None:
    """Read the balance row under a row lock, bypassing any stale identity-map state."""
    result = await db.execute(
        select(CreditBalance)
        .where(
            CreditBalance.tenant_id == tenant_id,
            CreditBalance.entity_id == entity_id,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_locked(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_type: str,
    entity_id: uuid.UUID,
) -> CreditBalance:
    """Locked balance row, created at zero if the entity was never funded.

    Two first-time allocations racing on the insert hit the unique constraint;
    the loser's transaction is retried by the atomic runner.
    """
    balance = await lock_balance(db, tenant_id, entity_id)
    if balance is not None:
        return balance
    balance = CreditBalance(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        available_credits=ZERO,
        reserved_credits=ZERO,
        total_consumed=ZERO,
        total_expired=ZERO,
        is_active=True,
        version=0,
        last_updated_at=utcnow(),
    )
    db.add(balance)
    await db.flush()
    logger.info("credits.balance.created", tenant_id=str(tenant_id), entity_id=str(entity_id))
    return balance


def apply_delta(balance: CreditBalance, signed_amount: Decimal) -> tuple[Decimal, Decimal]:
    """Apply a signed change to a locked row and return (previous, new)."""
    previous = Decimal(balance.available_credits)
    new = previous + signed_amount
    if new < ZERO:
        raise NegativeBalanceError(
            f"balance {balance.id} would go negative: {previous} + {signed_amount}"
        )
    balance.available_credits = new
    balance.version = (balance.version or 0) + 1
    balance.last_updated_at = utcnow()
    return previous, new


def insufficient(available: Decimal, required: Decimal, **extra: Any) -> CreditResult:
    return Err(
        CreditErrorKind.INSUFFICIENT_CREDITS,
        available_credits=float(available),
        required_credits=float(required),
        shortfall=float(required - available),
        **extra,
    )


async def invalidate_balances(cache: BalanceCache | None, tenant_id: uuid.UUID, *entity_ids: uuid.UUID) -> None:
    if cache is None:
        return
    await cache_invalidate(cache, *(balance_cache_key(tenant_id, entity_id) for entity_id in entity_ids))


async def set_balance_active(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_id: uuid.UUID | None,
    is_active: bool,
    cache: BalanceCache | None = None,
) -> CreditResult:
    """Deactivate or reactivate a balance. Credits are kept either way."""
    entity_id = primary_entity(tenant_id, entity_id)
    balance = await lock_balance(db, tenant_id, entity_id)
    if balance is None:
        await db.rollback()
        return Err(CreditErrorKind.NOT_FOUND, tenant_id=str(tenant_id), entity_id=str(entity_id))

    balance.is_active = is_active
    balance.version = (balance.version or 0) + 1
    balance.last_updated_at = utcnow()
    await db.commit()
    await invalidate_balances(cache, tenant_id, entity_id)

    logger.info(
        "credits.balance.status_changed",
        tenant_id=str(tenant_id),
        entity_id=str(entity_id),
        is_active=is_active,
    )
    return Ok(entity_id=str(entity_id), is_active=is_active)
