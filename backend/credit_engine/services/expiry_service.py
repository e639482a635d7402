"""Expiring credit grants.

Allocations made with an expiry date are tracked as grants. Spending draws
grants down soonest-expiry first, and the periodic sweep removes whatever is
left of a grant once it lapses. A grant is swept once: the ``is_expired`` flag
makes re-running the sweep a no-op.

Credits keep their expiry when they move: a transfer re-grants the drawn
slices to the destination, and a refund hands them back to their grants.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Protocol

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.cache import BalanceCache
from credit_engine.core.config import settings
from credit_engine.models.base import utcnow
from credit_engine.models.credit_grant import CreditGrant
from credit_engine.models.credit_transaction import TransactionType
from credit_engine.services.atomic import run_atomic
from credit_engine.services.balance_store import ZERO, apply_delta, invalidate_balances, lock_balance
from credit_engine.services.credit_result import CreditErrorKind, CreditResult, Err, Ok
from credit_engine.services.ledger_service import record_transaction

logger = structlog.get_logger()


class ExpiryNotifier(Protocol):
    async def notify(self, tenant_id: uuid.UUID, entity_id: uuid.UUID, warning: dict[str, Any]) -> None: ...


class LoggingExpiryNotifier:
    """Writes the warning to the log; delivery is left to whoever tails it."""

    async def notify(self, tenant_id: uuid.UUID, entity_id: uuid.UUID, warning: dict[str, Any]) -> None:
        logger.warning(
            "credits.expiry.warning",
            tenant_id=str(tenant_id),
            entity_id=str(entity_id),
            credits=str(warning["expiring_credits"]),
            expires_at=warning["earliest_expiry"].isoformat(),
            grants=warning["grant_count"],
        )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class GrantSlice:
    """Part of a spend that came out of one expiring grant."""

    grant_id: uuid.UUID
    amount: Decimal
    expires_at: datetime
    source: str

    def to_metadata(self) -> dict[str, str]:
        return {
            "grant_id": str(self.grant_id),
            "amount": str(self.amount),
            "expires_at": _aware(self.expires_at).isoformat(),
            "source": self.source,
        }

    @classmethod
    def from_metadata(cls, data: dict[str, str]) -> GrantSlice:
        return cls(
            grant_id=uuid.UUID(data["grant_id"]),
            amount=Decimal(data["amount"]),
            expires_at=_aware(datetime.fromisoformat(data["expires_at"])),
            source=data.get("source", "grant"),
        )


async def draw_down_grants(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_id: uuid.UUID,
    amount: Decimal,
) -> list[GrantSlice]:
    """Mark `amount` of spent credits against open grants, soonest expiry first.

    The caller must already hold the entity's balance lock. Returns the
    slices taken from grants; whatever is left came from non-expiring credits.
    """
    result = await db.execute(
        select(CreditGrant)
        .where(
            CreditGrant.tenant_id == tenant_id,
            CreditGrant.entity_id == entity_id,
            CreditGrant.is_expired.is_(False),
            CreditGrant.used_credits < CreditGrant.allocated_credits,
        )
        .order_by(CreditGrant.expires_at, CreditGrant.created_at)
        .with_for_update()
    )
    remaining = amount
    slices: list[GrantSlice] = []
    for grant in result.scalars().all():
        if remaining <= ZERO:
            break
        take = min(remaining, grant.unused_credits)
        grant.used_credits = grant.used_credits + take
        remaining -= take
        slices.append(GrantSlice(grant.id, take, _aware(grant.expires_at), grant.source))
    return slices


def carry_grant_slices(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_id: uuid.UUID,
    slices: list[GrantSlice],
    source: str,
    source_id: str | None = None,
    transaction_id: uuid.UUID | None = None,
) -> list[CreditGrant]:
    """Re-grant drawn slices to another entity with their original expiry."""
    return [
        record_grant(
            db,
            tenant_id,
            entity_id,
            piece.amount,
            piece.expires_at,
            source=source,
            source_id=source_id,
            transaction_id=transaction_id,
        )
        for piece in slices
    ]


async def return_grant_slices(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_id: uuid.UUID,
    slices: list[GrantSlice],
    source_id: str | None = None,
) -> None:
    """Give refunded credits back to the grants they were spent from.

    A grant that has lapsed since is not reopened; its slice becomes a new
    grant with the same expiry, which the next sweep removes.
    """
    if not slices:
        return
    result = await db.execute(
        select(CreditGrant)
        .where(CreditGrant.id.in_([piece.grant_id for piece in slices]))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    grants = {grant.id: grant for grant in result.scalars().all()}
    lapsed: list[GrantSlice] = []
    for piece in slices:
        grant = grants.get(piece.grant_id)
        if grant is None or grant.is_expired:
            lapsed.append(piece)
            continue
        grant.used_credits = max(ZERO, grant.used_credits - piece.amount)
    carry_grant_slices(db, tenant_id, entity_id, lapsed, source="refund", source_id=source_id)


def record_grant(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_id: uuid.UUID,
    amount: Decimal,
    expires_at: datetime,
    source: str,
    source_id: str | None = None,
    transaction_id: uuid.UUID | None = None,
) -> CreditGrant:
    grant = CreditGrant(
        tenant_id=tenant_id,
        entity_id=entity_id,
        allocated_credits=amount,
        used_credits=ZERO,
        expires_at=expires_at,
        is_expired=False,
        expired_credits=ZERO,
        source=source,
        source_id=source_id,
        transaction_id=transaction_id,
    )
    db.add(grant)
    return grant


async def _lock_grant(db: AsyncSession, grant_id: uuid.UUID) -> CreditGrant | None:
    result = await db.execute(
        select(CreditGrant)
        .where(CreditGrant.id == grant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _expire_grant(db: AsyncSession, grant_id: uuid.UUID, now: datetime) -> CreditResult:
    # Balance row first, then the grant: the same order spending takes them in
    owner = (
        await db.execute(select(CreditGrant.tenant_id, CreditGrant.entity_id).where(CreditGrant.id == grant_id))
    ).one_or_none()
    if owner is None:
        return Err(CreditErrorKind.INVALID_STATE, grant_id=str(grant_id), already_expired=True)

    tenant_id, entity_id = owner
    balance = await lock_balance(db, tenant_id, entity_id)
    grant = await _lock_grant(db, grant_id)
    if grant is None or grant.is_expired:
        return Err(CreditErrorKind.INVALID_STATE, grant_id=str(grant_id), already_expired=True)

    # The grant can outlive spend made outside the grant bookkeeping; never expire more than is held
    held = Decimal(balance.available_credits) if balance else ZERO
    amount = min(grant.unused_credits, held)

    if amount > ZERO:
        previous, new = apply_delta(balance, -amount)
        balance.total_expired = Decimal(balance.total_expired) + amount
        record_transaction(
            db,
            balance,
            TransactionType.EXPIRY,
            -amount,
            previous,
            new,
            description=f"Expired {grant.source} credits",
            metadata={"grant_id": str(grant.id), "expires_at": _aware(grant.expires_at).isoformat()},
        )

    grant.is_expired = True
    grant.expired_at = now
    grant.expired_credits = amount
    await db.flush()
    return Ok(tenant_id=tenant_id, entity_id=entity_id, amount=amount)


async def process_expired_credits(
    db: AsyncSession,
    now: datetime | None = None,
    cache: BalanceCache | None = None,
    batch_size: int = 500,
) -> dict[str, Any]:
    """Sweep lapsed grants. Each grant is expired in its own transaction."""
    now = now or utcnow()
    result = await db.execute(
        select(CreditGrant.id)
        .where(CreditGrant.is_expired.is_(False), CreditGrant.expires_at <= now)
        .order_by(CreditGrant.expires_at)
        .limit(batch_size)
    )
    grant_ids = list(result.scalars().all())

    expired_count = 0
    total_expired = Decimal("0")
    affected: set[tuple[uuid.UUID, uuid.UUID]] = set()

    for grant_id in grant_ids:
        outcome = await run_atomic(db, lambda gid=grant_id: _expire_grant(db, gid, now), label="expire_grant")
        if not outcome.ok:
            continue
        expired_count += 1
        total_expired += outcome.data["amount"]
        if outcome.data["amount"] > ZERO:
            affected.add((outcome.data["tenant_id"], outcome.data["entity_id"]))
            await invalidate_balances(cache, outcome.data["tenant_id"], outcome.data["entity_id"])

    logger.info(
        "credits.expiry.sweep_complete",
        expired_count=expired_count,
        total_expired=str(total_expired),
        affected_balances=len(affected),
    )
    return {
        "expired_count": expired_count,
        "total_expired": total_expired,
        "affected_balances": len(affected),
    }


async def get_expiring_credits(
    db: AsyncSession,
    days_ahead: int = 7,
    tenant_id: uuid.UUID | None = None,
    entity_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Unspent grant credits lapsing within `days_ahead`, one entry per entity."""
    now = now or utcnow()
    horizon = now + timedelta(days=days_ahead)
    query = (
        select(
            CreditGrant.tenant_id,
            CreditGrant.entity_id,
            func.sum(CreditGrant.allocated_credits - CreditGrant.used_credits),
            func.min(CreditGrant.expires_at),
            func.count(CreditGrant.id),
        )
        .where(
            CreditGrant.is_expired.is_(False),
            CreditGrant.expires_at > now,
            CreditGrant.expires_at <= horizon,
            CreditGrant.used_credits < CreditGrant.allocated_credits,
        )
        .group_by(CreditGrant.tenant_id, CreditGrant.entity_id)
    )
    if tenant_id is not None:
        query = query.where(CreditGrant.tenant_id == tenant_id)
    if entity_id is not None:
        query = query.where(CreditGrant.entity_id == entity_id)

    rows = (await db.execute(query)).all()
    return [
        {
            "tenant_id": row[0],
            "entity_id": row[1],
            "expiring_credits": Decimal(str(row[2])),
            "earliest_expiry": _aware(row[3]),
            "grant_count": row[4],
        }
        for row in rows
    ]


async def send_expiry_warnings(
    db: AsyncSession,
    days_ahead: int | None = None,
    notifier: ExpiryNotifier | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Hand each upcoming expiry to the notifier. Read-only on credit state."""
    days_ahead = days_ahead if days_ahead is not None else settings.CREDIT_EXPIRY_WARNING_DAYS
    notifier = notifier or LoggingExpiryNotifier()
    warnings = await get_expiring_credits(db, days_ahead=days_ahead, now=now)

    sent = 0
    failed = 0
    for warning in warnings:
        try:
            await notifier.notify(warning["tenant_id"], warning["entity_id"], warning)
            sent += 1
        except Exception:
            failed += 1
            logger.exception(
                "credits.expiry.notify_failed",
                tenant_id=str(warning["tenant_id"]),
                entity_id=str(warning["entity_id"]),
            )

    logger.info("credits.expiry.warnings_sent", sent=sent, failed=failed, days_ahead=days_ahead)
    return {"warnings_sent": sent, "failed": failed, "days_ahead": days_ahead}


async def get_expiry_stats(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()

    async def _window(days: int) -> Decimal:
        entries = await get_expiring_credits(db, days_ahead=days, tenant_id=tenant_id, entity_id=entity_id, now=now)
        return sum((entry["expiring_credits"] for entry in entries), Decimal("0"))

    query = select(func.coalesce(func.sum(CreditGrant.expired_credits), 0)).where(
        CreditGrant.tenant_id == tenant_id,
        CreditGrant.is_expired.is_(True),
    )
    if entity_id is not None:
        query = query.where(CreditGrant.entity_id == entity_id)
    already_expired = Decimal(str((await db.execute(query)).scalar() or 0))

    return {
        "tenant_id": tenant_id,
        "entity_id": entity_id,
        "expiring_in_7_days": await _window(7),
        "expiring_in_30_days": await _window(30),
        "total_expired": already_expired,
    }
