from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.cache import BalanceCache
from credit_engine.models.credit_transaction import TransactionType
from credit_engine.services.atomic import run_atomic
from credit_engine.services.balance_store import (
    DEFAULT_ENTITY_TYPE,
    ZERO,
    apply_delta,
    get_or_create_locked,
    insufficient,
    invalidate_balances,
    lock_balance,
    primary_entity,
)
from credit_engine.services.credit_result import CreditErrorKind, CreditResult, Err, Ok
from credit_engine.services.expiry_service import draw_down_grants, record_grant
from credit_engine.services.ledger_service import record_transaction

logger = structlog.get_logger()


async def allocate_within(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_type: str,
    entity_id: uuid.UUID,
    amount: Decimal,
    *,
    source: str,
    source_id: str | None = None,
    initiated_by: uuid.UUID | None = None,
    description: str | None = None,
    expires_at: datetime | None = None,
    purchase_id: uuid.UUID | None = None,
) -> dict:
    """Add credits inside an open transaction. Creates the balance row on first funding."""
    balance = await get_or_create_locked(db, tenant_id, entity_type, entity_id)
    previous, new = apply_delta(balance, amount)
    metadata = {"source": source}
    if source_id:
        metadata["source_id"] = source_id
    if expires_at:
        metadata["expires_at"] = expires_at.isoformat()
    row = record_transaction(
        db,
        balance,
        TransactionType.ALLOCATION,
        amount,
        previous,
        new,
        purchase_id=purchase_id,
        description=description or f"Credits allocated from {source}",
        metadata=metadata,
        initiated_by=initiated_by,
    )
    grant_id = None
    if expires_at is not None:
        grant = record_grant(db, tenant_id, entity_id, amount, expires_at, source, source_id, row.id)
        await db.flush()
        grant_id = grant.id
    else:
        await db.flush()
    return {
        "transaction_id": row.id,
        "entity_id": entity_id,
        "amount": amount,
        "previous_balance": previous,
        "new_balance": new,
        "grant_id": grant_id,
        "expires_at": expires_at,
    }


async def allocate_credits(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    amount: Decimal,
    *,
    entity_type: str = DEFAULT_ENTITY_TYPE,
    entity_id: uuid.UUID | None = None,
    source: str = "manual",
    source_id: str | None = None,
    initiated_by: uuid.UUID | None = None,
    description: str | None = None,
    expires_at: datetime | None = None,
    cache: BalanceCache | None = None,
) -> CreditResult:
    """Fund an entity, e.g. from onboarding or a plan renewal."""
    entity_id = primary_entity(tenant_id, entity_id)
    amount = Decimal(str(amount))
    if amount <= ZERO:
        return Err(CreditErrorKind.INVALID_AMOUNT, amount=float(amount))

    async def work() -> CreditResult:
        return Ok(
            await allocate_within(
                db,
                tenant_id,
                entity_type,
                entity_id,
                amount,
                source=source,
                source_id=source_id,
                initiated_by=initiated_by,
                description=description,
                expires_at=expires_at,
            )
        )

    result = await run_atomic(db, work, label="allocate")
    if result.ok:
        await invalidate_balances(cache, tenant_id, entity_id)
        logger.info(
            "credits.allocated",
            tenant_id=str(tenant_id),
            entity_id=str(entity_id),
            amount=str(amount),
            source=source,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
    return result


async def adjust_balance(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    signed_amount: Decimal,
    *,
    entity_id: uuid.UUID | None = None,
    entity_type: str = DEFAULT_ENTITY_TYPE,
    initiated_by: uuid.UUID | None = None,
    reason: str,
    cache: BalanceCache | None = None,
) -> CreditResult:
    """Admin correction in either direction. Never takes a balance below zero."""
    entity_id = primary_entity(tenant_id, entity_id)
    signed_amount = Decimal(str(signed_amount))
    if signed_amount == ZERO:
        return Err(CreditErrorKind.INVALID_AMOUNT, amount=0.0)

    async def work() -> CreditResult:
        if signed_amount > ZERO:
            balance = await get_or_create_locked(db, tenant_id, entity_type, entity_id)
        else:
            balance = await lock_balance(db, tenant_id, entity_id)
            available = Decimal(balance.available_credits) if balance is not None else ZERO
            if available + signed_amount < ZERO:
                return insufficient(available, -signed_amount, entity_id=str(entity_id))

        previous, new = apply_delta(balance, signed_amount)
        row = record_transaction(
            db,
            balance,
            TransactionType.ADJUSTMENT,
            signed_amount,
            previous,
            new,
            description=reason,
            metadata={"reason": reason},
            initiated_by=initiated_by,
        )
        if signed_amount < ZERO:
            await draw_down_grants(db, tenant_id, entity_id, -signed_amount)
        await db.flush()
        return Ok(transaction_id=row.id, previous_balance=previous, new_balance=new, amount=signed_amount)

    result = await run_atomic(db, work, label="adjust")
    if result.ok:
        await invalidate_balances(cache, tenant_id, entity_id)
        logger.info(
            "credits.adjusted",
            tenant_id=str(tenant_id),
            entity_id=str(entity_id),
            amount=str(signed_amount),
            initiated_by=str(initiated_by) if initiated_by else None,
        )
    return result
