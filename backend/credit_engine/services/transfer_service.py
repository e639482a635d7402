from __future__ import annotations

import uuid
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
from credit_engine.services.expiry_service import carry_grant_slices, draw_down_grants
from credit_engine.services.ledger_service import record_transaction

logger = structlog.get_logger()


async def transfer_credits(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    to_entity_id: uuid.UUID,
    amount: Decimal,
    *,
    from_entity_id: uuid.UUID | None = None,
    to_entity_type: str = DEFAULT_ENTITY_TYPE,
    initiated_by: uuid.UUID | None = None,
    reason: str | None = None,
    cache: BalanceCache | None = None,
) -> CreditResult:
    """Move credits between two entities of the same tenant.

    Debit and credit commit together or not at all. The two ledger rows share
    a correlation id.
    """
    from_entity_id = primary_entity(tenant_id, from_entity_id)
    amount = Decimal(str(amount))
    if amount <= ZERO:
        return Err(CreditErrorKind.INVALID_AMOUNT, amount=float(amount))
    if from_entity_id == to_entity_id:
        return Err(CreditErrorKind.INVALID_STATE, message="source and destination are the same entity")

    async def work() -> CreditResult:
        # Fixed lock order so opposing transfers cannot deadlock
        locked = {}
        for entity_id in sorted((from_entity_id, to_entity_id), key=str):
            if entity_id == from_entity_id:
                locked[entity_id] = await lock_balance(db, tenant_id, entity_id)
            else:
                locked[entity_id] = await get_or_create_locked(db, tenant_id, to_entity_type, entity_id)
        source = locked[from_entity_id]
        destination = locked[to_entity_id]

        if source is None:
            return insufficient(ZERO, amount, entity_id=str(from_entity_id))
        if not source.is_active:
            return Err(CreditErrorKind.ENTITY_INACTIVE, entity_id=str(from_entity_id))
        if not destination.is_active:
            return Err(CreditErrorKind.ENTITY_INACTIVE, entity_id=str(to_entity_id))
        if Decimal(source.available_credits) < amount:
            return insufficient(Decimal(source.available_credits), amount, entity_id=str(from_entity_id))

        correlation_id = uuid.uuid4()
        description = reason or "Credit transfer"

        src_prev, src_new = apply_delta(source, -amount)
        slices = await draw_down_grants(db, tenant_id, from_entity_id, amount)
        carried = [piece.to_metadata() for piece in slices]
        out_row = record_transaction(
            db,
            source,
            TransactionType.TRANSFER_OUT,
            -amount,
            src_prev,
            src_new,
            correlation_id=correlation_id,
            description=description,
            metadata={"to_entity_id": str(to_entity_id), "to_entity_type": to_entity_type},
            initiated_by=initiated_by,
        )

        dst_prev, dst_new = apply_delta(destination, amount)
        in_metadata = {"from_entity_id": str(from_entity_id)}
        if carried:
            in_metadata["grant_slices"] = carried
        in_row = record_transaction(
            db,
            destination,
            TransactionType.TRANSFER_IN,
            amount,
            dst_prev,
            dst_new,
            correlation_id=correlation_id,
            description=description,
            metadata=in_metadata,
            initiated_by=initiated_by,
        )
        carry_grant_slices(
            db,
            tenant_id,
            to_entity_id,
            slices,
            source="transfer",
            source_id=str(correlation_id),
            transaction_id=in_row.id,
        )
        await db.flush()

        return Ok(
            correlation_id=correlation_id,
            amount=amount,
            from_entity_id=from_entity_id,
            to_entity_id=to_entity_id,
            from_transaction_id=out_row.id,
            to_transaction_id=in_row.id,
            from_balance=src_new,
            to_balance=dst_new,
        )

    result = await run_atomic(db, work, label="transfer")
    if not result.ok:
        logger.info(
            "credits.transfer.rejected",
            tenant_id=str(tenant_id),
            from_entity_id=str(from_entity_id),
            to_entity_id=str(to_entity_id),
            reason=str(result.reason),
        )
        return result

    await invalidate_balances(cache, tenant_id, from_entity_id, to_entity_id)
    logger.info(
        "credits.transferred",
        tenant_id=str(tenant_id),
        from_entity_id=str(from_entity_id),
        to_entity_id=str(to_entity_id),
        amount=str(amount),
        correlation_id=str(result.data["correlation_id"]),
    )
    return result
