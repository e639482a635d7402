"""Append-only credit ledger: writes, history and summaries."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.models.credit_balance import CreditBalance
from credit_engine.models.credit_transaction import (
    TYPE_DIRECTIONS,
    CreditTransaction,
    Direction,
    TransactionType,
)
from credit_engine.services.credit_result import CreditEngineError

logger = structlog.get_logger()


def direction_for(transaction_type: TransactionType, signed_amount: Decimal | None = None) -> Direction:
    if transaction_type == TransactionType.ADJUSTMENT:
        if signed_amount is None:
            raise CreditEngineError("adjustments need a signed amount to pick a direction")
        return Direction.CREDIT if signed_amount >= 0 else Direction.DEBIT
    return TYPE_DIRECTIONS[transaction_type]


def record_transaction(
    db: AsyncSession,
    balance: CreditBalance,
    transaction_type: TransactionType,
    signed_amount: Decimal,
    previous_balance: Decimal,
    new_balance: Decimal,
    *,
    operation_code: str | None = None,
    operation_id: str | None = None,
    correlation_id: uuid.UUID | None = None,
    purchase_id: uuid.UUID | None = None,
    description: str | None = None,
    metadata: dict | None = None,
    initiated_by: uuid.UUID | None = None,
) -> CreditTransaction:
    """Stage a ledger row for the balance change just applied.

    The row is added to the caller's transaction; it commits or rolls back
    together with the balance mutation.
    """
    direction = direction_for(transaction_type, signed_amount)
    amount = abs(signed_amount)
    expected = previous_balance + amount if direction == Direction.CREDIT else previous_balance - amount
    if expected != new_balance:
        raise CreditEngineError(
            f"{transaction_type} row does not balance: {previous_balance} -> {new_balance} for {amount}"
        )

    row = CreditTransaction(
        id=uuid.uuid4(),
        tenant_id=balance.tenant_id,
        entity_type=balance.entity_type,
        entity_id=balance.entity_id,
        transaction_type=str(transaction_type),
        direction=str(direction),
        amount=amount,
        previous_balance=previous_balance,
        new_balance=new_balance,
        operation_code=operation_code,
        operation_id=operation_id,
        correlation_id=correlation_id,
        purchase_id=purchase_id,
        description=description,
        metadata_json=metadata,
        initiated_by=initiated_by,
    )
    db.add(row)
    return row


async def find_operation_transaction(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    operation_id: str,
    transaction_type: TransactionType,
    entity_id: uuid.UUID | None = None,
) -> CreditTransaction | None:
    query = select(CreditTransaction).where(
        CreditTransaction.tenant_id == tenant_id,
        CreditTransaction.operation_id == operation_id,
        CreditTransaction.transaction_type == str(transaction_type),
    )
    if entity_id is not None:
        query = query.where(CreditTransaction.entity_id == entity_id)
    result = await db.execute(query.order_by(CreditTransaction.created_at).limit(1))
    return result.scalar_one_or_none()


async def get_transaction_history(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    page: int = 1,
    limit: int = 20,
    transaction_type: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    entity_id: uuid.UUID | None = None,
) -> tuple[list[CreditTransaction], int]:
    """Newest-first ledger page for a tenant, with the unpaged total."""
    query = select(CreditTransaction).where(CreditTransaction.tenant_id == tenant_id)
    count_query = select(func.count()).select_from(CreditTransaction).where(CreditTransaction.tenant_id == tenant_id)

    filters = []
    if entity_id is not None:
        filters.append(CreditTransaction.entity_id == entity_id)
    if transaction_type:
        filters.append(CreditTransaction.transaction_type == transaction_type)
    if start_date:
        filters.append(CreditTransaction.created_at >= start_date)
    if end_date:
        filters.append(CreditTransaction.created_at <= end_date)
    if filters:
        query = query.where(*filters)
        count_query = count_query.where(*filters)

    total = (await db.execute(count_query)).scalar() or 0
    offset = (max(page, 1) - 1) * limit
    result = await db.execute(
        query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), total


async def get_usage_summary(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    entity_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Totals per transaction type plus credits in/out over a window."""
    query = (
        select(
            CreditTransaction.transaction_type,
            CreditTransaction.direction,
            func.count(CreditTransaction.id),
            func.coalesce(func.sum(CreditTransaction.amount), 0),
        )
        .where(CreditTransaction.tenant_id == tenant_id)
        .group_by(CreditTransaction.transaction_type, CreditTransaction.direction)
    )
    if entity_id is not None:
        query = query.where(CreditTransaction.entity_id == entity_id)
    if start_date:
        query = query.where(CreditTransaction.created_at >= start_date)
    if end_date:
        query = query.where(CreditTransaction.created_at <= end_date)

    by_type: dict[str, dict[str, Any]] = {}
    credits_in = Decimal("0")
    credits_out = Decimal("0")
    for tx_type, direction, count, total in (await db.execute(query)).all():
        total = Decimal(str(total))
        entry = by_type.setdefault(tx_type, {"count": 0, "total_credits": Decimal("0")})
        entry["count"] += count
        entry["total_credits"] += total
        if direction == Direction.CREDIT:
            credits_in += total
        else:
            credits_out += total

    return {
        "tenant_id": tenant_id,
        "start_date": start_date,
        "end_date": end_date,
        "by_type": by_type,
        "credits_in": credits_in,
        "credits_out": credits_out,
        "net_change": credits_in - credits_out,
    }
