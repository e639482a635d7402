"""Credit purchases.

The engine never talks to a payment provider. A purchase is recorded as
pending; the payment callback then confirms it (allocating the credits in the
same transaction) or fails it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.cache import BalanceCache
from credit_engine.core.config import settings
from credit_engine.models.base import utcnow
from credit_engine.models.credit_purchase import PAYMENT_METHODS, CreditPurchase
from credit_engine.services.allocation_service import allocate_within
from credit_engine.services.atomic import run_atomic
from credit_engine.services.balance_store import DEFAULT_ENTITY_TYPE, ZERO, invalidate_balances, primary_entity
from credit_engine.services.credit_result import CreditErrorKind, CreditResult, Err, Ok

logger = structlog.get_logger()


def purchase_payload(purchase: CreditPurchase) -> dict[str, Any]:
    return {
        "purchase_id": purchase.id,
        "tenant_id": purchase.tenant_id,
        "entity_id": purchase.entity_id,
        "credit_amount": Decimal(purchase.credit_amount),
        "unit_price": Decimal(purchase.unit_price),
        "total_amount": Decimal(purchase.total_amount),
        "currency": purchase.currency,
        "payment_method": purchase.payment_method,
        "payment_reference": purchase.payment_reference,
        "status": purchase.status,
        "transaction_id": purchase.transaction_id,
        "completed_at": purchase.completed_at,
    }


async def purchase_credits(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    credit_amount: Decimal,
    payment_method: str,
    *,
    user_id: uuid.UUID | None = None,
    currency: str | None = None,
    notes: str | None = None,
    entity_type: str = DEFAULT_ENTITY_TYPE,
    entity_id: uuid.UUID | None = None,
    expires_at: datetime | None = None,
) -> CreditResult:
    """Record a pending purchase. No credits move until it is confirmed."""
    entity_id = primary_entity(tenant_id, entity_id)
    credit_amount = Decimal(str(credit_amount))
    if credit_amount <= ZERO:
        return Err(CreditErrorKind.INVALID_AMOUNT, credit_amount=float(credit_amount))
    if payment_method not in PAYMENT_METHODS:
        return Err(CreditErrorKind.INVALID_STATE, message=f"unsupported payment method {payment_method!r}")

    unit_price = Decimal(str(settings.CREDIT_UNIT_PRICE))
    total = (credit_amount * unit_price).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    async def work() -> CreditResult:
        purchase = CreditPurchase(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            credit_amount=credit_amount,
            unit_price=unit_price,
            total_amount=total,
            currency=(currency or settings.CREDIT_DEFAULT_CURRENCY).upper(),
            payment_method=payment_method,
            status="pending",
            notes=notes,
            requested_by=user_id,
            expires_at=expires_at,
        )
        db.add(purchase)
        await db.flush()
        return Ok(purchase_payload(purchase))

    result = await run_atomic(db, work, label="purchase")
    if result.ok:
        logger.info(
            "credits.purchase.created",
            tenant_id=str(tenant_id),
            purchase_id=str(result.data["purchase_id"]),
            credits=str(credit_amount),
            total=str(total),
        )
    return result


async def _lock_purchase(
    db: AsyncSession, purchase_id: uuid.UUID, tenant_id: uuid.UUID | None
) -> CreditPurchase | None:
    query = select(CreditPurchase).where(CreditPurchase.id == purchase_id)
    if tenant_id is not None:
        query = query.where(CreditPurchase.tenant_id == tenant_id)
    result = await db.execute(query.with_for_update().execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def confirm_purchase(
    db: AsyncSession,
    purchase_id: uuid.UUID,
    *,
    payment_reference: str | None = None,
    tenant_id: uuid.UUID | None = None,
    expires_at: datetime | None = None,
    cache: BalanceCache | None = None,
) -> CreditResult:
    """Payment succeeded: complete the purchase and allocate its credits.

    Confirming an already completed purchase returns it with ``duplicate=True``.
    """

    async def work() -> CreditResult:
        purchase = await _lock_purchase(db, purchase_id, tenant_id)
        if purchase is None:
            return Err(CreditErrorKind.NOT_FOUND, purchase_id=str(purchase_id))
        if purchase.status == "completed":
            return Ok(purchase_payload(purchase), duplicate=True)
        if purchase.status != "pending":
            return Err(CreditErrorKind.INVALID_STATE, purchase_id=str(purchase_id), status=purchase.status)

        allocation = await allocate_within(
            db,
            purchase.tenant_id,
            purchase.entity_type,
            purchase.entity_id,
            Decimal(purchase.credit_amount),
            source="purchase",
            source_id=str(purchase.id),
            initiated_by=purchase.requested_by,
            description=f"Credit purchase via {purchase.payment_method}",
            expires_at=expires_at or purchase.expires_at,
            purchase_id=purchase.id,
        )
        purchase.status = "completed"
        purchase.completed_at = utcnow()
        purchase.transaction_id = allocation["transaction_id"]
        if payment_reference:
            purchase.payment_reference = payment_reference
        await db.flush()
        return Ok(purchase_payload(purchase), new_balance=allocation["new_balance"], duplicate=False)

    result = await run_atomic(db, work, label="confirm_purchase")
    if result.ok and not result.is_duplicate:
        await invalidate_balances(cache, result.data["tenant_id"], result.data["entity_id"])
        logger.info(
            "credits.purchase.completed",
            purchase_id=str(purchase_id),
            tenant_id=str(result.data["tenant_id"]),
            credits=str(result.data["credit_amount"]),
        )
    return result


async def fail_purchase(
    db: AsyncSession,
    purchase_id: uuid.UUID,
    reason: str,
    *,
    tenant_id: uuid.UUID | None = None,
) -> CreditResult:
    async def work() -> CreditResult:
        purchase = await _lock_purchase(db, purchase_id, tenant_id)
        if purchase is None:
            return Err(CreditErrorKind.NOT_FOUND, purchase_id=str(purchase_id))
        if purchase.status != "pending":
            return Err(CreditErrorKind.INVALID_STATE, purchase_id=str(purchase_id), status=purchase.status)
        purchase.status = "failed"
        purchase.failure_reason = reason
        await db.flush()
        return Ok(purchase_payload(purchase))

    result = await run_atomic(db, work, label="fail_purchase")
    if result.ok:
        logger.warning("credits.purchase.failed", purchase_id=str(purchase_id), reason=reason)
    return result


async def list_purchases(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    page: int = 1,
    page_size: int = 20,
    status: str | None = None,
) -> tuple[list[CreditPurchase], int]:
    query = select(CreditPurchase).where(CreditPurchase.tenant_id == tenant_id)
    count_query = select(func.count()).select_from(CreditPurchase).where(CreditPurchase.tenant_id == tenant_id)
    if status:
        query = query.where(CreditPurchase.status == status)
        count_query = count_query.where(CreditPurchase.status == status)
    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(CreditPurchase.created_at.desc()).offset((max(page, 1) - 1) * page_size).limit(page_size)
    )
    return list(result.scalars().all()), total
