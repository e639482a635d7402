"""Check-and-deduct for billable actions.

Every step, pricing included, runs inside one transaction that holds the
balance row lock, so two requests for the same entity cannot both pass the
sufficiency check on the same credits.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.cache import BalanceCache
from credit_engine.models.base import utcnow
from credit_engine.models.credit_transaction import TransactionType
from credit_engine.models.credit_usage import CreditUsage
from credit_engine.services.atomic import run_atomic
from credit_engine.services.balance_store import (
    DEFAULT_ENTITY_TYPE,
    ZERO,
    apply_delta,
    insufficient,
    invalidate_balances,
    lock_balance,
    primary_entity,
)
from credit_engine.services.config_resolver import EffectiveConfig, resolve_cost, split_code
from credit_engine.services.credit_result import CreditErrorKind, CreditResult, Err, Ok
from credit_engine.services.expiry_service import GrantSlice, draw_down_grants, return_grant_slices
from credit_engine.services.ledger_service import find_operation_transaction, record_transaction
from credit_engine.services.pricing import PriceQuote, UsageCounters, period_start, quote_price

logger = structlog.get_logger()


def _usage_payload(usage: CreditUsage) -> dict[str, Any]:
    charged = Decimal(usage.credits_charged)
    remaining = Decimal(usage.remaining_credits)
    return {
        "usage_id": usage.id,
        "transaction_id": usage.transaction_id,
        "operation_code": usage.operation_code,
        "operation_id": usage.operation_id,
        "units": usage.units,
        "free_units": usage.free_units,
        "overage_units": usage.overage_units,
        "credits_charged": charged,
        "previous_balance": remaining + charged,
        "remaining_credits": remaining,
        "config_source": usage.config_source,
    }


async def _find_prior_usage(
    db: AsyncSession, tenant_id: uuid.UUID, entity_id: uuid.UUID, operation_id: str
) -> CreditUsage | None:
    result = await db.execute(
        select(CreditUsage).where(
            CreditUsage.tenant_id == tenant_id,
            CreditUsage.entity_id == entity_id,
            CreditUsage.operation_id == operation_id,
        )
    )
    return result.scalar_one_or_none()


async def load_usage_counters(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entity_id: uuid.UUID,
    config: EffectiveConfig,
) -> UsageCounters:
    """Rolling-period counters for the operation being priced."""
    if not config.free_allowance and not config.volume_tiers:
        return UsageCounters()

    now = utcnow()
    base = [
        CreditUsage.tenant_id == tenant_id,
        CreditUsage.entity_id == entity_id,
        CreditUsage.operation_code == config.code,
    ]
    allowance_since = period_start(config.free_allowance_period, now)
    row = (
        await db.execute(
            select(
                func.coalesce(func.sum(CreditUsage.free_units), 0),
                func.coalesce(func.sum(CreditUsage.units - CreditUsage.free_units), 0),
            ).where(*base, CreditUsage.created_at >= allowance_since)
        )
    ).one()
    free_used, billed = int(row[0]), int(row[1])

    overage_used = 0
    if config.overage_limit is not None:
        overage_since = period_start(config.overage_period, now)
        overage_used = int(
            (
                await db.execute(
                    select(func.coalesce(func.sum(CreditUsage.overage_units), 0)).where(
                        *base, CreditUsage.created_at >= overage_since
                    )
                )
            ).scalar()
            or 0
        )
    return UsageCounters(free_units_used=free_used, billed_units_in_period=billed, overage_units_used=overage_used)


async def consume_credits(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    operation_code: str,
    *,
    user_id: uuid.UUID | None = None,
    entity_type: str = DEFAULT_ENTITY_TYPE,
    entity_id: uuid.UUID | None = None,
    requested_cost: Decimal | None = None,
    units: int = 1,
    operation_id: str | None = None,
    description: str | None = None,
    metadata: dict | None = None,
    cache: BalanceCache | None = None,
) -> CreditResult:
    """Charge the resolved price of an operation against an entity's balance.

    `requested_cost` is the caller's estimate. It is recorded and logged when
    it disagrees, but the deduction is always the resolved price. A repeated
    `operation_id` returns the first result with ``duplicate=True``.
    """
    entity_id = primary_entity(tenant_id, entity_id)
    operation_code = (operation_code or "").strip()
    if not split_code(operation_code):
        return Err(CreditErrorKind.INVALID_OPERATION, operation_code=operation_code)
    if units < 1:
        return Err(CreditErrorKind.INVALID_AMOUNT, units=units)
    if requested_cost is not None and requested_cost < 0:
        return Err(CreditErrorKind.INVALID_AMOUNT, requested_cost=float(requested_cost))

    async def work() -> CreditResult:
        balance = await lock_balance(db, tenant_id, entity_id)

        if operation_id:
            prior = await _find_prior_usage(db, tenant_id, entity_id, operation_id)
            if prior is not None:
                return Ok(_usage_payload(prior), duplicate=True)

        if balance is not None and not balance.is_active:
            return Err(CreditErrorKind.ENTITY_INACTIVE, entity_type=entity_type, entity_id=str(entity_id))

        config = await resolve_cost(db, operation_code, tenant_id)
        counters = await load_usage_counters(db, tenant_id, entity_id, config)
        priced = quote_price(config, units, counters)
        if not priced.ok:
            return priced
        quote: PriceQuote = priced.data["quote"]

        available = Decimal(balance.available_credits) if balance is not None else ZERO
        if quote.credits > available:
            return insufficient(
                available, quote.credits, operation_code=operation_code, entity_type=entity_type
            )

        previous = new = available
        transaction_id = None
        if quote.credits > ZERO:
            previous, new = apply_delta(balance, -quote.credits)
            balance.total_consumed = Decimal(balance.total_consumed) + quote.credits
            slices = await draw_down_grants(db, tenant_id, entity_id, quote.credits)
            ledger_metadata = dict(metadata or {})
            ledger_metadata.update(units=units, free_units=quote.free_units, overage_units=quote.overage_units)
            if slices:
                ledger_metadata["grant_slices"] = [piece.to_metadata() for piece in slices]
            row = record_transaction(
                db,
                balance,
                TransactionType.CONSUMPTION,
                -quote.credits,
                previous,
                new,
                operation_code=operation_code,
                operation_id=operation_id,
                description=description,
                metadata=ledger_metadata,
                initiated_by=user_id,
            )
            transaction_id = row.id

        usage = CreditUsage(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            entity_id=entity_id,
            user_id=user_id,
            operation_code=operation_code,
            operation_id=operation_id,
            units=units,
            free_units=quote.free_units,
            overage_units=quote.overage_units,
            credits_charged=quote.credits,
            requested_cost=requested_cost,
            config_source=config.source,
            remaining_credits=new,
            transaction_id=transaction_id,
        )
        db.add(usage)
        await db.flush()

        return Ok(
            usage_id=usage.id,
            transaction_id=transaction_id,
            operation_code=operation_code,
            operation_id=operation_id,
            units=units,
            free_units=quote.free_units,
            overage_units=quote.overage_units,
            credits_charged=quote.credits,
            previous_balance=previous,
            remaining_credits=new,
            config_source=config.source,
            duplicate=False,
        )

    result = await run_atomic(db, work, label="consume")

    log = logger.bind(
        tenant_id=str(tenant_id),
        entity_type=entity_type,
        entity_id=str(entity_id),
        operation_code=operation_code,
        operation_id=operation_id,
    )
    if not result.ok:
        log.info("credits.consume.rejected", reason=str(result.reason), **result.details)
        return result
    if result.is_duplicate:
        log.info("credits.consume.duplicate")
        return result

    await invalidate_balances(cache, tenant_id, entity_id)
    charged = result.data["credits_charged"]
    if requested_cost is not None and Decimal(str(requested_cost)) != charged:
        log.warning("credits.consume.cost_mismatch", requested_cost=str(requested_cost), charged=str(charged))
    log.info(
        "credits.consumed",
        credits=str(charged),
        remaining=str(result.data["remaining_credits"]),
        source=result.data["config_source"],
    )
    return result


async def refund_consumption(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    operation_id: str,
    *,
    entity_id: uuid.UUID | None = None,
    initiated_by: uuid.UUID | None = None,
    reason: str | None = None,
    cache: BalanceCache | None = None,
) -> CreditResult:
    """Credit back a prior consumption once. A second refund is a duplicate."""
    entity_id = primary_entity(tenant_id, entity_id)

    async def work() -> CreditResult:
        balance = await lock_balance(db, tenant_id, entity_id)
        consumed = await find_operation_transaction(
            db, tenant_id, operation_id, TransactionType.CONSUMPTION, entity_id=entity_id
        )
        if balance is None or consumed is None:
            return Err(CreditErrorKind.NOT_FOUND, operation_id=operation_id)

        prior = await find_operation_transaction(db, tenant_id, operation_id, TransactionType.REFUND, entity_id=entity_id)
        if prior is not None:
            return Ok(
                transaction_id=prior.id,
                operation_id=operation_id,
                refunded_credits=Decimal(prior.amount),
                new_balance=Decimal(prior.new_balance),
                duplicate=True,
            )

        amount = Decimal(consumed.amount)
        drawn = (consumed.metadata_json or {}).get("grant_slices", [])
        previous, new = apply_delta(balance, amount)
        balance.total_consumed = max(ZERO, Decimal(balance.total_consumed) - amount)
        row = record_transaction(
            db,
            balance,
            TransactionType.REFUND,
            amount,
            previous,
            new,
            operation_code=consumed.operation_code,
            operation_id=operation_id,
            description=reason or f"Refund of {consumed.operation_code}",
            metadata={"refunded_transaction_id": str(consumed.id), **({"grant_slices": drawn} if drawn else {})},
            initiated_by=initiated_by,
        )
        await return_grant_slices(
            db, tenant_id, entity_id, [GrantSlice.from_metadata(piece) for piece in drawn], source_id=operation_id
        )
        await db.flush()
        return Ok(
            transaction_id=row.id,
            operation_id=operation_id,
            refunded_credits=amount,
            new_balance=new,
            duplicate=False,
        )

    result = await run_atomic(db, work, label="refund")
    if result.ok and not result.is_duplicate:
        await invalidate_balances(cache, tenant_id, entity_id)
        logger.info(
            "credits.refunded",
            tenant_id=str(tenant_id),
            entity_id=str(entity_id),
            operation_id=operation_id,
            credits=str(result.data["refunded_credits"]),
        )
    return result
