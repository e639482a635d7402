"""Turn an effective config and recent usage into a credit amount.

Pure functions; the consumption service loads the usage counters inside its
transaction and passes them in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from credit_engine.services.config_resolver import EffectiveConfig
from credit_engine.services.credit_result import CreditErrorKind, CreditResult, Err, Ok

PERIOD_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}
CREDIT_QUANTUM = Decimal("0.0001")


def period_start(period: str, now: datetime) -> datetime:
    return now - timedelta(days=PERIOD_DAYS.get(period, 30))


@dataclass(frozen=True)
class UsageCounters:
    free_units_used: int = 0
    billed_units_in_period: int = 0
    overage_units_used: int = 0


@dataclass(frozen=True)
class PriceQuote:
    units: int
    free_units: int
    billable_units: int
    overage_units: int
    credits: Decimal
    unit_price: Decimal | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "units": self.units,
            "free_units": self.free_units,
            "billable_units": self.billable_units,
            "overage_units": self.overage_units,
            "credits": self.credits,
        }


def graduated_tier_cost(tiers: list[dict[str, Any]], already_billed: int, units: int) -> Decimal:
    """Cost of the next `units` after `already_billed`, each unit at its tier's price.

    Tier bounds are cumulative (`up_to` = last unit number in the tier). Units
    past a closed last tier stay at that tier's price.
    """
    total = Decimal("0")
    first = already_billed + 1
    last = already_billed + units
    lower = 0
    for index, tier in enumerate(tiers):
        cost = Decimal(str(tier["credit_cost"]))
        upper = tier.get("up_to")
        if upper is None or index == len(tiers) - 1:
            upper = max(last, upper or 0)
        overlap = min(last, upper) - max(first, lower + 1) + 1
        if overlap > 0:
            total += cost * overlap
        lower = upper
        if lower >= last:
            break
    return total


def quote_price(config: EffectiveConfig, units: int, counters: UsageCounters) -> CreditResult:
    """Price `units` of an operation.

    Ok data carries ``quote``; rejections are ``allowance_exhausted`` and
    ``overage_limit_exceeded``.
    """
    free_remaining = max(0, config.free_allowance - counters.free_units_used)
    free_units = min(units, free_remaining)
    billable = units - free_units

    overage_units = 0
    if billable and config.free_allowance > 0:
        if not config.allow_overage:
            return Err(
                CreditErrorKind.ALLOWANCE_EXHAUSTED,
                operation_code=config.code,
                free_allowance=config.free_allowance,
                period=config.free_allowance_period,
                used=counters.free_units_used,
                requested_units=units,
            )
        if config.overage_limit is not None and counters.overage_units_used + billable > config.overage_limit:
            return Err(
                CreditErrorKind.OVERAGE_LIMIT_EXCEEDED,
                operation_code=config.code,
                overage_limit=config.overage_limit,
                period=config.overage_period,
                used=counters.overage_units_used,
                requested_units=billable,
            )
        overage_units = billable

    unit_price: Decimal | None
    if overage_units and config.overage_cost is not None:
        unit_price = config.overage_cost * config.unit_multiplier
        credits = unit_price * billable
    elif config.volume_tiers:
        unit_price = None
        credits = graduated_tier_cost(config.volume_tiers, counters.billed_units_in_period, billable)
        credits *= config.unit_multiplier
    else:
        unit_price = config.credit_cost * config.unit_multiplier
        credits = unit_price * billable

    return Ok(
        quote=PriceQuote(
            units=units,
            free_units=free_units,
            billable_units=billable,
            overage_units=overage_units,
            credits=credits.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP),
            unit_price=unit_price,
        )
    )
