"""Credit pricing resolution.

An operation code such as ``crm.leads.create`` is priced by the first active
config found along a fixed chain: tenant operation, tenant module, tenant
application, then the same three levels globally, and finally the built-in
fallback. Module and application lookups walk the same chain starting one
level higher. Resolution never raises; an unpriced code gets the fallback.

Writes go through `set_config`, which validates the row and keeps at most one
active config per (level, code, tenant). A partial unique index backs that up
for writers that race on a key with no active row yet.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.config import settings
from credit_engine.models.credit_config import (
    CONFIG_LEVELS,
    CONFIG_PERIODS,
    CONFIG_UNITS,
    PRICING_FIELDS,
    CreditConfig,
)
from credit_engine.services.atomic import run_atomic
from credit_engine.services.credit_result import ConcurrencyConflict, CreditResult, InvalidConfiguration, Ok

logger = structlog.get_logger()

FALLBACK_SOURCE = "fallback"

_DEFAULTS: dict[str, Any] = {
    "unit": "operation",
    "unit_multiplier": Decimal("1"),
    "free_allowance": 0,
    "free_allowance_period": "month",
    "volume_tiers": [],
    "allow_overage": True,
    "overage_limit": None,
    "overage_period": "month",
    "overage_cost": None,
}


@dataclass(frozen=True)
class EffectiveConfig:
    """Fully populated pricing for one code after fallthrough and merging."""

    code: str
    level: str
    source: str
    credit_cost: Decimal
    unit: str = "operation"
    unit_multiplier: Decimal = Decimal("1")
    free_allowance: int = 0
    free_allowance_period: str = "month"
    volume_tiers: list[dict[str, Any]] = field(default_factory=list)
    allow_overage: bool = True
    overage_limit: int | None = None
    overage_period: str = "month"
    overage_cost: Decimal | None = None
    config_id: uuid.UUID | None = None
    tenant_id: uuid.UUID | None = None
    inherited_from: list[str] = field(default_factory=list)

    @property
    def is_fallback(self) -> bool:
        return self.source == FALLBACK_SOURCE

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["is_fallback"] = self.is_fallback
        return data


# ---------------------------------------------------------------------------
# Code hierarchy
# ---------------------------------------------------------------------------


def split_code(code: str) -> list[str]:
    return [part for part in code.strip().split(".") if part]


def module_code_for(operation_code: str) -> str | None:
    parts = split_code(operation_code)
    return ".".join(parts[:2]) if len(parts) >= 3 else None


def application_code_for(code: str) -> str | None:
    parts = split_code(code)
    return parts[0] if len(parts) >= 2 else None


def level_chain(level: str, code: str) -> list[tuple[str, str]]:
    """(level, code) pairs to try, most specific first, for one scope."""
    chain = [(level, code)]
    if level == "operation":
        module_code = module_code_for(code)
        if module_code:
            chain.append(("module", module_code))
    if level in ("operation", "module"):
        app_code = application_code_for(code)
        if app_code:
            chain.append(("application", app_code))
    return chain


# ---------------------------------------------------------------------------
# Resolver strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScopedLevelStrategy:
    """Matches an active row for one (level, code) in tenant or global scope."""

    level: str
    code: str
    tenant_scoped: bool

    @property
    def name(self) -> str:
        return f"{'tenant' if self.tenant_scoped else 'global'}_{self.level}"

    def match(self, candidates: Sequence[CreditConfig], tenant_id: uuid.UUID | None) -> CreditConfig | None:
        if self.tenant_scoped and tenant_id is None:
            return None
        wanted_tenant = tenant_id if self.tenant_scoped else None
        rows = [
            row for row in candidates
            if row.is_active
            and row.config_level == self.level
            and row.code == self.code
            and row.tenant_id == wanted_tenant
        ]
        if not rows:
            return None
        return max(rows, key=lambda row: row.priority)


def build_strategies(level: str, code: str) -> list[ScopedLevelStrategy]:
    chain = level_chain(level, code)
    return [ScopedLevelStrategy(lvl, c, True) for lvl, c in chain] + [
        ScopedLevelStrategy(lvl, c, False) for lvl, c in chain
    ]


async def _load_candidates(
    db: AsyncSession,
    strategies: Sequence[ScopedLevelStrategy],
    tenant_id: uuid.UUID | None,
) -> list[CreditConfig]:
    pairs = {(s.level, s.code) for s in strategies}
    tenant_clause = CreditConfig.tenant_id.is_(None)
    if tenant_id is not None:
        tenant_clause = or_(tenant_clause, CreditConfig.tenant_id == tenant_id)
    result = await db.execute(
        select(CreditConfig).where(
            CreditConfig.is_active.is_(True),
            tenant_clause,
            or_(*[and_(CreditConfig.config_level == lvl, CreditConfig.code == c) for lvl, c in pairs]),
        )
    )
    return list(result.scalars().all())


def _fallback(level: str, code: str, tenant_id: uuid.UUID | None) -> EffectiveConfig:
    return EffectiveConfig(
        code=code,
        level=level,
        source=FALLBACK_SOURCE,
        credit_cost=Decimal(str(settings.CREDIT_FALLBACK_COST)),
        tenant_id=tenant_id,
    )


def _merge(
    level: str,
    code: str,
    matches: list[tuple[str, CreditConfig]],
) -> EffectiveConfig:
    """Collapse the winning row and, while rows are marked inherited, the rows below it."""
    source, winner = matches[0]
    values: dict[str, Any] = {name: getattr(winner, name) for name in PRICING_FIELDS}
    inherited_from: list[str] = []

    current = winner
    for lower_source, lower in matches[1:]:
        if not current.is_inherited:
            break
        for name in PRICING_FIELDS:
            if values[name] is None and getattr(lower, name) is not None:
                values[name] = getattr(lower, name)
        inherited_from.append(lower_source)
        current = lower

    for name, default in _DEFAULTS.items():
        if values[name] is None:
            values[name] = list(default) if isinstance(default, list) else default
    if values["credit_cost"] is None:
        values["credit_cost"] = Decimal(str(settings.CREDIT_FALLBACK_COST))

    return EffectiveConfig(
        code=code,
        level=level,
        source=source,
        credit_cost=Decimal(str(values["credit_cost"])),
        unit=values["unit"],
        unit_multiplier=Decimal(str(values["unit_multiplier"])),
        free_allowance=int(values["free_allowance"]),
        free_allowance_period=values["free_allowance_period"],
        volume_tiers=list(values["volume_tiers"]),
        allow_overage=bool(values["allow_overage"]),
        overage_limit=values["overage_limit"],
        overage_period=values["overage_period"],
        overage_cost=None if values["overage_cost"] is None else Decimal(str(values["overage_cost"])),
        config_id=winner.id,
        tenant_id=winner.tenant_id,
        inherited_from=inherited_from,
    )


async def resolve_config(
    db: AsyncSession,
    level: str,
    code: str,
    tenant_id: uuid.UUID | None = None,
) -> EffectiveConfig:
    if level not in CONFIG_LEVELS or not split_code(code):
        return _fallback(level, code, tenant_id)

    strategies = build_strategies(level, code)
    candidates = await _load_candidates(db, strategies, tenant_id)

    matches: list[tuple[str, CreditConfig]] = []
    for strategy in strategies:
        row = strategy.match(candidates, tenant_id)
        if row is not None:
            matches.append((strategy.name, row))

    if not matches:
        logger.debug("credits.config.fallback", level=level, code=code, tenant_id=str(tenant_id))
        return _fallback(level, code, tenant_id)
    return _merge(level, code, matches)


async def resolve_cost(db: AsyncSession, operation_code: str, tenant_id: uuid.UUID | None) -> EffectiveConfig:
    return await resolve_config(db, "operation", operation_code, tenant_id)


async def get_operation_config(db: AsyncSession, code: str, tenant_id: uuid.UUID | None = None) -> EffectiveConfig:
    return await resolve_config(db, "operation", code, tenant_id)


async def get_module_config(db: AsyncSession, code: str, tenant_id: uuid.UUID | None = None) -> EffectiveConfig:
    return await resolve_config(db, "module", code, tenant_id)


async def get_app_config(db: AsyncSession, code: str, tenant_id: uuid.UUID | None = None) -> EffectiveConfig:
    return await resolve_config(db, "application", code, tenant_id)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _as_decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidConfiguration(f"{name} must be a number", field=name) from exc


def _validate_tiers(tiers: Any) -> list[dict[str, Any]]:
    if not isinstance(tiers, list):
        raise InvalidConfiguration("volume_tiers must be a list", field="volume_tiers")
    cleaned: list[dict[str, Any]] = []
    previous_bound = 0
    for index, tier in enumerate(tiers):
        if not isinstance(tier, dict) or "credit_cost" not in tier:
            raise InvalidConfiguration(f"volume tier {index} needs a credit_cost", field="volume_tiers")
        cost = _as_decimal(tier["credit_cost"], "volume_tiers")
        if cost < 0:
            raise InvalidConfiguration(f"volume tier {index} has a negative cost", field="volume_tiers")
        up_to = tier.get("up_to")
        if up_to is None:
            if index != len(tiers) - 1:
                raise InvalidConfiguration("only the last volume tier may be open-ended", field="volume_tiers")
        else:
            if isinstance(up_to, bool) or not isinstance(up_to, int) or up_to <= previous_bound:
                raise InvalidConfiguration(
                    "volume tier bounds must be increasing positive integers", field="volume_tiers"
                )
            previous_bound = up_to
        cleaned.append({"up_to": up_to, "credit_cost": float(cost)})
    return cleaned


def validate_config_data(data: dict[str, Any]) -> dict[str, Any]:
    """Check a config payload and return the normalised field values.

    Raises InvalidConfiguration; consumption never sees an invalid row.
    """
    cleaned: dict[str, Any] = {}

    for name in ("credit_cost", "overage_cost"):
        if data.get(name) is not None:
            value = _as_decimal(data[name], name)
            if value < 0:
                raise InvalidConfiguration(f"{name} cannot be negative", field=name)
            cleaned[name] = value

    if data.get("unit_multiplier") is not None:
        multiplier = _as_decimal(data["unit_multiplier"], "unit_multiplier")
        if multiplier <= 0:
            raise InvalidConfiguration("unit_multiplier must be positive", field="unit_multiplier")
        cleaned["unit_multiplier"] = multiplier

    if data.get("unit") is not None:
        if data["unit"] not in CONFIG_UNITS:
            raise InvalidConfiguration(f"unknown unit {data['unit']!r}", field="unit")
        cleaned["unit"] = data["unit"]

    for name in ("free_allowance_period", "overage_period"):
        if data.get(name) is not None:
            if data[name] not in CONFIG_PERIODS:
                raise InvalidConfiguration(f"unknown period {data[name]!r}", field=name)
            cleaned[name] = data[name]

    for name in ("free_allowance", "overage_limit"):
        if data.get(name) is not None:
            value = data[name]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidConfiguration(f"{name} must be a non-negative integer", field=name)
            cleaned[name] = value

    if data.get("volume_tiers") is not None:
        cleaned["volume_tiers"] = _validate_tiers(data["volume_tiers"])

    if data.get("allow_overage") is not None:
        cleaned["allow_overage"] = bool(data["allow_overage"])

    if cleaned.get("allow_overage") is False and (
        cleaned.get("overage_limit") is not None or cleaned.get("overage_cost") is not None
    ):
        raise InvalidConfiguration(
            "overage_limit and overage_cost cannot be set when overage is disallowed", field="allow_overage"
        )
    if not data.get("is_inherited") and not cleaned.get("free_allowance") and (
        cleaned.get("overage_limit") is not None or cleaned.get("allow_overage") is False
    ):
        raise InvalidConfiguration("overage settings require a free allowance", field="free_allowance")

    for name in ("name", "description"):
        if name in data:
            cleaned[name] = data[name]
    cleaned["is_inherited"] = bool(data.get("is_inherited", False))
    if data.get("priority") is not None:
        cleaned["priority"] = int(data["priority"])
    return cleaned


async def _active_rows(
    db: AsyncSession, level: str, code: str, tenant_id: uuid.UUID | None
) -> list[CreditConfig]:
    tenant_clause = CreditConfig.tenant_id.is_(None) if tenant_id is None else CreditConfig.tenant_id == tenant_id
    result = await db.execute(
        select(CreditConfig)
        .where(
            CreditConfig.config_level == level,
            CreditConfig.code == code,
            tenant_clause,
            CreditConfig.is_active.is_(True),
        )
        .order_by(CreditConfig.priority.desc(), CreditConfig.created_at.desc())
        .with_for_update()
    )
    return list(result.scalars().all())


async def set_config(
    db: AsyncSession,
    level: str,
    code: str,
    config_data: dict[str, Any],
    user_id: uuid.UUID | None = None,
    tenant_id: uuid.UUID | None = None,
) -> CreditConfig:
    """Create or replace the active config for (level, code, tenant).

    Flushes but does not commit; the caller owns the transaction.
    """
    if level not in CONFIG_LEVELS:
        raise InvalidConfiguration(f"unknown config level {level!r}", field="config_level")
    if not split_code(code):
        raise InvalidConfiguration("code cannot be empty", field="code")

    values = validate_config_data(config_data)
    rows = await _active_rows(db, level, code, tenant_id)

    if rows:
        config = rows[0]
        for stale in rows[1:]:
            stale.is_active = False
        for name in PRICING_FIELDS:
            setattr(config, name, values.get(name))
        config.updated_by = user_id
    else:
        config = CreditConfig(
            config_level=level,
            code=code.strip(),
            tenant_id=tenant_id,
            scope="organization" if tenant_id else "global",
            created_by=user_id,
            updated_by=user_id,
            **{name: values.get(name) for name in PRICING_FIELDS},
        )
        db.add(config)

    config.is_inherited = values["is_inherited"]
    for name in ("name", "description", "priority"):
        if name in values:
            setattr(config, name, values[name])

    await db.flush()
    logger.info(
        "credits.config.saved",
        level=level,
        code=code,
        tenant_id=str(tenant_id) if tenant_id else None,
        config_id=str(config.id),
        user_id=str(user_id) if user_id else None,
    )
    return config


async def _committed(db: AsyncSession, work, label: str) -> list[CreditConfig]:
    result = await run_atomic(db, work, label=label)
    if not result.ok:
        raise ConcurrencyConflict(f"{label} gave up after {result.details.get('attempts')} attempts")
    return [await db.get(CreditConfig, config_id) for config_id in result.data["config_ids"]]


async def save_config(
    db: AsyncSession,
    level: str,
    code: str,
    config_data: dict[str, Any],
    user_id: uuid.UUID | None = None,
    tenant_id: uuid.UUID | None = None,
) -> CreditConfig:
    """`set_config` in its own committed transaction.

    Two first writes for the same key both see no active row; the unique
    index rejects the second insert and the retry turns it into an update.
    """

    async def work() -> CreditResult:
        config = await set_config(db, level, code, config_data, user_id, tenant_id)
        return Ok(config_ids=[config.id])

    configs = await _committed(db, work, "config_write")
    return configs[0]


async def set_configs(
    db: AsyncSession,
    entries: Sequence[dict[str, Any]],
    user_id: uuid.UUID | None = None,
    tenant_id: uuid.UUID | None = None,
) -> list[CreditConfig]:
    """Write several configs in one transaction; one bad entry rejects them all.

    Each entry is ``{"level": ..., "code": ..., "config": {...}}``.
    """

    async def work() -> CreditResult:
        ids = []
        for index, entry in enumerate(entries):
            level, code = entry.get("level"), entry.get("code") or ""
            try:
                config = await set_config(db, level, code, entry.get("config") or {}, user_id, tenant_id)
            except InvalidConfiguration as exc:
                raise InvalidConfiguration(f"entry {index} ({level} {code}): {exc}", field=exc.field) from exc
            ids.append(config.id)
        return Ok(config_ids=ids)

    configs = await _committed(db, work, "config_bulk_write")
    logger.info(
        "credits.config.bulk_saved",
        count=len(configs),
        tenant_id=str(tenant_id) if tenant_id else None,
        user_id=str(user_id) if user_id else None,
    )
    return configs


async def set_operation_config(db, code, config_data, user_id=None, tenant_id=None) -> CreditConfig:
    return await set_config(db, "operation", code, config_data, user_id, tenant_id)


async def set_module_config(db, code, config_data, user_id=None, tenant_id=None) -> CreditConfig:
    return await set_config(db, "module", code, config_data, user_id, tenant_id)


async def set_app_config(db, code, config_data, user_id=None, tenant_id=None) -> CreditConfig:
    return await set_config(db, "application", code, config_data, user_id, tenant_id)


async def deactivate_config(
    db: AsyncSession, level: str, code: str, tenant_id: uuid.UUID | None = None
) -> int:
    rows = await _active_rows(db, level, code, tenant_id)
    for row in rows:
        row.is_active = False
    await db.flush()
    return len(rows)


async def list_configs(
    db: AsyncSession,
    tenant_id: uuid.UUID | None = None,
    level: str | None = None,
    include_inactive: bool = False,
) -> list[CreditConfig]:
    """Tenant rows plus global rows, for admin screens."""
    tenant_clause = CreditConfig.tenant_id.is_(None)
    if tenant_id is not None:
        tenant_clause = or_(tenant_clause, CreditConfig.tenant_id == tenant_id)
    query = select(CreditConfig).where(tenant_clause)
    if level:
        query = query.where(CreditConfig.config_level == level)
    if not include_inactive:
        query = query.where(CreditConfig.is_active.is_(True))
    result = await db.execute(query.order_by(CreditConfig.config_level, CreditConfig.code))
    return list(result.scalars().all())
