from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.database import get_db
from credit_engine.core.dependencies import Caller, get_caller, require_admin
from credit_engine.models.credit_config import CreditConfig
from credit_engine.schemas.credit_config import (
    ConfigLevel,
    CreditConfigBulkWrite,
    CreditConfigResponse,
    CreditConfigWrite,
    EffectiveConfigResponse,
)
from credit_engine.schemas.validators import validate_code
from credit_engine.services import config_resolver
from credit_engine.services.credit_result import ConcurrencyConflict, InvalidConfiguration

logger = structlog.get_logger()

router = APIRouter(prefix="/credit-configs", tags=["credit-configs"])


def _checked_code(code: str) -> str:
    try:
        return validate_code(code)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


def _config_response(config: CreditConfig) -> CreditConfigResponse:
    return CreditConfigResponse(
        id=str(config.id),
        config_level=config.config_level,
        code=config.code,
        tenant_id=str(config.tenant_id) if config.tenant_id else None,
        scope=config.scope,
        name=config.name,
        credit_cost=float(config.credit_cost) if config.credit_cost is not None else None,
        unit=config.unit,
        unit_multiplier=float(config.unit_multiplier) if config.unit_multiplier is not None else None,
        free_allowance=config.free_allowance,
        free_allowance_period=config.free_allowance_period,
        volume_tiers=config.volume_tiers,
        allow_overage=config.allow_overage,
        overage_limit=config.overage_limit,
        overage_period=config.overage_period,
        overage_cost=float(config.overage_cost) if config.overage_cost is not None else None,
        is_inherited=config.is_inherited,
        is_active=config.is_active,
        priority=config.priority,
        updated_at=config.updated_at.isoformat() if config.updated_at else None,
    )


@router.get("", response_model=list[CreditConfigResponse])
async def list_configs(
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    level: ConfigLevel | None = None,
    include_inactive: bool = Query(False),
):
    configs = await config_resolver.list_configs(db, caller.tenant_id, level=level, include_inactive=include_inactive)
    return [_config_response(c) for c in configs]


@router.get("/{level}/{code}", response_model=EffectiveConfigResponse)
async def get_effective_config(
    level: Annotated[ConfigLevel, Path()],
    code: str,
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    effective = await config_resolver.resolve_config(db, level, _checked_code(code), caller.tenant_id)
    data = effective.to_dict()
    return EffectiveConfigResponse(
        code=effective.code,
        level=effective.level,
        source=effective.source,
        is_fallback=effective.is_fallback,
        credit_cost=float(effective.credit_cost),
        unit=effective.unit,
        unit_multiplier=float(effective.unit_multiplier),
        free_allowance=effective.free_allowance,
        free_allowance_period=effective.free_allowance_period,
        volume_tiers=data["volume_tiers"],
        allow_overage=effective.allow_overage,
        overage_limit=effective.overage_limit,
        overage_period=effective.overage_period,
        overage_cost=float(effective.overage_cost) if effective.overage_cost is not None else None,
        config_id=str(effective.config_id) if effective.config_id else None,
        inherited_from=effective.inherited_from,
    )


def _invalid(exc: InvalidConfiguration) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"reason": "invalid_configuration", "field": exc.field, "message": str(exc)},
    )


def _conflict(exc: ConcurrencyConflict) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"reason": "concurrency_conflict", "message": str(exc)},
    )


def _write_scope(caller: Caller, global_scope: bool):
    if global_scope and not caller.is_superadmin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin privileges required for global configs",
        )
    return None if global_scope else caller.tenant_id


@router.put("", response_model=list[CreditConfigResponse])
async def bulk_set_configs(
    body: CreditConfigBulkWrite,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    tenant_id = _write_scope(caller, body.global_scope)
    entries = [
        {"level": entry.level, "code": entry.code, "config": entry.config.to_config_data()}
        for entry in body.configs
    ]
    try:
        configs = await config_resolver.set_configs(db, entries, caller.user_id, tenant_id)
    except InvalidConfiguration as exc:
        raise _invalid(exc)
    except ConcurrencyConflict as exc:
        raise _conflict(exc)
    return [_config_response(c) for c in configs]


@router.put("/{level}/{code}", response_model=CreditConfigResponse)
async def set_config(
    level: Annotated[ConfigLevel, Path()],
    code: str,
    body: CreditConfigWrite,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    tenant_id = _write_scope(caller, body.global_scope)
    try:
        config = await config_resolver.save_config(
            db, level, _checked_code(code), body.to_config_data(), caller.user_id, tenant_id
        )
    except InvalidConfiguration as exc:
        raise _invalid(exc)
    except ConcurrencyConflict as exc:
        raise _conflict(exc)
    await db.refresh(config)
    return _config_response(config)


@router.delete("/{level}/{code}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_config(
    level: Annotated[ConfigLevel, Path()],
    code: str,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    global_scope: bool = Query(False),
):
    tenant_id = _write_scope(caller, global_scope)
    count = await config_resolver.deactivate_config(db, level, _checked_code(code), tenant_id)
    if not count:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Config not found")
    await db.commit()
    logger.info("credits.config.deactivated", level=level, code=code, count=count)
