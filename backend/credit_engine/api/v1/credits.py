import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.core.cache import BalanceCache, get_balance_cache
from credit_engine.core.database import get_db
from credit_engine.core.dependencies import Caller, get_caller, require_admin
from credit_engine.models.credit_transaction import CreditTransaction, TransactionType
from credit_engine.schemas.common import PaginatedResponse
from credit_engine.schemas.credit import (
    AdjustmentRequest,
    AdjustmentResponse,
    BalanceResponse,
    BalanceStatusRequest,
    ConfirmPurchaseRequest,
    ConsumeRequest,
    ConsumeResponse,
    ExpiringCreditResponse,
    ExpiryStatsResponse,
    FailPurchaseRequest,
    PurchaseRequest,
    PurchaseResponse,
    RefundRequest,
    RefundResponse,
    TransactionResponse,
    TransferRequest,
    TransferResponse,
    UsageSummaryResponse,
)
from credit_engine.services import (
    allocation_service,
    balance_store,
    consumption_service,
    expiry_service,
    ledger_service,
    purchase_service,
    transfer_service,
)
from credit_engine.services.credit_result import CreditErrorKind, CreditResult

router = APIRouter(prefix="/credits", tags=["credits"])

_ERROR_STATUS = {
    CreditErrorKind.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    CreditErrorKind.ENTITY_INACTIVE: status.HTTP_409_CONFLICT,
    CreditErrorKind.ALLOWANCE_EXHAUSTED: status.HTTP_429_TOO_MANY_REQUESTS,
    CreditErrorKind.OVERAGE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    CreditErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CreditErrorKind.INVALID_OPERATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CreditErrorKind.INVALID_AMOUNT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CreditErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    CreditErrorKind.CONCURRENCY_CONFLICT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_for_error(result: CreditResult) -> None:
    if result.ok:
        return
    raise HTTPException(
        status_code=_ERROR_STATUS.get(result.reason, status.HTTP_400_BAD_REQUEST),
        detail=result.to_dict(),
    )


def _str(value) -> str | None:
    return str(value) if value is not None else None


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _stringify(data: dict) -> dict:
    return {
        key: (str(value) if isinstance(value, uuid.UUID) else float(value) if isinstance(value, Decimal) else value)
        for key, value in data.items()
    }


def _purchase_response(data: dict) -> PurchaseResponse:
    data = _stringify(data)
    data["completed_at"] = _isoformat(data.get("completed_at"))
    return PurchaseResponse(**data)


def _transaction_response(tx: CreditTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=str(tx.id),
        tenant_id=str(tx.tenant_id),
        entity_type=tx.entity_type,
        entity_id=str(tx.entity_id),
        transaction_type=tx.transaction_type,
        direction=tx.direction,
        amount=float(tx.amount),
        previous_balance=float(tx.previous_balance),
        new_balance=float(tx.new_balance),
        operation_code=tx.operation_code,
        operation_id=tx.operation_id,
        correlation_id=_str(tx.correlation_id),
        purchase_id=_str(tx.purchase_id),
        description=tx.description,
        metadata=tx.metadata_json,
        initiated_by=_str(tx.initiated_by),
        created_at=tx.created_at.isoformat() if tx.created_at else "",
    )


@router.get("/balance", response_model=BalanceResponse)
async def get_current_balance(
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
    entity_type: str = Query("organization", max_length=50),
    entity_id: uuid.UUID | None = None,
):
    view = await balance_store.get_balance(db, caller.tenant_id, entity_type, entity_id, cache=cache)
    data = _stringify(view.to_dict())
    data["last_updated_at"] = _isoformat(view.last_updated_at)
    return BalanceResponse(**data)


@router.post("/consume", response_model=ConsumeResponse)
async def consume_credits(
    body: ConsumeRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
):
    result = await consumption_service.consume_credits(
        db,
        caller.tenant_id,
        body.operation_code,
        user_id=caller.user_id,
        entity_type=body.entity_type,
        entity_id=body.entity_id,
        requested_cost=Decimal(str(body.credit_cost)) if body.credit_cost is not None else None,
        units=body.units,
        operation_id=body.operation_id,
        description=body.description,
        metadata=body.metadata,
        cache=cache,
    )
    raise_for_error(result)
    return ConsumeResponse(**_stringify(result.data))


@router.post("/refunds", response_model=RefundResponse)
async def refund_consumption(
    body: RefundRequest,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
):
    result = await consumption_service.refund_consumption(
        db,
        caller.tenant_id,
        body.operation_id,
        entity_id=body.entity_id,
        initiated_by=caller.user_id,
        reason=body.reason,
        cache=cache,
    )
    raise_for_error(result)
    return RefundResponse(**_stringify(result.data))


@router.post("/purchase", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
async def purchase_credits(
    body: PurchaseRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    result = await purchase_service.purchase_credits(
        db,
        caller.tenant_id,
        Decimal(str(body.credit_amount)),
        body.payment_method,
        user_id=caller.user_id,
        currency=body.currency,
        notes=body.notes,
        entity_type=body.entity_type,
        entity_id=body.entity_id,
        expires_at=body.expires_at,
    )
    raise_for_error(result)
    return _purchase_response(result.data)


@router.get("/purchases", response_model=PaginatedResponse[PurchaseResponse])
async def list_purchases(
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    purchase_status: Literal["pending", "completed", "failed"] | None = Query(None, alias="status"),
):
    purchases, total = await purchase_service.list_purchases(
        db, caller.tenant_id, page=page, page_size=page_size, status=purchase_status
    )
    items = [_purchase_response(purchase_service.purchase_payload(p)) for p in purchases]
    pages = (total + page_size - 1) // page_size
    return PaginatedResponse(items=items, total=total, page=page, page_size=page_size, pages=pages)


@router.post("/purchases/{purchase_id}/confirm", response_model=PurchaseResponse)
async def confirm_purchase(
    purchase_id: uuid.UUID,
    body: ConfirmPurchaseRequest,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
):
    result = await purchase_service.confirm_purchase(
        db,
        purchase_id,
        payment_reference=body.payment_reference,
        tenant_id=caller.tenant_id,
        expires_at=body.expires_at,
        cache=cache,
    )
    raise_for_error(result)
    return _purchase_response(result.data)


@router.post("/purchases/{purchase_id}/fail", response_model=PurchaseResponse)
async def fail_purchase(
    purchase_id: uuid.UUID,
    body: FailPurchaseRequest,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    result = await purchase_service.fail_purchase(db, purchase_id, body.reason, tenant_id=caller.tenant_id)
    raise_for_error(result)
    return _purchase_response(result.data)


@router.post("/transfer", response_model=TransferResponse)
async def transfer_credits(
    body: TransferRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
):
    result = await transfer_service.transfer_credits(
        db,
        caller.tenant_id,
        body.to_entity_id,
        Decimal(str(body.credit_amount)),
        from_entity_id=body.from_entity_id,
        to_entity_type=body.to_entity_type,
        initiated_by=caller.user_id,
        reason=body.reason,
        cache=cache,
    )
    raise_for_error(result)
    return TransferResponse(**_stringify(result.data))


@router.post("/adjustments", response_model=AdjustmentResponse)
async def adjust_balance(
    body: AdjustmentRequest,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
):
    result = await allocation_service.adjust_balance(
        db,
        caller.tenant_id,
        Decimal(str(body.amount)),
        entity_id=body.entity_id,
        initiated_by=caller.user_id,
        reason=body.reason,
        cache=cache,
    )
    raise_for_error(result)
    return AdjustmentResponse(**_stringify(result.data))


@router.put("/balance/status", response_model=BalanceResponse)
async def set_balance_status(
    body: BalanceStatusRequest,
    caller: Annotated[Caller, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
):
    result = await balance_store.set_balance_active(db, caller.tenant_id, body.entity_id, body.is_active, cache=cache)
    raise_for_error(result)
    view = await balance_store.get_balance(db, caller.tenant_id, entity_id=body.entity_id)
    data = _stringify(view.to_dict())
    data["last_updated_at"] = _isoformat(view.last_updated_at)
    return BalanceResponse(**data)


@router.get("/transactions", response_model=PaginatedResponse[TransactionResponse])
async def get_transaction_history(
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    transaction_type: TransactionType | None = None,
    entity_id: uuid.UUID | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
):
    transactions, total = await ledger_service.get_transaction_history(
        db,
        caller.tenant_id,
        page=page,
        limit=page_size,
        transaction_type=str(transaction_type) if transaction_type else None,
        start_date=start_date,
        end_date=end_date,
        entity_id=entity_id,
    )
    items = [_transaction_response(tx) for tx in transactions]
    pages = (total + page_size - 1) // page_size if page_size > 0 else 0
    return PaginatedResponse(items=items, total=total, page=page, page_size=page_size, pages=pages)


@router.get("/usage-summary", response_model=UsageSummaryResponse)
async def get_usage_summary(
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    entity_id: uuid.UUID | None = None,
):
    summary = await ledger_service.get_usage_summary(db, caller.tenant_id, start_date, end_date, entity_id)
    return UsageSummaryResponse(
        tenant_id=str(caller.tenant_id),
        start_date=_isoformat(start_date),
        end_date=_isoformat(end_date),
        by_type={
            tx_type: {"count": entry["count"], "total_credits": float(entry["total_credits"])}
            for tx_type, entry in summary["by_type"].items()
        },
        credits_in=float(summary["credits_in"]),
        credits_out=float(summary["credits_out"]),
        net_change=float(summary["net_change"]),
    )


@router.get("/expiring", response_model=list[ExpiringCreditResponse])
async def get_expiring_credits(
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    days_ahead: int = Query(7, ge=1, le=365),
    entity_id: uuid.UUID | None = None,
):
    entries = await expiry_service.get_expiring_credits(
        db, days_ahead=days_ahead, tenant_id=caller.tenant_id, entity_id=entity_id
    )
    return [
        ExpiringCreditResponse(
            entity_id=str(entry["entity_id"]),
            expiring_credits=float(entry["expiring_credits"]),
            earliest_expiry=entry["earliest_expiry"].isoformat(),
            grant_count=entry["grant_count"],
        )
        for entry in entries
    ]


@router.get("/expiry-stats", response_model=ExpiryStatsResponse)
async def get_expiry_stats(
    caller: Annotated[Caller, Depends(get_caller)],
    db: Annotated[AsyncSession, Depends(get_db)],
    entity_id: uuid.UUID | None = None,
):
    stats = await expiry_service.get_expiry_stats(db, caller.tenant_id, entity_id)
    return ExpiryStatsResponse(**_stringify(stats))
