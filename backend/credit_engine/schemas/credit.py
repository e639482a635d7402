import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from credit_engine.models.credit_purchase import PAYMENT_METHODS
from credit_engine.schemas.validators import validate_code, validate_metadata


class BalanceAlert(BaseModel):
    level: str
    message: str
    threshold: float
    available_credits: float


class BalanceResponse(BaseModel):
    tenant_id: str
    entity_type: str
    entity_id: str
    available_credits: float
    reserved_credits: float
    total_consumed: float
    total_expired: float
    is_active: bool
    status: str
    version: int
    last_updated_at: str | None = None
    alerts: list[BalanceAlert] = []


class ConsumeRequest(BaseModel):
    operation_code: str = Field(min_length=1, max_length=255)
    credit_cost: Optional[float] = Field(default=None, ge=0)
    units: int = Field(default=1, ge=1, le=1_000_000)
    operation_id: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    metadata: Optional[dict] = None
    entity_type: str = Field(default="organization", max_length=50)
    entity_id: Optional[uuid.UUID] = None

    @field_validator("operation_code")
    @classmethod
    def check_operation_code(cls, v: str) -> str:
        return validate_code(v)

    @field_validator("metadata")
    @classmethod
    def check_metadata(cls, v: Optional[dict]) -> Optional[dict]:
        if v is None:
            return v
        validate_metadata(v)
        return v


class ConsumeResponse(BaseModel):
    success: bool = True
    usage_id: str
    transaction_id: str | None = None
    operation_code: str
    operation_id: str | None = None
    units: int
    free_units: int
    overage_units: int
    credits_charged: float
    previous_balance: float
    remaining_credits: float
    config_source: str
    duplicate: bool = False


class RefundRequest(BaseModel):
    operation_id: str = Field(min_length=1, max_length=255)
    entity_id: Optional[uuid.UUID] = None
    reason: Optional[str] = Field(default=None, max_length=1000)


class RefundResponse(BaseModel):
    success: bool = True
    transaction_id: str
    operation_id: str
    refunded_credits: float
    new_balance: float
    duplicate: bool = False


class PurchaseRequest(BaseModel):
    credit_amount: float = Field(gt=0, le=100_000_000)
    payment_method: str = Field(min_length=1, max_length=50)
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    notes: Optional[str] = Field(default=None, max_length=2000)
    entity_type: str = Field(default="organization", max_length=50)
    entity_id: Optional[uuid.UUID] = None
    expires_at: Optional[datetime] = None

    @field_validator("payment_method")
    @classmethod
    def check_payment_method(cls, v: str) -> str:
        if v not in PAYMENT_METHODS:
            raise ValueError(f"payment_method must be one of {sorted(PAYMENT_METHODS)}, got '{v}'")
        return v


class ConfirmPurchaseRequest(BaseModel):
    payment_reference: Optional[str] = Field(default=None, max_length=255)
    expires_at: Optional[datetime] = None


class FailPurchaseRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class PurchaseResponse(BaseModel):
    purchase_id: str
    tenant_id: str
    entity_id: str
    credit_amount: float
    unit_price: float
    total_amount: float
    currency: str
    payment_method: str
    payment_reference: str | None = None
    status: str
    transaction_id: str | None = None
    completed_at: str | None = None
    new_balance: float | None = None
    duplicate: bool = False


class TransferRequest(BaseModel):
    to_entity_id: uuid.UUID
    to_entity_type: str = Field(default="organization", max_length=50)
    from_entity_id: Optional[uuid.UUID] = None
    credit_amount: float = Field(gt=0)
    reason: Optional[str] = Field(default=None, max_length=1000)


class TransferResponse(BaseModel):
    success: bool = True
    correlation_id: str
    amount: float
    from_entity_id: str
    to_entity_id: str
    from_transaction_id: str
    to_transaction_id: str
    from_balance: float
    to_balance: float


class AdjustmentRequest(BaseModel):
    amount: float
    reason: str = Field(min_length=1, max_length=1000)
    entity_id: Optional[uuid.UUID] = None

    @field_validator("amount")
    @classmethod
    def check_amount(cls, v: float) -> float:
        if v == 0:
            raise ValueError("amount cannot be zero")
        return v


class AdjustmentResponse(BaseModel):
    success: bool = True
    transaction_id: str
    amount: float
    previous_balance: float
    new_balance: float


class BalanceStatusRequest(BaseModel):
    is_active: bool
    entity_id: Optional[uuid.UUID] = None


class TransactionResponse(BaseModel):
    id: str
    tenant_id: str
    entity_type: str
    entity_id: str
    transaction_type: str
    direction: str
    amount: float
    previous_balance: float
    new_balance: float
    operation_code: str | None = None
    operation_id: str | None = None
    correlation_id: str | None = None
    purchase_id: str | None = None
    description: str | None = None
    metadata: dict | None = None
    initiated_by: str | None = None
    created_at: str


class UsageTypeTotal(BaseModel):
    count: int
    total_credits: float


class UsageSummaryResponse(BaseModel):
    tenant_id: str
    start_date: str | None = None
    end_date: str | None = None
    by_type: dict[str, UsageTypeTotal]
    credits_in: float
    credits_out: float
    net_change: float


class ExpiringCreditResponse(BaseModel):
    entity_id: str
    expiring_credits: float
    earliest_expiry: str
    grant_count: int


class ExpiryStatsResponse(BaseModel):
    tenant_id: str
    entity_id: str | None = None
    expiring_in_7_days: float
    expiring_in_30_days: float
    total_expired: float
