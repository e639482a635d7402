import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Integer, Numeric, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from credit_engine.models.base import Base, UUIDPrimaryKeyMixin, utcnow


class CreditUsage(Base, UUIDPrimaryKeyMixin):
    """One row per accepted billable action, including fully free ones.

    Feeds the rolling free-allowance and overage counters and backs
    operation_id idempotency.
    """

    __tablename__ = "credit_usage"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_id", "operation_id", name="uq_credit_usage_operation"),
        Index("ix_credit_usage_counter", "tenant_id", "entity_id", "operation_code", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    operation_code: Mapped[str] = mapped_column(String(255), nullable=False)
    operation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    units: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    free_units: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overage_units: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_charged: Mapped[Decimal] = mapped_column(Numeric(15, 4), default=Decimal("0"), nullable=False)
    requested_cost: Mapped[Decimal | None] = mapped_column(Numeric(15, 4), nullable=True)
    config_source: Mapped[str] = mapped_column(String(50), nullable=False)
    remaining_credits: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
