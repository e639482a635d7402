from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Index, Numeric, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from credit_engine.models.base import Base, UUIDPrimaryKeyMixin, utcnow


class TransactionType(enum.StrEnum):
    ALLOCATION = "allocation"
    CONSUMPTION = "consumption"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    EXPIRY = "expiry"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class Direction(enum.StrEnum):
    CREDIT = "credit"
    DEBIT = "debit"


# Fixed direction per type; adjustments carry their own.
TYPE_DIRECTIONS: dict[TransactionType, Direction] = {
    TransactionType.ALLOCATION: Direction.CREDIT,
    TransactionType.TRANSFER_IN: Direction.CREDIT,
    TransactionType.REFUND: Direction.CREDIT,
    TransactionType.CONSUMPTION: Direction.DEBIT,
    TransactionType.TRANSFER_OUT: Direction.DEBIT,
    TransactionType.EXPIRY: Direction.DEBIT,
}


class CreditTransaction(Base, UUIDPrimaryKeyMixin):
    """Append-only ledger row. Insert-only: never updated or deleted."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_tenant_created", "tenant_id", "created_at"),
        Index("ix_credit_transactions_entity_operation", "tenant_id", "entity_id", "operation_id"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    # Magnitude only; sign comes from `direction`
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    previous_balance: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    new_balance: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)

    operation_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Shared by the two rows of a transfer
    correlation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    initiated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == Direction.CREDIT else -self.amount
