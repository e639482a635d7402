import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from credit_engine.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class CreditGrant(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """An allocation of credits that lapses at `expires_at` if unspent."""

    __tablename__ = "credit_grants"
    __table_args__ = (Index("ix_credit_grants_pending_expiry", "is_expired", "expires_at"),)

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    allocated_credits: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    used_credits: Mapped[Decimal] = mapped_column(Numeric(15, 4), default=Decimal("0"), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Idempotency marker for the expiry sweep
    is_expired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_credits: Mapped[Decimal] = mapped_column(Numeric(15, 4), default=Decimal("0"), nullable=False)

    source: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    @property
    def unused_credits(self) -> Decimal:
        return self.allocated_credits - self.used_credits
