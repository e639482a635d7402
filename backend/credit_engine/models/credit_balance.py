from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from credit_engine.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class CreditBalance(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Spendable credits held by one entity of a tenant.

    Rows are created lazily on first allocation and never deleted; an
    inactive balance keeps its credits but rejects new consumption.
    """

    __tablename__ = "credit_balances"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_id", name="uq_credit_balances_tenant_entity"),
        CheckConstraint("available_credits >= 0", name="available_non_negative"),
        CheckConstraint("reserved_credits >= 0", name="reserved_non_negative"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), default="organization", nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    available_credits: Mapped[Decimal] = mapped_column(Numeric(15, 4), default=Decimal("0"), nullable=False)
    reserved_credits: Mapped[Decimal] = mapped_column(Numeric(15, 4), default=Decimal("0"), nullable=False)
    total_consumed: Mapped[Decimal] = mapped_column(Numeric(15, 4), default=Decimal("0"), nullable=False)
    total_expired: Mapped[Decimal] = mapped_column(Numeric(15, 4), default=Decimal("0"), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Bumped on every mutation; a flush against a stale version fails instead of overwriting
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}
