from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Index, Integer, Numeric, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from credit_engine.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

CONFIG_LEVELS = ("operation", "module", "application")
CONFIG_UNITS = ("operation", "record", "minute", "MB", "GB")
CONFIG_PERIODS = ("day", "week", "month", "year")

# Fields an inherited row may leave unset and pick up from the next level down
PRICING_FIELDS = (
    "credit_cost",
    "unit",
    "unit_multiplier",
    "free_allowance",
    "free_allowance_period",
    "volume_tiers",
    "allow_overage",
    "overage_limit",
    "overage_period",
    "overage_cost",
)


class CreditConfig(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Price and limits for an operation, module or application.

    `tenant_id` NULL means the row is the global default. At most one active
    row exists per (config_level, code, tenant_id). Global rows get their own
    partial index because NULL tenant ids never collide in a unique index.
    """

    __tablename__ = "credit_configs"
    __table_args__ = (
        Index("ix_credit_configs_lookup", "config_level", "code", "tenant_id", "is_active"),
        Index(
            "uq_credit_configs_active_tenant",
            "config_level",
            "code",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_active AND tenant_id IS NOT NULL"),
            sqlite_where=text("is_active AND tenant_id IS NOT NULL"),
        ),
        Index(
            "uq_credit_configs_active_global",
            "config_level",
            "code",
            unique=True,
            postgresql_where=text("is_active AND tenant_id IS NULL"),
            sqlite_where=text("is_active AND tenant_id IS NULL"),
        ),
    )

    config_level: Mapped[str] = mapped_column(String(20), nullable=False)
    code: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    scope: Mapped[str] = mapped_column(String(20), default="global", nullable=False)

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    credit_cost: Mapped[Decimal | None] = mapped_column(Numeric(15, 4), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    unit_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)

    free_allowance: Mapped[int | None] = mapped_column(Integer, nullable=True)
    free_allowance_period: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # [{"up_to": 100, "credit_cost": 1.0}, {"up_to": null, "credit_cost": 0.5}]
    volume_tiers: Mapped[list | None] = mapped_column(JSON, nullable=True)

    allow_overage: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    overage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    overage_period: Mapped[str | None] = mapped_column(String(10), nullable=True)
    overage_cost: Mapped[Decimal | None] = mapped_column(Numeric(15, 4), nullable=True)

    is_inherited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
