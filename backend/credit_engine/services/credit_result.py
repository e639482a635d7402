"""Result type for credit operations.

Running out of credits is an everyday outcome, so balance-changing services
return a `CreditResult` instead of raising. Exceptions are kept for faults:
bad configuration on write and datastore conflicts that outlive the retries.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class CreditErrorKind(enum.StrEnum):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ENTITY_INACTIVE = "entity_inactive"
    INVALID_OPERATION = "invalid_operation"
    INVALID_AMOUNT = "invalid_amount"
    ALLOWANCE_EXHAUSTED = "allowance_exhausted"
    OVERAGE_LIMIT_EXCEEDED = "overage_limit_exceeded"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"


@dataclass(frozen=True)
class CreditResult:
    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    reason: CreditErrorKind | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.ok

    @property
    def is_duplicate(self) -> bool:
        return bool(self.data.get("duplicate"))

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"success": True, "data": self.data}
        return {"success": False, "reason": str(self.reason), "data": self.details}


def Ok(data: dict[str, Any] | None = None, **extra: Any) -> CreditResult:  # noqa: N802
    payload = dict(data or {})
    payload.update(extra)
    return CreditResult(ok=True, data=payload)


def Err(kind: CreditErrorKind, **details: Any) -> CreditResult:  # noqa: N802
    return CreditResult(ok=False, reason=CreditErrorKind(kind), details=details)


class CreditEngineError(Exception):
    """Base for credit engine faults."""


class InvalidConfiguration(CreditEngineError):
    """A config write was rejected: malformed tiers, contradictory overage settings, bad unit."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConcurrencyConflict(CreditEngineError):
    """The datastore refused a transaction because of a concurrent writer."""
