import uuid
from dataclasses import dataclass
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

logger = structlog.get_logger()

ADMIN_ROLES = frozenset({"admin", "superadmin"})


@dataclass(frozen=True)
class Caller:
    """Identity forwarded by the gateway. Authentication happens upstream."""

    tenant_id: uuid.UUID
    user_id: uuid.UUID | None
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_superadmin(self) -> bool:
        return self.role == "superadmin"


def _parse_uuid(value: str | None, header: str) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Malformed {header} header")


async def get_caller(
    request: Request,
    x_tenant_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Caller:
    tenant_id = _parse_uuid(x_tenant_id, "X-Tenant-ID")
    if tenant_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing tenant context")

    caller = Caller(
        tenant_id=tenant_id,
        user_id=_parse_uuid(x_user_id, "X-User-ID"),
        role=(x_user_role or "member").lower(),
    )

    structlog.contextvars.bind_contextvars(
        tenant_id=str(caller.tenant_id),
        user_id=str(caller.user_id) if caller.user_id else None,
    )
    request.state.tenant_id = caller.tenant_id
    return caller


async def require_admin(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
    if not caller.is_admin:
        logger.warning("credits.config.write_denied", role=caller.role)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return caller
