"""
Request dependencies: bearer-token requester identity and tenant scoping.

Tokens are HS256 JWTs (python-jose) issued by the identity service with the
claims sub (user id), email, role and tenant_id.
"""

import logging
from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from booking.services.authorization import Requester
from database.models import UserRole
from shared.config import get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_token(token: str) -> dict[str, Any]:
    """Decode and verify a bearer token, returning its claims."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {str(e)}") from e


def requester_from_claims(payload: dict[str, Any]) -> Requester:
    try:
        return Requester(
            user_id=UUID(str(payload["sub"])),
            email=str(payload.get("email") or ""),
            role=UserRole(str(payload["role"]).upper()),
            tenant_id=UUID(str(payload["tenant_id"])),
        )
    except (KeyError, ValueError) as e:
        raise _unauthorized("Invalid token claims") from e


async def get_requester(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> Requester:
    """Dependency resolving the authenticated caller from the Authorization header."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Not authenticated")

    return requester_from_claims(verify_token(credentials.credentials))


async def get_tenant_id(
    requester: Annotated[Requester, Depends(get_requester)],
    tenant_id: Annotated[UUID, Query(alias="tenantId")],
) -> UUID:
    """The tenantId query parameter, which must be the requester's own tenant."""
    if tenant_id != requester.tenant_id:
        logger.warning(
            f"Cross-tenant request rejected for user {requester.user_id}",
            extra={"tenant_id": tenant_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant mismatch",
        )
    return tenant_id


async def require_admin(
    requester: Annotated[Requester, Depends(get_requester)],
) -> Requester:
    if requester.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return requester


CurrentRequester = Annotated[Requester, Depends(get_requester)]
TenantId = Annotated[UUID, Depends(get_tenant_id)]
AdminRequester = Annotated[Requester, Depends(require_admin)]
