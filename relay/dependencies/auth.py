"""
Authentication dependencies for FastAPI.

Operator endpoints (dead letter queue management, manual archiving)
require a bearer JWT with the admin role; event intake, delivery
inspection, the sweep and the retry trigger accept the service role too.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from relay.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # operator identity
    role: str


async def get_current_operator(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.
    """
    jwt_service = JWTService()

    payload = jwt_service.verify_token(credentials.credentials)

    if payload is None or "sub" not in payload or "role" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPayload(sub=payload["sub"], role=payload["role"])


def require_admin(current_operator: TokenPayload = Depends(get_current_operator)) -> TokenPayload:
    """
    Dependency that requires admin role.

    Usage:
        @router.get("/admin")
        async def admin_route(operator: TokenPayload = Depends(require_admin)):
            ...
    """
    if current_operator.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_operator


SERVICE_ROLES = ("admin", "service")


def require_service(current_operator: TokenPayload = Depends(get_current_operator)) -> TokenPayload:
    """
    Dependency for event producers and internal callers.

    Accepts the service role (producers, the worker, the dead letter
    archive) as well as admins.
    """
    if current_operator.role not in SERVICE_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Service access required"
        )

    return current_operator
