"""
FastAPI Authentication Dependencies

Provides FastAPI dependency functions for JWT authentication.
"""
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from printchat.auth.jwt_handler import extract_user_from_token, JWTValidationError
from printchat.models.user import User, UserRole

logger = logging.getLogger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(
    scheme_name="BearerAuth",
    description="Enter your JWT token from authentication",
    auto_error=False
)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> User:
    """
    FastAPI dependency to get the current authenticated user.

    Raises:
        HTTPException: 401 if token is missing, invalid or expired
    """
    if not credentials:
        logger.warning("Authorization header missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "authentication_failed", "message": "Authorization header required"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return extract_user_from_token(credentials.credentials)

    except JWTValidationError as e:
        logger.warning(f"JWT validation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "authentication_failed", "message": str(e)},
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_roles(*roles: UserRole):
    """
    FastAPI dependency factory restricting a route to some account kinds.

    Usage:
        @router.get("/admin/statistics")
        async def stats(user: User = Depends(require_roles(UserRole.ADMIN))):
            ...
    """
    allowed = set(roles)

    async def check_role(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            logger.warning(
                f"User {user.user_id} with role '{user.role.value}' attempted to access a resource "
                f"requiring one of {[r.value for r in allowed]}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "unauthorized", "message": "Your role may not access this resource"},
            )
        return user

    return check_role
