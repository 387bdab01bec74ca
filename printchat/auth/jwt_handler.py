"""
JWT Token Handler

Handles bearer token validation and decoding for marketplace accounts.
Uses python-jose for JWT operations.
"""
import logging
from typing import Dict, Any, Optional
from jose import jwt, JWTError
from pydantic import ValidationError

from printchat.config import settings
from printchat.models.user import User, UserRole

logger = logging.getLogger(__name__)


class JWTValidationError(Exception):
    """Custom exception for JWT validation errors"""
    pass


def decode_jwt_token(token: str, secret: Optional[str] = None) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string from Authorization header or query string
        secret: Signing secret, defaults to JWT_SECRET

    Returns:
        Decoded JWT payload as dictionary

    Raises:
        JWTValidationError: If token is invalid, expired, or malformed
    """
    secret = secret or settings.JWT_SECRET
    if not secret:
        logger.error("JWT configuration is missing")
        raise JWTValidationError("Authentication service is not configured")

    if not token:
        raise JWTValidationError("Token is required")

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "verify_aud": False,
            }
        )
        return payload

    except jwt.ExpiredSignatureError:
        logger.warning("JWT token has expired")
        raise JWTValidationError("Token has expired")

    except jwt.JWTClaimsError as e:
        logger.warning(f"JWT claims error: {e}")
        raise JWTValidationError("Invalid token claims")

    except JWTError as e:
        logger.warning(f"JWT validation error: {e}")
        raise JWTValidationError("Invalid token")


def extract_user_from_token(token: str, secret: Optional[str] = None) -> User:
    """
    Extract user information from JWT token.

    Account tokens carry ``{"user": {"id", "role", "email"}}``; plain ``sub`` /
    ``role`` claims are accepted as well.

    Raises:
        JWTValidationError: If token is invalid or user data cannot be extracted
    """
    payload = decode_jwt_token(token, secret)

    claims = payload.get("user") if isinstance(payload.get("user"), dict) else {}
    user_id = claims.get("id") or payload.get("sub")
    role = claims.get("role") or payload.get("role")
    email = claims.get("email") or payload.get("email")

    if not user_id:
        raise JWTValidationError("User ID not found in token")

    try:
        user = User(
            user_id=str(user_id),
            role=UserRole(role),
            email=email,
            exp=payload.get("exp"),
            iat=payload.get("iat"),
        )
    except (ValueError, ValidationError):
        logger.warning(f"Token for user {user_id} carries unsupported role: {role}")
        raise JWTValidationError("Unsupported user role")

    logger.debug(f"User extracted from token: {user.user_id} ({user.role.value})")
    return user
