"""
Authentication Module

Bearer token authentication for REST routes and chat sockets.
"""
from printchat.auth.jwt_handler import decode_jwt_token, extract_user_from_token, JWTValidationError
from printchat.auth.dependencies import get_current_user, require_roles

__all__ = [
    "decode_jwt_token",
    "extract_user_from_token",
    "JWTValidationError",
    "get_current_user",
    "require_roles",
]
