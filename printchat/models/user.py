"""
User Model for JWT Authentication

Represents the identity extracted from a bearer token
"""
from typing import Optional
from enum import Enum
from pydantic import BaseModel, Field

from .chat import Audience


class UserRole(str, Enum):
    CUSTOMER = "customer"
    PRINT_AGENT = "printAgent"
    ADMIN = "admin"


class User(BaseModel):
    """
    User model populated from JWT token claims.

    The role is fixed for the lifetime of a token; customers and print agents
    map onto the two chat audiences, admins map onto neither.
    """

    user_id: str = Field(..., description="Unique user identifier")
    role: UserRole = Field(..., description="Account kind")
    email: Optional[str] = Field(None, description="Email claim, if present")

    # Token metadata
    exp: Optional[int] = Field(None, description="Token expiration timestamp")
    iat: Optional[int] = Field(None, description="Token issued at timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "a1b2c3d4-e5f6-7890-abcd-ef1234567890",
                "role": "customer",
                "email": "user@example.com",
                "exp": 1735689600,
                "iat": 1735603200
            }
        }

    @property
    def audience(self) -> Optional[Audience]:
        if self.role == UserRole.CUSTOMER:
            return Audience.CUSTOMER
        if self.role == UserRole.PRINT_AGENT:
            return Audience.AGENT
        return None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
