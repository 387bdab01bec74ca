"""
Push Notification Models
"""
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime

from .chat import Audience


class DeviceToken(BaseModel):
    """A registered push endpoint for one user device"""
    id: str
    user_id: str
    user_type: Audience
    device_token: str
    platform: str = "mobile"
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeviceTokenRegister(BaseModel):
    device_token: str = Field(..., min_length=1, description="Expo push token")
    platform: str = Field("mobile", description="Client platform")

    class Config:
        json_schema_extra = {
            "example": {
                "device_token": "ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]",
                "platform": "ios"
            }
        }


class PushMessage(BaseModel):
    """Payload handed to the push provider for a single device"""
    to: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sound: str = "default"
    badge: int = 1
