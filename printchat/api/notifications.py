"""
Push Notification API Endpoints

Device token registration for the mobile apps.
"""
from fastapi import APIRouter, HTTPException, Depends
import logging

from printchat.api.deps import get_runtime
from printchat.api.errors import internal_error, to_http_exception
from printchat.auth.dependencies import require_roles
from printchat.models.notification import DeviceToken, DeviceTokenRegister
from printchat.models.user import User, UserRole
from printchat.services.exceptions import ChatError
from printchat.services.runtime import ChatRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat/notifications", tags=["notifications"])

participant = require_roles(UserRole.CUSTOMER, UserRole.PRINT_AGENT)


@router.post("/tokens", response_model=DeviceToken, status_code=201)
async def register_token(
    request: DeviceTokenRegister,
    current_user: User = Depends(participant),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """
    Register an Expo push token for the caller's device.

    Registering a known token again reactivates it.
    """
    try:
        return await runtime.dispatcher.register_device(
            current_user.user_id, current_user.audience, request.device_token, request.platform
        )

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error registering device token: {e}")
        raise internal_error("Failed to register device token")


@router.delete("/tokens/{device_token}", response_model=DeviceToken)
async def unregister_token(
    device_token: str,
    current_user: User = Depends(participant),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """Stop push notifications to a device (e.g. on logout)"""
    try:
        return await runtime.dispatcher.unregister_device(current_user.user_id, device_token)

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error unregistering device token: {e}")
        raise internal_error("Failed to unregister device token")
