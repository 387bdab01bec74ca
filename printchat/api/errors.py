"""
Mapping of chat errors onto HTTP responses.
"""
import logging

from fastapi import HTTPException, status

from printchat.services.exceptions import ChatError

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "unauthorized": status.HTTP_403_FORBIDDEN,
    "invalid_state": status.HTTP_409_CONFLICT,
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "authentication_failed": status.HTTP_401_UNAUTHORIZED,
    "internal_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def to_http_exception(error: ChatError) -> HTTPException:
    status_code = STATUS_BY_CODE.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=status_code, detail=error.to_dict())


def internal_error(message: str = "Internal server error") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "internal_error", "message": message},
    )
