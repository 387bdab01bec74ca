"""
Chat error taxonomy.

Every error a caller can act on carries a stable ``code`` so REST and WebSocket
clients can tell "nothing here" apart from "you may not see this".
"""


class ChatError(Exception):
    """Base class for chat errors surfaced to callers"""

    code = "chat_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(ChatError):
    """Session, message or print job does not exist"""
    code = "not_found"


class UnauthorizedError(ChatError):
    """Authenticated, but not a participant of the session"""
    code = "unauthorized"


class InvalidStateError(ChatError):
    """Session is not active, already completed or expired"""
    code = "invalid_state"


class InvalidInputError(ChatError):
    """Empty or oversized message text, malformed identifiers"""
    code = "invalid_input"


class AuthenticationFailedError(ChatError):
    """Bad, missing or expired credential"""
    code = "authentication_failed"


class ChatServiceError(ChatError):
    """Store or infrastructure failure; details are logged, not returned"""
    code = "internal_error"
