"""
Channel broadcast capability handed to the chat orchestrator.

The orchestrator never reaches for a socket server; it is given an object
implementing ``ChatBroadcaster`` at construction time.
"""
from typing import Any, Dict, Optional, Protocol


class ChatBroadcaster(Protocol):

    async def emit_to_session(
        self,
        session_id: str,
        event_type: str,
        data: Dict[str, Any],
        exclude: Optional[Any] = None,
    ) -> int:
        """Deliver to every subscriber of a session channel. Returns deliveries made."""
        ...

    async def emit_to_user(self, user_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """Deliver to every connection of one user. Returns deliveries made."""
        ...


class NullBroadcaster:
    """Used when no live transport is attached (jobs, scripts)"""

    async def emit_to_session(self, session_id, event_type, data, exclude=None) -> int:
        return 0

    async def emit_to_user(self, user_id, event_type, data) -> int:
        return 0
