"""
WebSocket Service
Manages live chat connections and the rooms they subscribe to
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from printchat.models.user import User

logger = logging.getLogger(__name__)


def session_room(session_id: str) -> str:
    return f"chat_{session_id}"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


class ChatConnection:
    """
    One authenticated live connection.

    The identity is bound at construction and never changes; a client that
    wants to act as someone else has to reconnect.
    """

    def __init__(self, websocket: Any, user: User):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.user = user
        self.rooms: Set[str] = set()
        self.connected_at = datetime.utcnow()

    @property
    def user_id(self) -> str:
        return self.user.user_id

    def session_rooms(self) -> List[str]:
        return [room for room in self.rooms if room.startswith("chat_")]

    async def send_json(self, message: dict) -> None:
        await self.websocket.send_json(message)

    def __repr__(self) -> str:
        return f"<ChatConnection {self.id} user={self.user_id} role={self.user.role.value}>"


class ConnectionManager:
    """
    Manages WebSocket connections per room.

    Two kinds of rooms exist:
    - ``chat_{session_id}``: everyone currently viewing a chat session
    - ``user_{user_id}``: every connection of one user, for personal notifications
    """

    def __init__(self):
        """Initialize connection manager"""
        # Structure: {room: Set[ChatConnection]}
        self.rooms: Dict[str, Set[ChatConnection]] = {}

        # Structure: {connection_id: ChatConnection}
        self.connections: Dict[str, ChatConnection] = {}

    def connect(self, connection: ChatConnection) -> None:
        """
        Register a new connection and subscribe it to its personal room.

        Note: the WebSocket must already be accepted before calling this method.
        """
        self.connections[connection.id] = connection
        self.join_room(connection, user_room(connection.user_id))

        logger.info(
            f"✅ WebSocket connected: user={connection.user_id}, role={connection.user.role.value}, "
            f"total_connections={len(self.connections)}"
        )

    def disconnect(self, connection: ChatConnection) -> List[str]:
        """
        Remove a connection from every room.

        Returns:
            The session rooms the connection was subscribed to
        """
        left = connection.session_rooms()
        for room in list(connection.rooms):
            self.leave_room(connection, room)
        self.connections.pop(connection.id, None)

        logger.info(
            f"🔌 WebSocket disconnected: user={connection.user_id}, "
            f"remaining_connections={len(self.connections)}"
        )
        return left

    def join_room(self, connection: ChatConnection, room: str) -> None:
        self.rooms.setdefault(room, set()).add(connection)
        connection.rooms.add(room)

    def leave_room(self, connection: ChatConnection, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection)
            # Clean up empty rooms
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)

    def is_subscribed(self, connection: ChatConnection, room: str) -> bool:
        return connection in self.rooms.get(room, ())

    async def send_personal_message(self, message: dict, connection: ChatConnection) -> bool:
        """
        Send message to one connection.

        Returns:
            True if delivered
        """
        try:
            await connection.send_json(message)
            logger.debug(f"📤 Sent personal message: type={message.get('type')}")
            return True
        except Exception as e:
            # Dead sockets are cleaned up by their own receive loop
            logger.error(f"❌ Failed to send personal message to {connection!r}: {e}")
            return False

    async def broadcast_to_room(
        self,
        room: str,
        message: dict,
        exclude: Optional[ChatConnection] = None,
    ) -> int:
        """
        Broadcast message to all connections in a room.

        Returns:
            Number of successful deliveries
        """
        connections = [c for c in self.rooms.get(room, ()) if c is not exclude]
        if not connections:
            logger.debug(f"No active connections for room {room}")
            return 0

        success_count = 0
        for connection in connections:
            if await self.send_personal_message(message, connection):
                success_count += 1

        logger.info(
            f"📢 Broadcast {message.get('type')} to {room}: "
            f"sent={success_count}, failed={len(connections) - success_count}"
        )
        return success_count

    @staticmethod
    def build_event(event_type: str, data: Dict[str, Any]) -> dict:
        return {
            "type": event_type,
            "timestamp": datetime.utcnow().isoformat(),
            "data": data,
        }

    # ============ ChatBroadcaster ============

    async def emit_to_session(
        self,
        session_id: str,
        event_type: str,
        data: Dict[str, Any],
        exclude: Optional[ChatConnection] = None,
    ) -> int:
        return await self.broadcast_to_room(
            session_room(session_id), self.build_event(event_type, data), exclude=exclude
        )

    async def emit_to_user(self, user_id: str, event_type: str, data: Dict[str, Any]) -> int:
        return await self.broadcast_to_room(user_room(user_id), self.build_event(event_type, data))

    # ============ Stats ============

    def get_connection_count(self, room: Optional[str] = None) -> int:
        if room:
            return len(self.rooms.get(room, set()))
        return len(self.connections)

    def get_active_session_rooms(self) -> List[str]:
        return [room for room in self.rooms if room.startswith("chat_")]
