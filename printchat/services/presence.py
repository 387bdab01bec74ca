"""
Presence Registry

Maps a user id to the live connections that user holds on *this* process.
It is created with the application and discarded on shutdown. Nothing is
persisted and nothing is shared between processes, so a user connected to a
different worker looks offline here.
"""
import logging
from typing import Dict, Hashable, List, Set

logger = logging.getLogger(__name__)


class PresenceRegistry:

    def __init__(self):
        # Structure: {user_id: {connection_handle, ...}}
        self._connections: Dict[str, Set[Hashable]] = {}

    def add(self, user_id: str, connection: Hashable) -> None:
        """Register a freshly authenticated connection"""
        handles = self._connections.setdefault(user_id, set())
        handles.add(connection)
        logger.debug(f"Presence add: user={user_id}, connections={len(handles)}")

    def remove(self, user_id: str, connection: Hashable) -> bool:
        """
        Drop one connection of a user.

        Returns True when this was the user's last connection, i.e. the user
        just went offline.
        """
        handles = self._connections.get(user_id)
        if not handles:
            return False

        handles.discard(connection)
        if handles:
            return False

        del self._connections[user_id]
        logger.debug(f"Presence remove: user={user_id} is now offline")
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def online_users(self) -> List[str]:
        return list(self._connections.keys())

    def connection_count(self) -> int:
        return sum(len(handles) for handles in self._connections.values())

    def clear(self) -> None:
        self._connections.clear()
