"""
Chat Gateway

Binds one authenticated identity to each live connection and translates
client frames into chat operations. The identity is fixed when the socket is
accepted; everything a connection does afterwards is checked against it.
"""
import logging
from typing import Any, Dict, Optional

from printchat.auth.jwt_handler import JWTValidationError, extract_user_from_token
from printchat.models.chat import MessageType
from printchat.models.user import User
from printchat.services.chat_service import ChatService
from printchat.services.exceptions import (
    AuthenticationFailedError, ChatError, ChatServiceError, InvalidInputError
)
from printchat.services.presence import PresenceRegistry
from printchat.services.websocket_service import ChatConnection, ConnectionManager, session_room
from printchat.storage.base import ChatStore

logger = logging.getLogger(__name__)


class ChatGateway:

    def __init__(
        self,
        chat_service: ChatService,
        connections: ConnectionManager,
        presence: PresenceRegistry,
        store: ChatStore,
        jwt_secret: Optional[str] = None,
    ):
        self.chat_service = chat_service
        self.connections = connections
        self.presence = presence
        self.store = store
        self.jwt_secret = jwt_secret

    # ============ Connection lifecycle ============

    async def authenticate(self, token: Optional[str]) -> User:
        """
        Resolve a bearer token to a chat participant.

        Raises:
            AuthenticationFailedError: token absent, malformed or expired, role
                other than customer / print agent, or the account is gone
        """
        if not token:
            raise AuthenticationFailedError("Authentication token required")

        try:
            user = extract_user_from_token(token, self.jwt_secret)
        except JWTValidationError as e:
            raise AuthenticationFailedError(str(e))

        if user.audience is None:
            logger.warning(f"Rejected chat socket for non-participant role {user.role.value}: {user.user_id}")
            raise AuthenticationFailedError("Only customers and print agents can open a chat connection")

        try:
            profile = await self.store.get_user_profile(user.user_id, user.audience)
        except Exception as e:
            logger.error(f"❌ Failed to look up user {user.user_id}: {e}")
            raise ChatServiceError("Could not verify user")

        if profile is None:
            logger.warning(f"Rejected chat socket for unknown user {user.user_id}")
            raise AuthenticationFailedError("User not found")
        return user

    async def on_connect(self, websocket: Any, user: User) -> ChatConnection:
        """Register an accepted socket. Call only after authenticate() succeeded."""
        connection = ChatConnection(websocket, user)
        self.connections.connect(connection)
        self.presence.add(user.user_id, connection)

        await self.connections.send_personal_message(
            self.connections.build_event("connection_established", {
                "connection_id": connection.id,
                "user_id": user.user_id,
                "user_type": user.audience.value,
            }),
            connection,
        )
        return connection

    async def on_disconnect(self, connection: ChatConnection) -> None:
        left_rooms = self.connections.disconnect(connection)
        self.presence.remove(connection.user_id, connection)

        for room in left_rooms:
            session_id = room[len("chat_"):]
            await self.connections.emit_to_session(
                session_id, "user_offline", self._presence_payload(connection, session_id)
            )

    # ============ Session channels ============

    @staticmethod
    def _presence_payload(connection: ChatConnection, session_id: str) -> Dict[str, Any]:
        return {
            "chat_session_id": session_id,
            "user_id": connection.user_id,
            "user_type": connection.user.audience.value,
        }

    async def join_session(self, connection: ChatConnection, session_id: str) -> None:
        """
        Subscribe to a session channel and catch up on read state.

        Raises:
            NotFoundError: unknown session
            UnauthorizedError: the connection's user is not a participant
        """
        await self.chat_service.get_session(session_id, connection.user)

        self.connections.join_room(connection, session_room(session_id))
        session = await self.chat_service.mark_read(session_id, connection.user, origin=connection)

        await self.connections.send_personal_message(
            self.connections.build_event("chat_joined", {
                "chat_session_id": session_id,
                "chat_session": session.model_dump(mode="json"),
            }),
            connection,
        )
        await self.connections.emit_to_session(
            session_id, "user_online", self._presence_payload(connection, session_id), exclude=connection
        )
        logger.info(f"User {connection.user_id} joined chat session {session_id}")

    async def leave_session(self, connection: ChatConnection, session_id: str) -> None:
        room = session_room(session_id)
        if not self.connections.is_subscribed(connection, room):
            return
        self.connections.leave_room(connection, room)
        await self.connections.emit_to_session(
            session_id, "user_offline", self._presence_payload(connection, session_id)
        )
        logger.info(f"User {connection.user_id} left chat session {session_id}")

    # ============ Messaging ============

    async def send(
        self,
        connection: ChatConnection,
        session_id: str,
        message_text: Any,
        message_type: Optional[str] = None,
    ) -> None:
        """Send through the chat service; the service fans the message out to the channel"""
        message = await self.chat_service.send_message(
            session_id, connection.user, message_text, message_type or MessageType.TEXT
        )

        # A connection that never joined still gets its own message back
        if not self.connections.is_subscribed(connection, session_room(session_id)):
            await self.connections.send_personal_message(
                self.connections.build_event("new_message", {
                    "chat_session_id": session_id,
                    "message": message.model_dump(mode="json"),
                }),
                connection,
            )

    async def typing(self, connection: ChatConnection, session_id: str, is_typing: bool) -> None:
        if not self.connections.is_subscribed(connection, session_room(session_id)):
            logger.debug(f"Ignoring typing update from {connection!r} outside session {session_id}")
            return
        payload = self._presence_payload(connection, session_id)
        payload["is_typing"] = is_typing
        await self.connections.emit_to_session(session_id, "user_typing", payload, exclude=connection)

    async def mark_read(self, connection: ChatConnection, session_id: str) -> None:
        await self.chat_service.mark_read(session_id, connection.user, origin=connection)

    async def send_error(self, connection: ChatConnection, error: ChatError) -> None:
        await self.connections.send_personal_message(
            self.connections.build_event("error", error.to_dict()), connection
        )

    # ============ Frame dispatch ============

    async def handle_frame(self, connection: ChatConnection, frame: Any) -> None:
        """
        Dispatch one decoded client frame.

        Failures are reported to the originating connection only.
        """
        try:
            if not isinstance(frame, dict):
                raise InvalidInputError("Frame must be a JSON object")

            frame_type = frame.get("type", "")
            if frame_type == "ping":
                await self.connections.send_personal_message(
                    self.connections.build_event("pong", {}), connection
                )
                logger.debug(f"🏓 Sent pong response to user={connection.user_id}")
                return
            if frame_type == "pong":
                logger.debug(f"🏓 Received pong from user={connection.user_id}")
                return

            session_id = frame.get("chat_session_id")
            if not session_id or not isinstance(session_id, str):
                raise InvalidInputError("chat_session_id is required")

            if frame_type == "join_chat":
                await self.join_session(connection, session_id)
            elif frame_type == "leave_chat":
                await self.leave_session(connection, session_id)
            elif frame_type == "send_message":
                await self.send(connection, session_id, frame.get("message_text"), frame.get("message_type"))
            elif frame_type == "typing_start":
                await self.typing(connection, session_id, True)
            elif frame_type == "typing_stop":
                await self.typing(connection, session_id, False)
            elif frame_type == "mark_messages_read":
                await self.mark_read(connection, session_id)
            else:
                raise InvalidInputError(f"Unknown frame type: {frame_type}")

        except ChatError as e:
            logger.info(f"Chat frame rejected for user={connection.user_id}: {e.code} {e.message}")
            await self.send_error(connection, e)

        except Exception as e:
            logger.error(f"❌ Error handling chat frame for user={connection.user_id}: {e}")
            await self.send_error(connection, ChatServiceError("Internal error"))
