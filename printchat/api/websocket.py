"""
WebSocket API Endpoint
Real-time chat between a customer and the print agent handling their job
"""
from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect, Query, status
import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

from printchat.services.exceptions import AuthenticationFailedError, ChatServiceError, InvalidInputError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


def _bearer_from_headers(websocket: WebSocket) -> Optional[str]:
    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


@router.websocket("/ws/chat")
async def chat_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT authentication token")
):
    """
    WebSocket endpoint for print-job chats.

    **Connection URL:**
    ```
    ws://your-api.com/ws/chat?token={jwt_token}
    ```
    An ``Authorization: Bearer`` header is accepted as well.

    **Client frames:**
    ```json
    {"type": "join_chat", "chat_session_id": "..."}
    {"type": "send_message", "chat_session_id": "...", "message_text": "Hello", "message_type": "text"}
    {"type": "typing_start", "chat_session_id": "..."}
    {"type": "typing_stop", "chat_session_id": "..."}
    {"type": "mark_messages_read", "chat_session_id": "..."}
    {"type": "leave_chat", "chat_session_id": "..."}
    {"type": "ping"}
    ```

    **Server events** share one envelope:
    ```json
    {"type": "new_message", "timestamp": "2025-10-21T15:30:00", "data": {...}}
    ```
    Types: connection_established, chat_joined, new_message, messages_read,
    user_typing, user_online, user_offline, chat_completed, new_chat_session,
    pong, ping, error.

    **Connection Flow:**
    1. Client connects with JWT token
    2. Server validates token, role and account before accepting
    3. Connection accepted, registered in presence and its personal room
    4. Client joins chat rooms and exchanges frames
    5. On disconnect, every joined room is told the user went offline
    """
    runtime = websocket.app.state.chat
    gateway = runtime.gateway
    receive_timeout = runtime.settings.WS_RECEIVE_TIMEOUT_SECONDS
    connection = None

    try:
        try:
            user = await gateway.authenticate(token or _bearer_from_headers(websocket))
        except AuthenticationFailedError as e:
            logger.warning(f"Rejected chat WebSocket: {e.message}")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        except ChatServiceError as e:
            logger.error(f"Could not authenticate chat WebSocket: {e.message}")
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return

        # Accept WebSocket connection
        await websocket.accept()
        connection = await gateway.on_connect(websocket, user)

        logger.info(f"🔄 Starting WebSocket keepalive loop for user={user.user_id}")

        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=receive_timeout
                )
                logger.debug(f"📩 Received from client: {data}")

                try:
                    frame = json.loads(data)
                except json.JSONDecodeError:
                    await gateway.send_error(connection, InvalidInputError("Frames must be JSON"))
                    continue

                await gateway.handle_frame(connection, frame)

            except asyncio.TimeoutError:
                # No message received, send ping to keep connection alive
                try:
                    await websocket.send_json({
                        "type": "ping",
                        "timestamp": datetime.utcnow().isoformat(),
                        "message": "keepalive"
                    })
                    logger.debug(f"🏓 Sent keepalive ping to user={user.user_id}")
                except Exception as ping_error:
                    logger.error(f"Failed to send ping: {ping_error}")
                    break

            except WebSocketDisconnect:
                logger.info(f"WebSocket client disconnected: user={user.user_id}")
                break

            except Exception as e:
                logger.error(f"Error in WebSocket loop: {e}")
                break

    except Exception as e:
        logger.error(f"Unexpected error in chat WebSocket endpoint: {e}")

    finally:
        if connection is not None:
            await gateway.on_disconnect(connection)


@router.get(
    "/ws/stats",
    summary="Get WebSocket connection statistics",
    description="Get statistics about active chat connections"
)
async def get_websocket_stats(request: Request):
    """
    Get WebSocket connection statistics.

    **Response Example:**
    ```json
    {
        "total_connections": 15,
        "online_users": 9,
        "active_chat_rooms": 4,
        "connections_by_chat": {"chat_<session-id>": 2}
    }
    ```
    """
    runtime = request.app.state.chat
    connection_manager = runtime.connections

    rooms = connection_manager.get_active_session_rooms()
    stats = {
        "total_connections": connection_manager.get_connection_count(),
        "online_users": len(runtime.presence.online_users()),
        "active_chat_rooms": len(rooms),
        "connections_by_chat": {
            room: connection_manager.get_connection_count(room) for room in rooms
        },
    }

    logger.info(f"📊 WebSocket stats requested: {stats}")

    return stats
