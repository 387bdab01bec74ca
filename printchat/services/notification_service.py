"""
Notification Service
Push notifications for chat participants who are not connected to this process
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from printchat.models.chat import Audience, ChatMessage, ChatSession, SenderType
from printchat.models.notification import DeviceToken, PushMessage
from printchat.services.exceptions import ChatServiceError, InvalidInputError, NotFoundError
from printchat.services.presence import PresenceRegistry
from printchat.storage.base import ChatStore

logger = logging.getLogger(__name__)

# Expo accepts at most 100 messages per request
EXPO_CHUNK_SIZE = 100

# Provider errors meaning the token will never work again
INVALID_TOKEN_ERRORS = {"DeviceNotRegistered", "InvalidCredentials"}

NOTIFICATION_TITLES = {
    SenderType.CUSTOMER: "New message from customer",
    SenderType.AGENT: "New message from print agent",
    SenderType.SYSTEM: "New message in your order chat",
}


class ExpoPushProvider:
    """
    Sends push messages through the Expo push API.

    Returns one ticket per input message, in input order:
    ``{"status": "ok"}`` or ``{"status": "error", "details": {"error": ...}}``.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, messages: List[PushMessage]) -> List[Dict[str, Any]]:
        tickets: List[Dict[str, Any]] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for start in range(0, len(messages), EXPO_CHUNK_SIZE):
                chunk = messages[start:start + EXPO_CHUNK_SIZE]
                tickets.extend(await self._send_chunk(client, chunk))
        return tickets

    async def _send_chunk(self, client: httpx.AsyncClient, chunk: List[PushMessage]) -> List[Dict[str, Any]]:
        try:
            response = await client.post(
                self.url,
                json=[m.model_dump() for m in chunk],
                headers={
                    "Accept": "application/json",
                    "Accept-Encoding": "gzip, deflate",
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
            data = response.json().get("data") or []
        except httpx.HTTPStatusError as e:
            logger.error(f"❌ Expo push rejected chunk: {e.response.status_code} {e.response.text}")
            return [{"status": "error", "message": "provider_rejected"} for _ in chunk]
        except Exception as e:
            logger.error(f"❌ Error sending push chunk: {e}")
            return [{"status": "error", "message": "transport_error"} for _ in chunk]

        logger.info(f"Push notifications sent: {len(chunk)} notifications")
        # Pad if the provider answered with fewer tickets than messages
        tickets = list(data[:len(chunk)])
        tickets.extend({"status": "error", "message": "missing_ticket"} for _ in range(len(chunk) - len(tickets)))
        return tickets


class NotificationDispatcher:
    """
    Decides whether a participant needs a push notification and sends it.

    Never raises: a failed push must not fail the message send that triggered it.
    """

    def __init__(
        self,
        store: ChatStore,
        presence: PresenceRegistry,
        provider: Optional[ExpoPushProvider] = None,
        enabled: bool = True,
    ):
        self.store = store
        self.presence = presence
        self.provider = provider
        self.enabled = enabled and provider is not None

    @staticmethod
    def build_message_payload(session: ChatSession, message: ChatMessage) -> Dict[str, Any]:
        return {
            "title": NOTIFICATION_TITLES[message.sender_type],
            "body": message.message_text,
            "data": {
                "chat_session_id": session.id,
                "message_id": message.id,
                "type": "chat_message",
            },
        }

    @staticmethod
    def _recipients(session: ChatSession, message: ChatMessage) -> List[Audience]:
        if message.sender_type == SenderType.CUSTOMER:
            return [Audience.AGENT]
        if message.sender_type == SenderType.AGENT:
            return [Audience.CUSTOMER]
        return [Audience.CUSTOMER, Audience.AGENT]

    async def notify_new_message(self, session: ChatSession, message: ChatMessage) -> int:
        """
        Push a chat message to every recipient that is offline.

        Returns:
            Number of devices the provider accepted
        """
        delivered = 0
        for audience in self._recipients(session, message):
            recipient_id = session.participant_id(audience)
            if self.presence.is_online(recipient_id):
                logger.debug(f"User {recipient_id} is online, skipping push")
                continue

            payload = self.build_message_payload(session, message)
            delivered += await self.send_to_user(recipient_id, audience, **payload)
        return delivered

    async def notify_new_session(self, session: ChatSession, message: ChatMessage) -> int:
        """Tell an offline print agent about a freshly paid job"""
        if self.presence.is_online(session.agent_id):
            return 0
        return await self.send_to_user(
            session.agent_id,
            Audience.AGENT,
            title="New order chat",
            body=message.message_text,
            data={
                "chat_session_id": session.id,
                "print_job_id": session.print_job_id,
                "type": "new_chat_session",
            },
        )

    async def send_to_user(
        self,
        user_id: str,
        audience: Audience,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        if not self.enabled:
            return 0

        try:
            tokens = await self.store.list_device_tokens(user_id, audience)
            if not tokens:
                logger.info(f"No active notification tokens found for user: {user_id}")
                return 0

            messages = [
                PushMessage(to=token.device_token, title=title, body=body, data=data or {})
                for token in tokens
            ]
            tickets = await self.provider.send(messages)
            await self._prune_invalid_tokens(tokens, tickets)

            delivered = sum(1 for ticket in tickets if ticket.get("status") == "ok")
            logger.info(f"Push to user {user_id}: delivered={delivered}/{len(tokens)}")
            return delivered

        except Exception as e:
            logger.error(f"❌ Push notification error for user {user_id}: {e}")
            return 0

    async def _prune_invalid_tokens(self, tokens: List[DeviceToken], tickets: List[Dict[str, Any]]) -> None:
        invalid = []
        for token, ticket in zip(tokens, tickets):
            details = ticket.get("details") or {}
            if ticket.get("status") == "error" and details.get("error") in INVALID_TOKEN_ERRORS:
                invalid.append(token)

        if not invalid:
            return

        try:
            await self.store.deactivate_device_tokens([token.id for token in invalid])
            for token in invalid:
                logger.warning(f"Disabled invalid notification token: {token.device_token}")
        except Exception as e:
            logger.error(f"❌ Failed to disable invalid notification tokens: {e}")

    # ============ Device registration ============

    async def register_device(self, user_id: str, audience: Audience, device_token: str, platform: str) -> DeviceToken:
        """Upsert by device token; a token moving to another account follows it"""
        device_token = (device_token or "").strip()
        if not device_token:
            raise InvalidInputError("device_token is required")
        try:
            token = await self.store.register_device_token(user_id, audience, device_token, platform)
        except Exception as e:
            logger.error(f"❌ Failed to register notification token for user {user_id}: {e}")
            raise ChatServiceError("Failed to register device token") from e
        logger.info(f"Registered notification token for {audience.value} {user_id} ({platform})")
        return token

    async def unregister_device(self, user_id: str, device_token: str) -> DeviceToken:
        try:
            token = await self.store.unregister_device_token(user_id, device_token)
        except Exception as e:
            logger.error(f"❌ Failed to unregister notification token for user {user_id}: {e}")
            raise ChatServiceError("Failed to unregister device token") from e
        if token is None:
            raise NotFoundError("Device token not registered for this user")
        logger.info(f"Unregistered notification token for user {user_id}")
        return token
