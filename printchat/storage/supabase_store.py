"""
Supabase Chat Store

Persists sessions and messages in Supabase (PostgreSQL). Operations that must
be atomic are Postgres functions invoked via RPC; see
supabase/migrations/0001_chat_schema.sql. Customers, print agents and print
jobs are owned by other services and only read here.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from supabase import create_client, Client

from printchat.config import settings
from printchat.models.chat import (
    Audience, ChatMessage, ChatSession, CompletedBy, PrintJob, SenderProfile, SenderType,
    SessionStatus
)
from printchat.models.notification import DeviceToken
from printchat.services.exceptions import NotFoundError
from printchat.storage.base import ChatStore, DuplicateSessionError

logger = logging.getLogger(__name__)

SESSIONS = "chat_sessions"
MESSAGES = "chat_messages"
TOKENS = "notification_tokens"

UNIQUE_VIOLATION = "23505"
SESSION_NOT_FOUND = "P0002"

_PARTICIPANT_COLUMN = {
    Audience.CUSTOMER: "customer_id",
    Audience.AGENT: "agent_id",
}
_READ_COLUMN = {
    Audience.CUSTOMER: "read_by_customer",
    Audience.AGENT: "read_by_agent",
}


def _error_code(error: Exception) -> Optional[str]:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    details = error.args[0] if error.args else None
    if isinstance(details, dict):
        return details.get("code")
    return None


class SupabaseChatStore(ChatStore):
    """Chat store backed by Supabase"""

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client"""
        if client is not None:
            self._client = client
        elif not settings.is_supabase_configured:
            raise RuntimeError("Supabase not configured. Set SUPABASE_URL and SUPABASE_SERVICE_KEY.")
        else:
            # Service role key, the backend enforces participant checks itself
            self._client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)
            logger.info("Supabase chat store initialized")

    @property
    def client(self) -> Client:
        return self._client

    @staticmethod
    async def _execute(query):
        # supabase-py is synchronous; keep the event loop free for other connections
        return await asyncio.to_thread(query.execute)

    # ============ Sessions ============

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        response = await self._execute(
            self.client.table(SESSIONS).select("*").eq("id", session_id).limit(1)
        )
        return ChatSession(**response.data[0]) if response.data else None

    async def get_session_by_job(self, print_job_id: str) -> Optional[ChatSession]:
        response = await self._execute(
            self.client.table(SESSIONS).select("*").eq("print_job_id", print_job_id).limit(1)
        )
        return ChatSession(**response.data[0]) if response.data else None

    @staticmethod
    def _unpack(result: Dict[str, Any]) -> Tuple[ChatMessage, ChatSession]:
        return ChatMessage(**result["message"]), ChatSession(**result["session"])

    async def insert_session_with_message(
        self, session: ChatSession, message: ChatMessage
    ) -> Tuple[ChatMessage, ChatSession]:
        try:
            response = await self._execute(
                self.client.rpc(
                    "chat_create_session",
                    {
                        "p_session": session.model_dump(mode="json"),
                        "p_message": message.model_dump(mode="json", exclude={"sender"}),
                    },
                )
            )
        except Exception as e:
            if _error_code(e) == UNIQUE_VIOLATION:
                raise DuplicateSessionError(session.print_job_id) from e
            raise

        if not response.data:
            raise RuntimeError("Failed to create chat session")
        return self._unpack(response.data)

    async def complete_session(
        self,
        session_id: str,
        completed_by: CompletedBy,
        completed_at: datetime,
        notice: ChatMessage,
    ) -> Optional[Tuple[ChatMessage, ChatSession]]:
        response = await self._execute(
            self.client.rpc(
                "chat_complete_session",
                {
                    "p_session_id": session_id,
                    "p_completed_by": completed_by.value,
                    "p_completed_at": completed_at.isoformat(),
                    "p_message": notice.model_dump(mode="json", exclude={"sender"}),
                },
            )
        )
        # null when the session was no longer active
        return self._unpack(response.data) if response.data else None

    async def expire_sessions(
        self, now: datetime, notice_text: str
    ) -> List[Tuple[ChatMessage, ChatSession]]:
        response = await self._execute(
            self.client.rpc(
                "chat_expire_sessions",
                {"p_now": now.isoformat(), "p_notice_text": notice_text},
            )
        )
        return [self._unpack(row) for row in (response.data or [])]

    async def list_active_sessions(
        self, audience: Audience, user_id: str, now: datetime
    ) -> List[ChatSession]:
        response = await self._execute(
            self.client.table(SESSIONS)
            .select("*")
            .eq(_PARTICIPANT_COLUMN[audience], user_id)
            .eq("status", SessionStatus.ACTIVE.value)
            .gte("expires_at", now.isoformat())
        )
        return [ChatSession(**row) for row in response.data]

    async def list_sessions_created_between(
        self, start: datetime, end: datetime
    ) -> List[ChatSession]:
        response = await self._execute(
            self.client.table(SESSIONS)
            .select("*")
            .gte("created_at", start.isoformat())
            .lt("created_at", end.isoformat())
        )
        return [ChatSession(**row) for row in response.data]

    # ============ Messages ============

    async def append_message(self, message: ChatMessage) -> Tuple[ChatMessage, ChatSession]:
        row = message.model_dump(mode="json", exclude={"sender"})
        try:
            response = await self._execute(
                self.client.rpc("chat_append_message", {"p_message": row})
            )
        except Exception as e:
            if _error_code(e) == SESSION_NOT_FOUND:
                raise NotFoundError(f"Chat session {message.chat_session_id} not found") from e
            raise

        if not response.data:
            raise RuntimeError("Failed to append chat message")
        return self._unpack(response.data)

    async def mark_read(self, session_id: str, audience: Audience) -> ChatSession:
        try:
            response = await self._execute(
                self.client.rpc(
                    "chat_mark_read",
                    {"p_session_id": session_id, "p_audience": audience.value},
                )
            )
        except Exception as e:
            if _error_code(e) == SESSION_NOT_FOUND:
                raise NotFoundError(f"Chat session {session_id} not found") from e
            raise
        return ChatSession(**response.data)

    async def list_messages(self, session_id: str, offset: int, limit: int) -> List[ChatMessage]:
        response = await self._execute(
            self.client.table(MESSAGES)
            .select("*")
            .eq("chat_session_id", session_id)
            .order("timestamp", desc=False)
            .order("seq", desc=False)
            .range(offset, offset + limit - 1)
        )
        return [ChatMessage(**row) for row in response.data]

    async def count_messages(self, session_id: str) -> int:
        response = await self._execute(
            self.client.table(MESSAGES)
            .select("id", count="exact")
            .eq("chat_session_id", session_id)
            .limit(1)
        )
        return response.count or 0

    async def count_unread(self, session_id: str, audience: Audience) -> int:
        response = await self._execute(
            self.client.table(MESSAGES)
            .select("id", count="exact")
            .eq("chat_session_id", session_id)
            .eq(_READ_COLUMN[audience], False)
            .neq("sender_type", audience.value)
            .limit(1)
        )
        return response.count or 0

    async def latest_message(self, session_id: str) -> Optional[ChatMessage]:
        response = await self._execute(
            self.client.table(MESSAGES)
            .select("*")
            .eq("chat_session_id", session_id)
            .order("timestamp", desc=True)
            .order("seq", desc=True)
            .limit(1)
        )
        return ChatMessage(**response.data[0]) if response.data else None

    # ============ Accounts ============

    async def delete_participant_data(self, audience: Audience, user_id: str) -> Tuple[int, int]:
        column = _PARTICIPANT_COLUMN[audience]
        sessions = await self._execute(
            self.client.table(SESSIONS).select("id").eq(column, user_id)
        )
        session_ids = [row["id"] for row in sessions.data]

        message_count = 0
        if session_ids:
            counted = await self._execute(
                self.client.table(MESSAGES)
                .select("id", count="exact")
                .in_("chat_session_id", session_ids)
                .limit(1)
            )
            message_count = counted.count or 0
            # chat_messages cascade from chat_sessions
            await self._execute(self.client.table(SESSIONS).delete().in_("id", session_ids))

        await self._execute(
            self.client.table(TOKENS)
            .delete()
            .eq("user_id", user_id)
            .eq("user_type", audience.value)
        )
        return len(session_ids), message_count

    # ============ Directory ============

    async def get_print_job(self, print_job_id: str) -> Optional[PrintJob]:
        response = await self._execute(
            self.client.table("print_jobs")
            .select("id, customer_id, print_agent_id, print_job_title, pages, is_color, no_of_copies")
            .eq("id", print_job_id)
            .limit(1)
        )
        return PrintJob(**response.data[0]) if response.data else None

    async def get_user_profile(self, user_id: str, audience: Audience) -> Optional[SenderProfile]:
        if audience == Audience.CUSTOMER:
            query = self.client.table("customers").select("id, full_name, email")
            sender_type = SenderType.CUSTOMER
        else:
            query = self.client.table("print_agents").select("id, full_name, email, business_name")
            sender_type = SenderType.AGENT

        response = await self._execute(query.eq("id", user_id).limit(1))
        if not response.data:
            return None
        return SenderProfile(type=sender_type, **response.data[0])

    # ============ Device tokens ============

    async def list_device_tokens(self, user_id: str, audience: Audience) -> List[DeviceToken]:
        response = await self._execute(
            self.client.table(TOKENS)
            .select("*")
            .eq("user_id", user_id)
            .eq("user_type", audience.value)
            .eq("is_active", True)
        )
        return [DeviceToken(**row) for row in response.data]

    async def register_device_token(
        self, user_id: str, audience: Audience, device_token: str, platform: str
    ) -> DeviceToken:
        response = await self._execute(
            self.client.table(TOKENS).upsert(
                {
                    "user_id": user_id,
                    "user_type": audience.value,
                    "device_token": device_token,
                    "platform": platform,
                    "is_active": True,
                },
                on_conflict="device_token",
            )
        )
        if not response.data:
            raise RuntimeError("Failed to register device token")
        return DeviceToken(**response.data[0])

    async def unregister_device_token(self, user_id: str, device_token: str) -> Optional[DeviceToken]:
        response = await self._execute(
            self.client.table(TOKENS)
            .update({"is_active": False})
            .eq("device_token", device_token)
            .eq("user_id", user_id)
        )
        return DeviceToken(**response.data[0]) if response.data else None

    async def deactivate_device_tokens(self, token_ids: Sequence[str]) -> int:
        if not token_ids:
            return 0
        response = await self._execute(
            self.client.table(TOKENS)
            .update({"is_active": False})
            .in_("id", list(token_ids))
        )
        return len(response.data or [])
