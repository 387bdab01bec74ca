"""
In-memory chat store.

Backs the ``memory`` store backend and the test suite. Each unit-of-work method
runs without suspending once it has started, which makes it atomic with respect
to other tasks on the same event loop. It stages the new session and message
log on copies and installs them only at the end, so a failure part way leaves
the store untouched. Callers always receive copies.
"""
import asyncio
import itertools
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple, Any

from printchat.models.chat import (
    Audience, ChatMessage, ChatSession, CompletedBy, PrintJob, SenderProfile,
    MessageType, SenderType, SessionStatus
)
from printchat.models.notification import DeviceToken
from printchat.services.exceptions import NotFoundError
from printchat.storage.base import ChatStore, DuplicateSessionError

logger = logging.getLogger(__name__)


class InMemoryChatStore(ChatStore):

    def __init__(self):
        self._sessions: Dict[str, ChatSession] = {}
        self._sessions_by_job: Dict[str, str] = {}
        self._messages: Dict[str, List[ChatMessage]] = {}
        self._message_seq: Dict[str, int] = {}
        self._seq = itertools.count()

        self._print_jobs: Dict[str, PrintJob] = {}
        self._profiles: Dict[Tuple[Audience, str], SenderProfile] = {}
        self._device_tokens: Dict[str, DeviceToken] = {}

    # ============ Seeding (directory collaborators) ============

    def add_print_job(self, print_job: PrintJob) -> None:
        self._print_jobs[print_job.id] = print_job

    def add_user(
        self,
        user_id: str,
        audience: Audience,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        business_name: Optional[str] = None,
    ) -> None:
        sender_type = SenderType.CUSTOMER if audience == Audience.CUSTOMER else SenderType.AGENT
        self._profiles[(audience, user_id)] = SenderProfile(
            id=user_id,
            type=sender_type,
            full_name=full_name,
            email=email,
            business_name=business_name,
        )

    def remove_user(self, user_id: str, audience: Audience) -> None:
        self._profiles.pop((audience, user_id), None)

    # ============ Internals ============

    @staticmethod
    async def _yield() -> None:
        # Mimic the suspension point of a real store call
        await asyncio.sleep(0)

    def _ordered(self, session_id: str) -> List[ChatMessage]:
        messages = self._messages.get(session_id, [])
        return sorted(messages, key=lambda m: (m.timestamp, self._message_seq[m.id]))

    @staticmethod
    def _with_counters(session: ChatSession, messages: List[ChatMessage]) -> ChatSession:
        updates: Dict[str, Any] = {
            "total_messages": len(messages),
            "unread_by_customer": sum(1 for m in messages if m.is_unread_for(Audience.CUSTOMER)),
            "unread_by_agent": sum(1 for m in messages if m.is_unread_for(Audience.AGENT)),
        }
        if messages:
            updates["last_message_at"] = max(m.timestamp for m in messages)
        return session.model_copy(update=updates)

    def _commit(self, session: ChatSession, messages: List[ChatMessage]) -> None:
        """Install a fully staged session and its complete message log"""
        for message in messages:
            if message.id not in self._message_seq:
                self._message_seq[message.id] = next(self._seq)
        self._sessions[session.id] = session
        self._sessions_by_job[session.print_job_id] = session.id
        self._messages[session.id] = messages

    @staticmethod
    def _check_owner(session_id: str, message: ChatMessage) -> None:
        if message.chat_session_id != session_id:
            raise ValueError(f"Message {message.id} does not belong to chat session {session_id}")

    # ============ Sessions ============

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        await self._yield()
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_session_by_job(self, print_job_id: str) -> Optional[ChatSession]:
        await self._yield()
        session_id = self._sessions_by_job.get(print_job_id)
        if session_id is None:
            return None
        return self._sessions[session_id].model_copy(deep=True)

    async def insert_session_with_message(
        self, session: ChatSession, message: ChatMessage
    ) -> Tuple[ChatMessage, ChatSession]:
        await self._yield()
        if session.print_job_id in self._sessions_by_job:
            raise DuplicateSessionError(session.print_job_id)
        self._check_owner(session.id, message)

        stored = message.model_copy(deep=True)
        staged = self._with_counters(session.model_copy(deep=True), [stored])
        self._commit(staged, [stored])
        return stored.model_copy(deep=True), staged.model_copy(deep=True)

    async def complete_session(
        self,
        session_id: str,
        completed_by: CompletedBy,
        completed_at: datetime,
        notice: ChatMessage,
    ) -> Optional[Tuple[ChatMessage, ChatSession]]:
        await self._yield()
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return None
        self._check_owner(session_id, notice)

        stored = notice.model_copy(deep=True)
        messages = self._messages[session_id] + [stored]
        staged = self._with_counters(
            session.model_copy(update={
                "status": SessionStatus.COMPLETED,
                "completed_by": completed_by,
                "completed_at": completed_at,
            }),
            messages,
        )
        self._commit(staged, messages)
        return stored.model_copy(deep=True), staged.model_copy(deep=True)

    async def expire_sessions(
        self, now: datetime, notice_text: str
    ) -> List[Tuple[ChatMessage, ChatSession]]:
        await self._yield()
        staged = []
        for session in self._sessions.values():
            if session.status != SessionStatus.ACTIVE or not session.expires_at < now:
                continue
            notice = ChatMessage(
                id=str(uuid.uuid4()),
                chat_session_id=session.id,
                sender_type=SenderType.SYSTEM,
                message_text=notice_text,
                message_type=MessageType.SYSTEM,
                timestamp=now,
                read_by_customer=True,
                read_by_agent=True,
            )
            messages = self._messages[session.id] + [notice]
            expired = self._with_counters(
                session.model_copy(update={
                    "status": SessionStatus.EXPIRED,
                    "completed_by": CompletedBy.AUTO_TIMEOUT,
                    "completed_at": now,
                }),
                messages,
            )
            staged.append((notice, expired, messages))

        for _, expired, messages in staged:
            self._commit(expired, messages)
        return [(n.model_copy(deep=True), s.model_copy(deep=True)) for n, s, _ in staged]

    async def list_active_sessions(
        self, audience: Audience, user_id: str, now: datetime
    ) -> List[ChatSession]:
        await self._yield()
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.participant_id(audience) == user_id and s.is_open(now)
        ]

    async def list_sessions_created_between(
        self, start: datetime, end: datetime
    ) -> List[ChatSession]:
        await self._yield()
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if start <= s.created_at < end
        ]

    # ============ Messages ============

    async def append_message(self, message: ChatMessage) -> Tuple[ChatMessage, ChatSession]:
        await self._yield()
        session = self._sessions.get(message.chat_session_id)
        if session is None:
            raise NotFoundError(f"Chat session {message.chat_session_id} not found")

        stored = message.model_copy(deep=True)
        messages = self._messages[session.id] + [stored]
        staged = self._with_counters(session, messages)
        self._commit(staged, messages)
        return stored.model_copy(deep=True), staged.model_copy(deep=True)

    async def mark_read(self, session_id: str, audience: Audience) -> ChatSession:
        await self._yield()
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Chat session {session_id} not found")

        field = "read_by_customer" if audience == Audience.CUSTOMER else "read_by_agent"
        messages = [
            m.model_copy(update={field: True}) if m.is_unread_for(audience) else m
            for m in self._messages[session_id]
        ]
        staged = self._with_counters(session, messages)
        self._commit(staged, messages)
        return staged.model_copy(deep=True)

    async def list_messages(self, session_id: str, offset: int, limit: int) -> List[ChatMessage]:
        await self._yield()
        page = self._ordered(session_id)[offset:offset + limit]
        return [m.model_copy(deep=True) for m in page]

    async def count_messages(self, session_id: str) -> int:
        await self._yield()
        return len(self._messages.get(session_id, []))

    async def count_unread(self, session_id: str, audience: Audience) -> int:
        await self._yield()
        return sum(1 for m in self._messages.get(session_id, []) if m.is_unread_for(audience))

    async def latest_message(self, session_id: str) -> Optional[ChatMessage]:
        await self._yield()
        messages = self._ordered(session_id)
        return messages[-1].model_copy(deep=True) if messages else None

    # ============ Accounts ============

    async def delete_participant_data(self, audience: Audience, user_id: str) -> Tuple[int, int]:
        await self._yield()
        doomed = [s for s in self._sessions.values() if s.participant_id(audience) == user_id]
        message_count = 0
        for session in doomed:
            messages = self._messages.pop(session.id, [])
            message_count += len(messages)
            for m in messages:
                self._message_seq.pop(m.id, None)
            self._sessions.pop(session.id, None)
            self._sessions_by_job.pop(session.print_job_id, None)

        for token_id, token in list(self._device_tokens.items()):
            if token.user_id == user_id and token.user_type == audience:
                del self._device_tokens[token_id]

        return len(doomed), message_count

    # ============ Directory ============

    async def get_print_job(self, print_job_id: str) -> Optional[PrintJob]:
        await self._yield()
        job = self._print_jobs.get(print_job_id)
        return job.model_copy() if job else None

    async def get_user_profile(self, user_id: str, audience: Audience) -> Optional[SenderProfile]:
        await self._yield()
        profile = self._profiles.get((audience, user_id))
        return profile.model_copy() if profile else None

    # ============ Device tokens ============

    async def list_device_tokens(self, user_id: str, audience: Audience) -> List[DeviceToken]:
        await self._yield()
        return [
            t.model_copy()
            for t in self._device_tokens.values()
            if t.user_id == user_id and t.user_type == audience and t.is_active
        ]

    async def register_device_token(
        self, user_id: str, audience: Audience, device_token: str, platform: str
    ) -> DeviceToken:
        await self._yield()
        now = datetime.now(timezone.utc)
        for token_id, token in self._device_tokens.items():
            if token.device_token == device_token:
                token = token.model_copy(update={
                    "user_id": user_id,
                    "user_type": audience,
                    "platform": platform,
                    "is_active": True,
                    "updated_at": now,
                })
                self._device_tokens[token_id] = token
                return token.model_copy()

        token = DeviceToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            user_type=audience,
            device_token=device_token,
            platform=platform,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self._device_tokens[token.id] = token
        return token.model_copy()

    async def unregister_device_token(self, user_id: str, device_token: str) -> Optional[DeviceToken]:
        await self._yield()
        for token_id, token in self._device_tokens.items():
            if token.device_token == device_token and token.user_id == user_id:
                token = token.model_copy(update={"is_active": False})
                self._device_tokens[token_id] = token
                return token.model_copy()
        return None

    async def deactivate_device_tokens(self, token_ids: Sequence[str]) -> int:
        await self._yield()
        count = 0
        for token_id in token_ids:
            token = self._device_tokens.get(token_id)
            if token and token.is_active:
                self._device_tokens[token_id] = token.model_copy(update={"is_active": False})
                count += 1
        return count
