"""
Chat Service

Business rules for print-job chat sessions: creation on payment, sending,
read tracking, completion, expiry and reporting. Transport independent; the
REST routes and the WebSocket gateway both call into this class.
"""
import asyncio
import logging
import math
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, Union

from printchat.models.chat import (
    Audience, ChatMessage, ChatSession, ChatStatistics, CompletedBy, MessageHistoryResponse,
    MessageType, Pagination, SenderProfile, SenderType, SessionStatus, SessionUnreadCount,
    SessionWithLatestMessage, UnreadCountResponse
)
from printchat.models.sender import (
    CustomerSender, Sender, SystemSender, initial_read_flags, sender_for_audience, sender_id,
    sender_type
)
from printchat.models.user import User
from printchat.services.broadcast import ChatBroadcaster, NullBroadcaster
from printchat.services.exceptions import (
    ChatError, ChatServiceError, InvalidInputError, InvalidStateError, NotFoundError,
    UnauthorizedError
)
from printchat.services.lock_service import SessionLockManager
from printchat.storage.base import ChatStore, DuplicateSessionError

logger = logging.getLogger(__name__)

COMPLETION_MESSAGES = {
    CompletedBy.AGENT: "This chat has been marked as completed by the print agent.",
    CompletedBy.AUTO_TIMEOUT: "This chat has been automatically closed after 24 hours.",
    CompletedBy.SYSTEM: "This chat has been closed by the system.",
}

# Only the server writes these kinds
RESERVED_MESSAGE_TYPES = {MessageType.SYSTEM, MessageType.AUTO}

SYSTEM_PROFILE = SenderProfile(type=SenderType.SYSTEM, full_name="System")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_auto_message_text(print_job) -> str:
    color_mode = "color" if print_job.is_color else "black & white"
    return (
        f"Hi! I have placed an order #{print_job.id[-6:]} "
        f"for {print_job.pages} pages {color_mode} printing"
    )


@contextmanager
def _service_boundary(operation: str) -> Iterator[None]:
    """Let chat errors through; log anything else and surface a generic failure"""
    try:
        yield
    except ChatError:
        raise
    except Exception as e:
        logger.error(f"❌ Error while trying to {operation}: {e}")
        raise ChatServiceError(f"Failed to {operation}") from e


class ChatService:
    """Orchestrates chat sessions and messages on top of a ChatStore"""

    def __init__(
        self,
        store: ChatStore,
        locks: Optional[SessionLockManager] = None,
        broadcaster: Optional[ChatBroadcaster] = None,
        dispatcher=None,
        session_ttl_hours: int = 24,
        max_message_length: int = 2000,
        default_page_size: int = 50,
        max_page_size: int = 200,
        statistics_window_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.locks = locks or SessionLockManager()
        self.broadcaster: ChatBroadcaster = broadcaster or NullBroadcaster()
        self.dispatcher = dispatcher
        self.session_ttl = timedelta(hours=session_ttl_hours)
        self.max_message_length = max_message_length
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.statistics_window = timedelta(days=statistics_window_days)
        self.clock = clock or utcnow
        self._background: Set[asyncio.Task] = set()

    # ============ Helpers ============

    @staticmethod
    def _authorize(session: ChatSession, user: User) -> None:
        if user.is_admin:
            return
        if not session.is_participant(user.user_id, user.audience):
            logger.warning(f"User {user.user_id} is not a participant of chat session {session.id}")
            raise UnauthorizedError("You are not a participant of this chat session")

    async def _require_session(self, session_id: str) -> ChatSession:
        if not session_id:
            raise InvalidInputError("chat_session_id is required")
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Chat session {session_id} not found")
        return session

    def _validate_text(self, text: Any) -> str:
        if not isinstance(text, str):
            raise InvalidInputError("message_text must be a string")
        trimmed = text.strip()
        if not trimmed:
            raise InvalidInputError("Message text cannot be empty")
        if len(trimmed) > self.max_message_length:
            raise InvalidInputError(
                f"Message text exceeds {self.max_message_length} characters"
            )
        return trimmed

    @staticmethod
    def _validate_message_type(message_type: Union[MessageType, str, None], user: User) -> MessageType:
        try:
            kind = MessageType(message_type or MessageType.TEXT)
        except ValueError:
            raise InvalidInputError(f"Unknown message_type: {message_type}")
        if kind in RESERVED_MESSAGE_TYPES and not user.is_admin:
            raise InvalidInputError(f"message_type '{kind.value}' is reserved")
        return kind

    @staticmethod
    def _new_message(
        session_id: str,
        sender: Sender,
        text: str,
        message_type: MessageType,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        read_by_customer, read_by_agent = initial_read_flags(sender)
        return ChatMessage(
            id=str(uuid.uuid4()),
            chat_session_id=session_id,
            sender_id=sender_id(sender),
            sender_type=sender_type(sender),
            message_text=text,
            message_type=message_type,
            timestamp=now,
            read_by_customer=read_by_customer,
            read_by_agent=read_by_agent,
            metadata=metadata or {},
        )

    async def _attach_senders(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        """Resolve display attributes for each distinct author once"""
        profiles: Dict[Tuple[SenderType, Optional[str]], SenderProfile] = {}
        for message in messages:
            key = (message.sender_type, message.sender_id)
            if key not in profiles:
                profiles[key] = await self._lookup_profile(*key)
            message.sender = profiles[key]
        return messages

    async def _lookup_profile(self, kind: SenderType, user_id: Optional[str]) -> SenderProfile:
        if kind == SenderType.SYSTEM or not user_id:
            return SYSTEM_PROFILE
        audience = Audience.CUSTOMER if kind == SenderType.CUSTOMER else Audience.AGENT
        profile = await self.store.get_user_profile(user_id, audience)
        return profile or SenderProfile(id=user_id, type=kind)

    async def _emit_session(self, session_id: str, event_type: str, data: Dict[str, Any], exclude=None) -> None:
        try:
            await self.broadcaster.emit_to_session(session_id, event_type, data, exclude=exclude)
        except Exception as e:
            logger.error(f"❌ Failed to emit {event_type} for session {session_id}: {e}")

    async def _emit_user(self, user_id: str, event_type: str, data: Dict[str, Any]) -> None:
        try:
            await self.broadcaster.emit_to_user(user_id, event_type, data)
        except Exception as e:
            logger.error(f"❌ Failed to emit {event_type} to user {user_id}: {e}")

    def _spawn(self, coro) -> None:
        """Run a notification in the background so the caller never waits on the push provider"""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_notifications(self) -> None:
        """Wait for in-flight push notifications"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ============ Session lifecycle ============

    async def create_session(self, print_job_id: str, customer_id: str, agent_id: str) -> ChatSession:
        """
        Create the chat session for a paid print job.

        Idempotent: if the job already has a session, that session is returned
        unchanged. A new session gets one automatic message summarising the
        order, authored by the customer.

        Raises:
            InvalidInputError: missing identifiers
            NotFoundError: the print job does not exist
        """
        if not print_job_id or not customer_id or not agent_id:
            raise InvalidInputError("print_job_id, customer_id and agent_id are required")

        with _service_boundary("create chat session"):
            existing = await self.store.get_session_by_job(print_job_id)
            if existing is not None:
                logger.info(f"Chat session already exists for print job {print_job_id}: {existing.id}")
                return existing

            print_job = await self.store.get_print_job(print_job_id)
            if print_job is None:
                raise NotFoundError(f"Print job {print_job_id} not found")

            now = self.clock()
            session = ChatSession(
                id=str(uuid.uuid4()),
                print_job_id=print_job_id,
                customer_id=customer_id,
                agent_id=agent_id,
                status=SessionStatus.ACTIVE,
                created_at=now,
                expires_at=now + self.session_ttl,
                last_message_at=now,
            )
            auto_message = self._new_message(
                session.id,
                CustomerSender(id=customer_id),
                build_auto_message_text(print_job),
                MessageType.AUTO,
                now,
                metadata={"print_job_id": print_job_id},
            )
            try:
                auto_message, session = await self.store.insert_session_with_message(session, auto_message)
            except DuplicateSessionError:
                # Lost a creation race; the winner's session is the session
                winner = await self.store.get_session_by_job(print_job_id)
                if winner is None:
                    raise
                logger.info(f"Concurrent creation for print job {print_job_id}, using {winner.id}")
                return winner

        logger.info(f"✅ Chat session created: {session.id} for print job {print_job_id}")

        await self._attach_senders([auto_message])
        await self._emit_user(agent_id, "new_chat_session", {
            "chat_session": session.model_dump(mode="json"),
            "message": auto_message.model_dump(mode="json"),
        })
        if self.dispatcher is not None:
            self._spawn(self.dispatcher.notify_new_session(session, auto_message))

        return session

    async def create_session_on_payment(self, print_job_id: str, customer_id: str, agent_id: str) -> ChatSession:
        """Entry point for the payment-completion handler"""
        return await self.create_session(print_job_id, customer_id, agent_id)

    async def complete_session(
        self,
        session_id: str,
        completed_by: CompletedBy = CompletedBy.AGENT,
        user: Optional[User] = None,
    ) -> ChatSession:
        """
        Close an active session and post the completion notice.

        Raises:
            NotFoundError: unknown session
            UnauthorizedError: caller is neither the session's agent nor an admin
            InvalidStateError: session already completed or expired
        """
        with _service_boundary("complete chat session"):
            async with self.locks.hold(session_id):
                session = await self._require_session(session_id)
                if user is not None and not user.is_admin:
                    if user.audience != Audience.AGENT or session.agent_id != user.user_id:
                        logger.warning(f"User {user.user_id} may not complete chat session {session_id}")
                        raise UnauthorizedError("Only the print agent of this chat can complete it")

                now = self.clock()
                if session.status != SessionStatus.ACTIVE:
                    raise InvalidStateError(f"Chat session is already {session.status.value}")
                if session.is_expired(now):
                    raise InvalidStateError("Chat session has expired")

                notice = self._new_message(
                    session_id, SystemSender(), COMPLETION_MESSAGES[completed_by], MessageType.SYSTEM, now
                )
                result = await self.store.complete_session(session_id, completed_by, now, notice)
                if result is None:
                    # Swept between the read and the write
                    raise InvalidStateError("Chat session is no longer active")
                notice, completed = result

        logger.info(f"✅ Chat session {session_id} completed by {completed_by.value}")

        await self._attach_senders([notice])
        await self._emit_session(session_id, "chat_completed", {
            "chat_session_id": session_id,
            "completed_by": completed_by.value,
            "completed_at": completed.completed_at.isoformat() if completed.completed_at else None,
            "message": notice.model_dump(mode="json"),
        })
        return completed

    async def complete_on_job_finish(
        self,
        print_job_id: str,
        completed_by: CompletedBy = CompletedBy.AGENT,
    ) -> Optional[ChatSession]:
        """
        Close the job's chat when the job is finished outside the chat.

        Returns the session as it ends up, or None if the job never had one.
        A session that is already closed is returned untouched.
        """
        with _service_boundary("complete chat for print job"):
            session = await self.store.get_session_by_job(print_job_id)
        if session is None:
            logger.info(f"No chat session for finished print job {print_job_id}")
            return None

        if not session.is_open(self.clock()):
            return session

        try:
            return await self.complete_session(session.id, completed_by)
        except InvalidStateError:
            with _service_boundary("complete chat for print job"):
                return await self.store.get_session(session.id)

    async def sweep_expired(self, now: Optional[datetime] = None) -> List[ChatSession]:
        """
        Persist the expired status of every active session past its expiry.

        Only sessions with expires_at strictly before ``now`` are touched, and
        terminal sessions are never revisited. The store writes each session's
        expiry notice together with its status change. Sends on the same
        sessions are already rejected by the lazy expiry check, so the sweep
        takes no session locks.
        """
        now = now or self.clock()
        with _service_boundary("expire chat sessions"):
            results = await self.store.expire_sessions(now, COMPLETION_MESSAGES[CompletedBy.AUTO_TIMEOUT])

        if results:
            logger.info(f"⏰ Expired {len(results)} chat session(s)")

        expired = []
        for notice, session in results:
            expired.append(session)
            notice.sender = SYSTEM_PROFILE
            await self._emit_session(session.id, "chat_completed", {
                "chat_session_id": session.id,
                "completed_by": CompletedBy.AUTO_TIMEOUT.value,
                "completed_at": now.isoformat(),
                "message": notice.model_dump(mode="json"),
            })
        return expired

    # ============ Messages ============

    async def send_message(
        self,
        session_id: str,
        user: User,
        message_text: Any,
        message_type: Union[MessageType, str, None] = MessageType.TEXT,
    ) -> ChatMessage:
        """
        Append a message to a session and fan it out.

        Admins post as the system sender. The message is stored with the
        author's own audience already marked read, and the session counters
        are recomputed in the same unit of work.

        Raises:
            NotFoundError: unknown session
            UnauthorizedError: caller is not a participant
            InvalidStateError: session is closed or past its expiry
            InvalidInputError: empty or oversized text, reserved message type
        """
        text = self._validate_text(message_text)
        kind = self._validate_message_type(message_type, user)

        with _service_boundary("send message"):
            async with self.locks.hold(session_id):
                session = await self._require_session(session_id)
                self._authorize(session, user)

                now = self.clock()
                if not session.is_open(now):
                    reason = "expired" if session.status == SessionStatus.ACTIVE else session.status.value
                    raise InvalidStateError(f"Chat session is {reason}")

                sender = SystemSender() if user.is_admin else sender_for_audience(user.audience, user.user_id)
                message = self._new_message(session_id, sender, text, kind, now)
                message, session = await self.store.append_message(message)

            await self._attach_senders([message])

        logger.info(f"💬 Message {message.id} sent in session {session_id} by {message.sender_type.value}")

        await self._emit_session(session_id, "new_message", {
            "chat_session_id": session_id,
            "message": message.model_dump(mode="json"),
        })
        if self.dispatcher is not None:
            self._spawn(self.dispatcher.notify_new_message(session, message))

        return message

    async def mark_read(self, session_id: str, user: User, origin=None) -> ChatSession:
        """
        Mark every message not authored by the caller's audience as read.

        Recomputes from the message log under the session lock, so a send that
        lands concurrently is either counted as read or left unread, never lost.
        """
        audience = user.audience
        if audience is None:
            raise UnauthorizedError("Only chat participants have read state")

        with _service_boundary("mark messages read"):
            async with self.locks.hold(session_id):
                session = await self._require_session(session_id)
                self._authorize(session, user)
                session = await self.store.mark_read(session_id, audience)

        await self._emit_session(session_id, "messages_read", {
            "chat_session_id": session_id,
            "reader_id": user.user_id,
            "reader_type": audience.value,
        }, exclude=origin)
        return session

    # ============ Queries ============

    async def get_session(self, session_id: str, user: User) -> ChatSession:
        with _service_boundary("fetch chat session"):
            session = await self._require_session(session_id)
        self._authorize(session, user)
        return session

    async def get_session_for_job(self, print_job_id: str, user: User) -> ChatSession:
        with _service_boundary("fetch chat session for print job"):
            session = await self.store.get_session_by_job(print_job_id)
        if session is None:
            raise NotFoundError(f"No chat session for print job {print_job_id}")
        self._authorize(session, user)
        return session

    async def get_history(
        self,
        session_id: str,
        user: User,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> MessageHistoryResponse:
        """
        Page through a session's messages, oldest first.

        Page 1 starts with the first message ever sent. Concatenating every
        page reproduces the full log in order.
        """
        limit = self.default_page_size if limit is None else limit
        if page < 1:
            raise InvalidInputError("page must be >= 1")
        if limit < 1 or limit > self.max_page_size:
            raise InvalidInputError(f"limit must be between 1 and {self.max_page_size}")

        with _service_boundary("fetch message history"):
            session = await self._require_session(session_id)
            self._authorize(session, user)

            total = await self.store.count_messages(session_id)
            messages = await self.store.list_messages(session_id, (page - 1) * limit, limit)
            await self._attach_senders(messages)

        return MessageHistoryResponse(
            messages=messages,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=math.ceil(total / limit) if total else 0,
            ),
        )

    async def get_active_sessions_for(self, user_id: str, audience: Audience) -> List[SessionWithLatestMessage]:
        """Open sessions of a participant, most recently active first"""
        with _service_boundary("list active chat sessions"):
            sessions = await self.store.list_active_sessions(audience, user_id, self.clock())

            annotated = []
            for session in sessions:
                latest = await self.store.latest_message(session.id)
                if latest is not None:
                    await self._attach_senders([latest])
                annotated.append(SessionWithLatestMessage(**session.model_dump(), latest_message=latest))

        annotated.sort(key=lambda s: (s.last_message_at, s.created_at, s.id), reverse=True)
        return annotated

    async def get_unread_counts(self, user: User) -> UnreadCountResponse:
        """Unread totals per open session, recomputed from the message log"""
        audience = user.audience
        if audience is None:
            return UnreadCountResponse(total_unread_count=0, chat_unread_counts=[])

        with _service_boundary("count unread messages"):
            sessions = await self.store.list_active_sessions(audience, user.user_id, self.clock())
            counts = []
            for session in sessions:
                unread = await self.store.count_unread(session.id, audience)
                if unread > 0:
                    counts.append(SessionUnreadCount(chat_session_id=session.id, unread_count=unread))

        return UnreadCountResponse(
            total_unread_count=sum(c.unread_count for c in counts),
            chat_unread_counts=counts,
        )

    async def get_statistics(
        self,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None,
    ) -> ChatStatistics:
        """
        Session counts by status for sessions created in [range_start, range_end).

        Active sessions already past their expiry are reported as expired.
        """
        range_end = range_end or self.clock()
        range_start = range_start or range_end - self.statistics_window
        if range_start >= range_end:
            raise InvalidInputError("start_date must be before end_date")

        with _service_boundary("compute chat statistics"):
            sessions = await self.store.list_sessions_created_between(range_start, range_end)

        now = self.clock()
        stats = ChatStatistics(total_sessions=len(sessions), range_start=range_start, range_end=range_end)
        for session in sessions:
            if session.status == SessionStatus.COMPLETED:
                stats.completed_sessions += 1
            elif session.status == SessionStatus.EXPIRED or session.is_expired(now):
                stats.expired_sessions += 1
            else:
                stats.active_sessions += 1

        if sessions:
            stats.avg_messages = round(sum(s.total_messages for s in sessions) / len(sessions), 2)
        return stats

    # ============ Accounts ============

    async def delete_participant_data(self, audience: Audience, user_id: str) -> Tuple[int, int]:
        """Remove an account's chat sessions and messages. Print jobs are kept."""
        with _service_boundary("delete chat data for account"):
            sessions, messages = await self.store.delete_participant_data(audience, user_id)
        logger.info(
            f"🗑️ Deleted chat data for {audience.value} {user_id}: "
            f"sessions={sessions}, messages={messages}"
        )
        return sessions, messages
