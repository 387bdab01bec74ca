"""
Chat Store Interface

The store is the single source of truth for sessions and messages. Operations
that must be applied as one unit of work (message insert plus counter
recomputation, session creation with its first message, completion and
bulk expiry with their notices, read marking) are single methods here so each
backend can make them atomic in its own way.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from printchat.models.chat import (
    Audience, ChatMessage, ChatSession, CompletedBy, PrintJob, SenderProfile
)
from printchat.models.notification import DeviceToken


class DuplicateSessionError(Exception):
    """A session already exists for the print job"""

    def __init__(self, print_job_id: str):
        super().__init__(f"Chat session already exists for print job {print_job_id}")
        self.print_job_id = print_job_id


class ChatStore(ABC):

    # ============ Sessions ============

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        ...

    @abstractmethod
    async def get_session_by_job(self, print_job_id: str) -> Optional[ChatSession]:
        ...

    @abstractmethod
    async def insert_session_with_message(
        self, session: ChatSession, message: ChatMessage
    ) -> Tuple[ChatMessage, ChatSession]:
        """
        Persist a new session together with its first message.

        Both rows and the recomputed counters commit as one unit of work: if
        anything fails, neither the session nor the message exists afterwards.
        Raises DuplicateSessionError if the job already has a session.
        """

    @abstractmethod
    async def complete_session(
        self,
        session_id: str,
        completed_by: CompletedBy,
        completed_at: datetime,
        notice: ChatMessage,
    ) -> Optional[Tuple[ChatMessage, ChatSession]]:
        """
        Move an active session to completed and append its completion notice.

        Compare-and-set on status: returns None, changing nothing, unless the
        session exists and is still active. The status change and the notice
        commit together.
        """

    @abstractmethod
    async def expire_sessions(
        self, now: datetime, notice_text: str
    ) -> List[Tuple[ChatMessage, ChatSession]]:
        """
        Move every active session with expires_at strictly before ``now`` to expired.

        Each expired session gets a system notice carrying ``notice_text``,
        written in the same unit of work as the status change.
        """

    @abstractmethod
    async def list_active_sessions(
        self, audience: Audience, user_id: str, now: datetime
    ) -> List[ChatSession]:
        """Active, unexpired sessions where the user is the given participant."""

    @abstractmethod
    async def list_sessions_created_between(
        self, start: datetime, end: datetime
    ) -> List[ChatSession]:
        """Sessions with start <= created_at < end."""

    # ============ Messages ============

    @abstractmethod
    async def append_message(self, message: ChatMessage) -> Tuple[ChatMessage, ChatSession]:
        """
        Persist a message and recompute the owning session's counters.

        total_messages, unread_by_customer, unread_by_agent and last_message_at
        are recomputed from the message rows in the same unit of work.
        Raises NotFoundError if the session does not exist.
        """

    @abstractmethod
    async def mark_read(self, session_id: str, audience: Audience) -> ChatSession:
        """Flag every message not authored by ``audience`` as read by it, then recompute counters."""

    @abstractmethod
    async def list_messages(
        self, session_id: str, offset: int, limit: int
    ) -> List[ChatMessage]:
        """Messages in ascending chronological order."""

    @abstractmethod
    async def count_messages(self, session_id: str) -> int:
        ...

    @abstractmethod
    async def count_unread(self, session_id: str, audience: Audience) -> int:
        ...

    @abstractmethod
    async def latest_message(self, session_id: str) -> Optional[ChatMessage]:
        ...

    # ============ Accounts ============

    @abstractmethod
    async def delete_participant_data(self, audience: Audience, user_id: str) -> Tuple[int, int]:
        """Remove every session (and its messages) the account participates in. Returns (sessions, messages)."""

    # ============ Directory ============

    @abstractmethod
    async def get_print_job(self, print_job_id: str) -> Optional[PrintJob]:
        ...

    @abstractmethod
    async def get_user_profile(self, user_id: str, audience: Audience) -> Optional[SenderProfile]:
        """Display attributes for a customer or print agent; None if the account is gone."""

    # ============ Device tokens ============

    @abstractmethod
    async def list_device_tokens(self, user_id: str, audience: Audience) -> List[DeviceToken]:
        """Active tokens only."""

    @abstractmethod
    async def register_device_token(
        self, user_id: str, audience: Audience, device_token: str, platform: str
    ) -> DeviceToken:
        ...

    @abstractmethod
    async def unregister_device_token(self, user_id: str, device_token: str) -> Optional[DeviceToken]:
        ...

    @abstractmethod
    async def deactivate_device_tokens(self, token_ids: Sequence[str]) -> int:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None
