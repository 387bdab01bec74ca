"""
Chat Models

Pydantic models for chat sessions, messages and the REST envelopes built on them.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


# ==========================================
# ENUMS
# ==========================================

class Audience(str, Enum):
    """Side of a session whose read state is tracked"""
    CUSTOMER = "customer"
    AGENT = "agent"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class CompletedBy(str, Enum):
    AGENT = "agent"
    AUTO_TIMEOUT = "auto_24h"
    SYSTEM = "system"


class SenderType(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"


class MessageType(str, Enum):
    TEXT = "text"
    SYSTEM = "system"
    AUTO = "auto"
    ORDER_UPDATE = "order_update"
    FILE = "file"


# ==========================================
# EXTERNAL RECORDS
# ==========================================

class SenderProfile(BaseModel):
    """Display attributes of a message sender"""
    id: Optional[str] = None
    type: SenderType
    full_name: Optional[str] = None
    email: Optional[str] = None
    business_name: Optional[str] = None


class PrintJob(BaseModel):
    """The commercial transaction a chat session is bound to"""
    id: str
    customer_id: Optional[str] = None
    print_agent_id: Optional[str] = None
    print_job_title: Optional[str] = None
    pages: int = 0
    is_color: bool = False
    no_of_copies: int = 1

    class Config:
        from_attributes = True


# ==========================================
# SESSION / MESSAGE
# ==========================================

class ChatSession(BaseModel):
    """One chat per print job, scoped to its customer and print agent"""
    id: str = Field(..., description="Session UUID")
    print_job_id: str = Field(..., frozen=True, description="Print job this chat belongs to")
    customer_id: str = Field(..., frozen=True, description="Customer participant")
    agent_id: str = Field(..., frozen=True, description="Print agent participant")
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    completed_by: Optional[CompletedBy] = None
    last_message_at: datetime
    total_messages: int = 0
    unread_by_customer: int = 0
    unread_by_agent: int = 0

    class Config:
        from_attributes = True
        json_schema_extra = {
            "example": {
                "id": "b7d1c1a4-3f0e-4c4e-9a55-0d7d3f6b2a11",
                "print_job_id": "65f0c2a9e4b0a1b2c3d4e5f6",
                "customer_id": "customer-uuid",
                "agent_id": "agent-uuid",
                "status": "active",
                "created_at": "2025-10-10T10:00:00Z",
                "expires_at": "2025-10-11T10:00:00Z",
                "completed_at": None,
                "completed_by": None,
                "last_message_at": "2025-10-10T10:05:00Z",
                "total_messages": 2,
                "unread_by_customer": 0,
                "unread_by_agent": 2
            }
        }

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_open(self, now: datetime) -> bool:
        """Active and not past its expiry instant"""
        return self.status == SessionStatus.ACTIVE and not self.is_expired(now)

    def participant_id(self, audience: Audience) -> str:
        return self.customer_id if audience == Audience.CUSTOMER else self.agent_id

    def is_participant(self, user_id: str, audience: Optional[Audience]) -> bool:
        if audience is None:
            return False
        return self.participant_id(audience) == user_id


class ChatMessage(BaseModel):
    """A single entry of a session's message log"""
    id: str = Field(..., description="Message UUID")
    chat_session_id: str = Field(..., frozen=True)
    sender_id: Optional[str] = Field(None, description="Null for system messages without an author")
    sender_type: SenderType
    message_text: str
    message_type: MessageType = MessageType.TEXT
    timestamp: datetime
    read_by_customer: bool = False
    read_by_agent: bool = False
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    file_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sender: Optional[SenderProfile] = None

    class Config:
        from_attributes = True

    def is_read_by(self, audience: Audience) -> bool:
        return self.read_by_customer if audience == Audience.CUSTOMER else self.read_by_agent

    def is_unread_for(self, audience: Audience) -> bool:
        """Unread for an audience, never counting that audience's own messages"""
        if self.sender_type.value == audience.value:
            return False
        return not self.is_read_by(audience)


# ==========================================
# REQUEST MODELS
# ==========================================

class SendMessageRequest(BaseModel):
    """Schema for sending a message over REST"""
    message_text: str = Field(..., description="Message body, trimmed server-side")
    message_type: MessageType = Field(MessageType.TEXT, description="Message kind")

    class Config:
        json_schema_extra = {
            "example": {
                "message_text": "Could you print the cover page in color?",
                "message_type": "text"
            }
        }


class PaymentCompletedEvent(BaseModel):
    """Emitted by the payment handler once a print job is paid"""
    print_job_id: str
    customer_id: str
    agent_id: str


class JobCompletedEvent(BaseModel):
    """Emitted by the job workflow when a print job is marked done"""
    print_job_id: str
    completed_by: CompletedBy = CompletedBy.AGENT


# ==========================================
# RESPONSE MODELS
# ==========================================

class SessionWithLatestMessage(ChatSession):
    latest_message: Optional[ChatMessage] = None


class ActiveSessionListResponse(BaseModel):
    chats: List[SessionWithLatestMessage]
    count: int


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class MessageHistoryResponse(BaseModel):
    """Messages in ascending chronological order with page metadata"""
    messages: List[ChatMessage]
    pagination: Pagination


class SessionUnreadCount(BaseModel):
    chat_session_id: str
    unread_count: int


class UnreadCountResponse(BaseModel):
    total_unread_count: int
    chat_unread_counts: List[SessionUnreadCount]


class ChatStatistics(BaseModel):
    total_sessions: int = 0
    active_sessions: int = 0
    completed_sessions: int = 0
    expired_sessions: int = 0
    avg_messages: float = 0.0
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
