"""
Chat API Endpoints

REST access to print-job chats. Mirrors what the WebSocket gateway offers so
clients without a live connection can still read and send messages.
"""
from datetime import datetime, timezone
from fastapi import APIRouter, HTTPException, Query, Depends
from typing import Optional
import logging

from printchat.api.deps import get_chat_service
from printchat.api.errors import internal_error, to_http_exception
from printchat.auth.dependencies import get_current_user, require_roles
from printchat.models.chat import (
    ActiveSessionListResponse, ChatMessage, ChatSession, ChatStatistics, CompletedBy,
    MessageHistoryResponse, SendMessageRequest, UnreadCountResponse
)
from printchat.models.user import User, UserRole
from printchat.services.chat_service import ChatService
from printchat.services.exceptions import ChatError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

participant = require_roles(UserRole.CUSTOMER, UserRole.PRINT_AGENT)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("/health")
async def chat_health(chat_service: ChatService = Depends(get_chat_service)):
    """Chat subsystem health"""
    return {
        "status": "healthy",
        "service": "chat",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ============ Sessions ============

@router.get("/sessions", response_model=ActiveSessionListResponse)
async def list_active_sessions(
    current_user: User = Depends(participant),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Active chats of the authenticated customer or print agent.

    Each chat carries its latest message; most recently active chats come first.
    """
    try:
        chats = await chat_service.get_active_sessions_for(current_user.user_id, current_user.audience)
        return ActiveSessionListResponse(chats=chats, count=len(chats))

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error listing chat sessions: {e}")
        raise internal_error("Failed to list chat sessions")


@router.get("/sessions/{session_id}", response_model=ChatSession)
async def get_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    try:
        return await chat_service.get_session(session_id, current_user)

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error fetching chat session {session_id}: {e}")
        raise internal_error("Failed to fetch chat session")


@router.get("/jobs/{print_job_id}/session", response_model=ChatSession)
async def get_session_for_job(
    print_job_id: str,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Chat session belonging to a print job"""
    try:
        return await chat_service.get_session_for_job(print_job_id, current_user)

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error fetching chat for print job {print_job_id}: {e}")
        raise internal_error("Failed to fetch chat session")


@router.post("/sessions/{session_id}/complete", response_model=ChatSession)
async def complete_session(
    session_id: str,
    current_user: User = Depends(require_roles(UserRole.PRINT_AGENT, UserRole.ADMIN)),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Close a chat.

    Print agents close their own chats; admins close any chat as the system.
    A chat that is already completed or expired answers 409.
    """
    completed_by = CompletedBy.SYSTEM if current_user.is_admin else CompletedBy.AGENT
    try:
        session = await chat_service.complete_session(session_id, completed_by, user=current_user)
        logger.info(f"User {current_user.user_id} completed chat session {session_id}")
        return session

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error completing chat session {session_id}: {e}")
        raise internal_error("Failed to complete chat session")


# ============ Messages ============

@router.get("/sessions/{session_id}/messages", response_model=MessageHistoryResponse)
async def get_messages(
    session_id: str,
    page: int = Query(1, description="Page number, page 1 holds the oldest messages"),
    limit: Optional[int] = Query(None, description="Messages per page"),
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Message history in chronological order.

    Reading the history marks the caller's unread messages in this chat as read.
    """
    try:
        history = await chat_service.get_history(session_id, current_user, page=page, limit=limit)
        if not current_user.is_admin:
            await chat_service.mark_read(session_id, current_user)
        return history

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error fetching messages for {session_id}: {e}")
        raise internal_error("Failed to fetch messages")


@router.post("/sessions/{session_id}/messages", response_model=ChatMessage, status_code=201)
async def send_message(
    session_id: str,
    request: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Send a message without a live connection.

    Connected participants receive it over the socket like any other message.

    Example:
        ```json
        {
            "message_text": "Could you print the cover page in color?",
            "message_type": "text"
        }
        ```
    """
    try:
        return await chat_service.send_message(
            session_id, current_user, request.message_text, request.message_type
        )

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error sending message to {session_id}: {e}")
        raise internal_error("Failed to send message")


@router.post("/sessions/{session_id}/read", response_model=ChatSession)
async def mark_messages_read(
    session_id: str,
    current_user: User = Depends(participant),
    chat_service: ChatService = Depends(get_chat_service),
):
    try:
        return await chat_service.mark_read(session_id, current_user)

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error marking {session_id} read: {e}")
        raise internal_error("Failed to mark messages as read")


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    current_user: User = Depends(participant),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Unread messages across the caller's active chats"""
    try:
        return await chat_service.get_unread_counts(current_user)

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error counting unread messages: {e}")
        raise internal_error("Failed to count unread messages")


# ============ Admin ============

@router.get("/admin/statistics", response_model=ChatStatistics)
async def get_statistics(
    start_date: Optional[datetime] = Query(None, description="Inclusive range start, defaults to 30 days ago"),
    end_date: Optional[datetime] = Query(None, description="Exclusive range end, defaults to now"),
    current_user: User = Depends(require_roles(UserRole.ADMIN)),
    chat_service: ChatService = Depends(get_chat_service),
):
    try:
        return await chat_service.get_statistics(_as_utc(start_date), _as_utc(end_date))

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error computing chat statistics: {e}")
        raise internal_error("Failed to compute chat statistics")
