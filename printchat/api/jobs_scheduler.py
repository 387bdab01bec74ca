"""
Internal job endpoints.

Called by the payment handler, the print-job workflow, the account service
and cron. Protected by a shared secret header rather than user tokens.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Security
from fastapi.security.api_key import APIKeyHeader

from printchat.api.deps import get_chat_service
from printchat.api.errors import internal_error, to_http_exception
from printchat.config import settings
from printchat.models.chat import Audience, ChatSession, JobCompletedEvent, PaymentCompletedEvent
from printchat.models.user import UserRole
from printchat.services.chat_service import ChatService
from printchat.services.exceptions import ChatError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs/chat", tags=["Jobs"])

webhook_api_key_header = APIKeyHeader(name="X-Webhook-Secret", auto_error=True)


def verify_internal_secret(api_key: str = Security(webhook_api_key_header)):
    if not settings.JOBS_SECRET_KEY or api_key != settings.JOBS_SECRET_KEY:
        logger.warning("Unauthorized attempt to hit internal job endpoint.")
        raise HTTPException(status_code=403, detail="Forbidden: Invalid Secret")
    return api_key


@router.post("/payment-completed", response_model=ChatSession)
async def payment_completed(
    event: PaymentCompletedEvent,
    api_key: str = Depends(verify_internal_secret),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Open the chat for a paid print job. Safe to retry."""
    try:
        return await chat_service.create_session_on_payment(
            event.print_job_id, event.customer_id, event.agent_id
        )

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error creating chat for print job {event.print_job_id}: {e}")
        raise internal_error("Failed to create chat session")


@router.post("/job-completed")
async def job_completed(
    event: JobCompletedEvent,
    api_key: str = Depends(verify_internal_secret),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Close the chat of a print job that was marked done elsewhere"""
    try:
        session = await chat_service.complete_on_job_finish(event.print_job_id, event.completed_by)
        return {
            "status": "success",
            "chat_session": session.model_dump(mode="json") if session else None,
        }

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error completing chat for print job {event.print_job_id}: {e}")
        raise internal_error("Failed to complete chat session")


@router.post("/expire-sessions")
async def expire_sessions(
    api_key: str = Depends(verify_internal_secret),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Cron job endpoint to close chats older than their 24h window."""
    logger.info("Expire chat sessions job started")
    try:
        expired = await chat_service.sweep_expired()
        return {
            "status": "success",
            "expired_count": len(expired),
            "expired_session_ids": [s.id for s in expired],
        }

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error expiring chat sessions: {e}")
        raise internal_error("Failed to expire chat sessions")


@router.delete("/accounts/{role}/{user_id}")
async def delete_account_chats(
    role: UserRole,
    user_id: str,
    api_key: str = Depends(verify_internal_secret),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Remove the chats and messages of a deleted customer or print agent account"""
    if role == UserRole.ADMIN:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_input", "message": "Admin accounts have no chats"},
        )

    audience = Audience.CUSTOMER if role == UserRole.CUSTOMER else Audience.AGENT
    try:
        sessions, messages = await chat_service.delete_participant_data(audience, user_id)
        return {
            "status": "success",
            "deleted_sessions": sessions,
            "deleted_messages": messages,
        }

    except HTTPException:
        raise
    except ChatError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error deleting chats for {role.value} {user_id}: {e}")
        raise internal_error("Failed to delete chat data")
