"""Pydantic models for the chat subsystem"""
from .chat import (
    Audience,
    SessionStatus,
    CompletedBy,
    SenderType,
    MessageType,
    SenderProfile,
    PrintJob,
    ChatSession,
    ChatMessage,
)
from .sender import CustomerSender, AgentSender, SystemSender, Sender
from .user import User, UserRole
from .notification import DeviceToken, PushMessage

__all__ = [
    "Audience",
    "SessionStatus",
    "CompletedBy",
    "SenderType",
    "MessageType",
    "SenderProfile",
    "PrintJob",
    "ChatSession",
    "ChatMessage",
    "CustomerSender",
    "AgentSender",
    "SystemSender",
    "Sender",
    "User",
    "UserRole",
    "DeviceToken",
    "PushMessage",
]
