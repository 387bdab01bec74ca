"""
Request-scoped access to the chat runtime built in the application lifespan.
"""
from fastapi import Request

from printchat.services.chat_service import ChatService
from printchat.services.runtime import ChatRuntime


def get_runtime(request: Request) -> ChatRuntime:
    return request.app.state.chat


def get_chat_service(request: Request) -> ChatService:
    return get_runtime(request).chat_service
