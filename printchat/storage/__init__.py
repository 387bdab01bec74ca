"""Persistence for chat sessions, messages and their external collaborators"""
from .base import ChatStore, DuplicateSessionError
from .memory import InMemoryChatStore

__all__ = ["ChatStore", "DuplicateSessionError", "InMemoryChatStore"]
