"""
Database Package

Provides SQLAlchemy async session management, the chat schema, and the
chat store used to persist conversations.
"""

from .session import async_engine, AsyncSessionLocal, create_tables
from .models import Base, Chat, ChatMessage
from .chat_store import ChatOwnershipError, ChatStore

__all__ = [
    "async_engine",
    "AsyncSessionLocal",
    "create_tables",
    "Base",
    "Chat",
    "ChatMessage",
    "ChatOwnershipError",
    "ChatStore",
]
