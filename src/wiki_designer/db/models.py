"""
SQLAlchemy Models

Defines the database schema for persisted conversations:
- Chats (one row per conversation)
- Chat messages (ordered, with their UI parts stored as JSON)
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    String,
    Integer,
    Text,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere
PartsJSON = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------
# Chat Model
# ---------------------------------------------------------------------

class Chat(Base):
    """
    A conversation owned by a user.
    """
    __tablename__ = "chat"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    messages: Mapped[List["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="chat",
        cascade="all, delete-orphan",
        order_by="ChatMessage.position",
    )

    __table_args__ = (
        Index("idx_chat_user", "user_id"),
    )


# ---------------------------------------------------------------------
# Chat Message Model
# ---------------------------------------------------------------------

class ChatMessage(Base):
    """
    A single message within a chat, in conversation order.
    """
    __tablename__ = "chat_message"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    chat_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("chat.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)  # user | assistant | system
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    parts: Mapped[list] = mapped_column(PartsJSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )

    chat: Mapped["Chat"] = relationship("Chat", back_populates="messages")

    __table_args__ = (
        Index("idx_message_chat", "chat_id", "position"),
    )
