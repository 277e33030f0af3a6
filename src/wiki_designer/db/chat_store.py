"""
Chat Store

Persistence for conversations. Each operation opens its own session from the
factory, so the store is safe to call from streaming responses that outlive
the request scope.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..api.models import UIMessage, ChatResponse
from .models import Chat, ChatMessage
from .session import AsyncSessionLocal

logger = logging.getLogger("designer.db.chats")


class ChatOwnershipError(Exception):
    """Raised when a write targets a chat owned by another user."""

    def __init__(self, chat_id: str, user_id: str) -> None:
        super().__init__(f"Chat {chat_id} does not belong to user {user_id}")
        self.chat_id = chat_id
        self.user_id = user_id


def _message_row(chat_id: str, position: int, message: UIMessage) -> ChatMessage:
    return ChatMessage(
        id=message.id or uuid.uuid4().hex,
        chat_id=chat_id,
        position=position,
        role=message.role,
        content=message.content or "",
        parts=[p.model_dump(mode="json") for p in message.parts],
    )


async def _owned_chat(session: AsyncSession, chat_id: str, user_id: str) -> Optional[Chat]:
    chat = await session.get(Chat, chat_id)
    if chat is not None and chat.user_id != user_id:
        logger.warning("Refusing write to chat %s from user %s", chat_id, user_id)
        raise ChatOwnershipError(chat_id, user_id)
    return chat


def _to_ui_message(row: ChatMessage) -> UIMessage:
    return UIMessage(
        id=row.id,
        role=row.role,
        content=row.content,
        parts=row.parts or [],
        createdAt=row.created_at,
    )


class ChatStore:
    """
    Stores chats and their ordered messages.

    Parameters
    ----------
    session_factory : Callable[[], AsyncSession]
        Factory yielding an async session usable as a context manager.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    async def save_chat(
        self,
        chat_id: str,
        user_id: str,
        title: Optional[str] = None,
        messages: Optional[List[UIMessage]] = None,
    ) -> None:
        """
        Create the chat if it does not exist yet; optionally set its title
        and replace its messages.

        Raises
        ------
        ChatOwnershipError
            If the chat exists and belongs to another user.
        """
        async with self._session_factory() as session:
            chat = await _owned_chat(session, chat_id, user_id)
            if chat is None:
                chat = Chat(id=chat_id, user_id=user_id, title=title)
                session.add(chat)
            elif title:
                chat.title = title
            await session.flush()

            if messages is not None:
                await self._replace_messages(session, chat_id, messages)
            await session.commit()

    async def save_messages(
        self,
        chat_id: str,
        messages: List[UIMessage],
        user_id: Optional[str] = None,
    ) -> None:
        """
        Replace the stored messages of a chat with `messages`, in order.

        When `user_id` is given the chat must belong to that user, otherwise
        `ChatOwnershipError` is raised and nothing is written.
        """
        async with self._session_factory() as session:
            if user_id is not None:
                await _owned_chat(session, chat_id, user_id)
            await self._replace_messages(session, chat_id, messages)
            await session.commit()
        logger.debug("Saved %d messages for chat %s", len(messages), chat_id)

    async def get_chat(self, chat_id: str, user_id: str) -> Optional[ChatResponse]:
        """
        Load a chat with its messages. Returns None when the chat does not
        exist or belongs to another user.
        """
        async with self._session_factory() as session:
            stmt = (
                select(Chat)
                .where(Chat.id == chat_id, Chat.user_id == user_id)
                .options(selectinload(Chat.messages))
            )
            chat = (await session.execute(stmt)).scalar_one_or_none()
            if chat is None:
                return None
            return ChatResponse(
                id=chat.id,
                userId=chat.user_id,
                title=chat.title,
                messages=[_to_ui_message(m) for m in chat.messages],
            )

    async def _replace_messages(
        self,
        session: AsyncSession,
        chat_id: str,
        messages: List[UIMessage],
    ) -> None:
        await session.execute(delete(ChatMessage).where(ChatMessage.chat_id == chat_id))
        session.add_all(
            _message_row(chat_id, position, message)
            for position, message in enumerate(messages)
        )
