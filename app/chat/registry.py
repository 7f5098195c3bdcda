"""
Chat Session Registry

Maps an unordered pair of users to exactly one session.
"""

import logging
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import NotFoundError, ValidationError
from app.core.time import utcnow
from app.models.chat import ChatMessage, ChatSession, normalize_pair

logger = logging.getLogger(__name__)


def make_preview(content: str, attachment_count: int, limit: int) -> str:
    if content:
        return content if len(content) <= limit else content[: limit - 3] + "..."
    if attachment_count:
        return f"[{attachment_count} attachment{'s' if attachment_count > 1 else ''}]"
    return ""


class ChatSessionRegistry:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, session_id: str) -> ChatSession:
        chat = await self.session.get(ChatSession, session_id)
        if chat is None:
            raise NotFoundError("Chat session not found", {"session_id": session_id})
        return chat

    async def find(self, user_a: str, user_b: str) -> Optional[ChatSession]:
        participant_a, participant_b = normalize_pair(user_a, user_b)
        result = await self.session.execute(
            select(ChatSession).where(
                ChatSession.participant_a == participant_a,
                ChatSession.participant_b == participant_b,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_a: str, user_b: str) -> ChatSession:
        """
        Find the session for the pair or create it.

        The unique constraint on the normalized pair decides races: the loser
        of a concurrent insert rolls back and reads the winner's row.
        """
        if user_a == user_b:
            raise ValidationError("Cannot open a chat with yourself")

        existing = await self.find(user_a, user_b)
        if existing is not None:
            return existing

        participant_a, participant_b = normalize_pair(user_a, user_b)
        now = utcnow()
        chat = ChatSession(
            participant_a=participant_a,
            participant_b=participant_b,
            created_at=now,
            updated_at=now,
            last_activity=now,
        )
        self.session.add(chat)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Chat between {participant_a} and {participant_b} created concurrently, reusing it")
            existing = await self.find(user_a, user_b)
            if existing is None:
                raise
            return existing

        logger.info(f"Created chat {chat.id} between {participant_a} and {participant_b}")
        return chat

    async def touch(self, chat: ChatSession, message: ChatMessage) -> ChatSession:
        """Record message as the session's latest activity. Call after it is persisted."""
        chat.last_activity = message.created_at
        chat.last_message_id = message.id
        chat.last_message_preview = make_preview(
            message.content, len(message.attachments), settings.chat_preview_length
        )
        chat.last_message_sender_id = message.sender_id
        chat.last_message_at = message.created_at
        await self.session.commit()
        return chat

    async def list_for_user(self, user_id: str) -> List[ChatSession]:
        stmt = (
            select(ChatSession)
            .where(or_(ChatSession.participant_a == user_id, ChatSession.participant_b == user_id))
            .order_by(ChatSession.last_activity.desc(), ChatSession.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
