"""
Chat Service

Orchestrates sessions, messages, attachments and real-time delivery.
Callers pass an Identity already verified by the identity provider.
"""

import logging
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.chat.files import IncomingFile, validate_files
from app.chat.gateway import MESSAGES_READ, NEW_MESSAGE
from app.chat.hub import ChatHub
from app.chat.registry import ChatSessionRegistry
from app.chat.repository import MessageRepository
from app.core.errors import NotParticipantError
from app.core.security import Identity
from app.models.chat import ChatAttachment, ChatMessage, ChatSession
from app.schemas.chat import MessageResponse

logger = logging.getLogger(__name__)


def serialize_message(message: ChatMessage) -> dict:
    return MessageResponse.model_validate(message).model_dump(mode="json")


class ChatService:
    def __init__(self, session: AsyncSession, hub: ChatHub):
        self.session = session
        self.hub = hub
        self.registry = ChatSessionRegistry(session)
        self.messages = MessageRepository(session, hub.store)

    # Sessions ------------------------------------------------------------
    async def get_or_create_session(self, identity: Identity, other_user_id: str) -> ChatSession:
        return await self.registry.get_or_create(identity.user_id, other_user_id)

    async def list_sessions(self, identity: Identity) -> List[Tuple[ChatSession, int]]:
        """Caller's sessions, most recently active first, with unread counts"""
        chats = await self.registry.list_for_user(identity.user_id)
        return [
            (chat, await self.messages.unread_count(chat.id, identity.user_id))
            for chat in chats
        ]

    async def ensure_participant(self, identity: Identity, session_id: str) -> ChatSession:
        chat = await self.registry.get(session_id)
        if not chat.has_participant(identity.user_id):
            raise NotParticipantError("Access denied to this chat", {"session_id": session_id})
        return chat

    # Messages --------------------------------------------------------------
    async def send(
        self,
        identity: Identity,
        session_id: str,
        content: Optional[str],
        files: Sequence[IncomingFile] = (),
    ) -> ChatMessage:
        """
        Persist a message and broadcast new_message to the session.

        The session lock covers persist + touch + enqueue, so broadcast order
        matches persistence order. Socket sends happen after it is released.
        """
        chat = await self.ensure_participant(identity, session_id)
        files = list(files)
        validate_files(files)

        async with self.hub.locks.hold(session_id):
            message = await self.messages.append(session_id, identity.user_id, content, files)
            try:
                await self.registry.touch(chat, message)
            except SQLAlchemyError:
                # The message is stored; only the session snapshot is stale
                await self.session.rollback()
                logger.exception(f"Failed to update last message of chat {session_id}")
            self.hub.gateway.publish(session_id, NEW_MESSAGE, {"message": serialize_message(message)})

        logger.info(f"User {identity.user_id} sent message {message.id} to chat {session_id}")
        return message

    async def fetch_page(
        self,
        identity: Identity,
        session_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Tuple[List[ChatMessage], bool]:
        """Return a page of history; viewing it marks the caller as reader"""
        await self.ensure_participant(identity, session_id)
        messages, has_more = await self.messages.list_page(session_id, page, page_size)

        unread = [
            message.id for message in messages
            if message.sender_id != identity.user_id and not message.is_read_by(identity.user_id)
        ]
        if unread:
            await self._mark_read(session_id, unread, identity.user_id)
            await self.messages.load_reads(messages)
        return messages, has_more

    async def mark_read(self, identity: Identity, session_id: str, message_ids: Sequence[int]) -> List[int]:
        await self.ensure_participant(identity, session_id)
        return await self._mark_read(session_id, message_ids, identity.user_id)

    async def _mark_read(self, session_id: str, message_ids: Sequence[int], reader_id: str) -> List[int]:
        async with self.hub.locks.hold(session_id):
            updated = await self.messages.mark_read(session_id, message_ids, reader_id)
            if updated:
                self.hub.gateway.publish(
                    session_id,
                    MESSAGES_READ,
                    {"message_ids": updated, "reader_id": reader_id},
                    exclude_user=reader_id,
                )
        return updated

    # Attachments -----------------------------------------------------------
    async def open_attachment(
        self,
        identity: Identity,
        message_id: int,
        file_name: str,
    ) -> Tuple[ChatAttachment, AsyncIterator[bytes]]:
        attachment = await self.messages.get_attachment(message_id, file_name, identity.user_id)
        stream = await self.hub.store.get(attachment.file_name)
        return attachment, stream

    # Typing ----------------------------------------------------------------
    async def start_typing(self, identity: Identity, session_id: str) -> None:
        await self.ensure_participant(identity, session_id)
        self.hub.typing.start_typing(session_id, identity.user_id)

    async def stop_typing(self, identity: Identity, session_id: str) -> None:
        await self.ensure_participant(identity, session_id)
        self.hub.typing.stop_typing(session_id, identity.user_id)
