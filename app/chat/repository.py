"""
Message Repository

Append-only store of chat messages keyed by session, with attachments
and read receipts.
"""

import logging
from collections import defaultdict
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from app.chat.files import IncomingFile, message_type_for, validate_files
from app.core.config import settings
from app.core.errors import NotFoundError, StorageFailure, ValidationError
from app.core.time import utcnow
from app.infra.storage import LocalAttachmentStore, StoredBlob
from app.models.chat import ChatAttachment, ChatMessage, ChatMessageRead, ChatSession

logger = logging.getLogger(__name__)


def _unread_by(user_id: str):
    """Filter: message not authored by user_id and not yet read by them"""
    return and_(
        ChatMessage.sender_id != user_id,
        ~exists().where(
            ChatMessageRead.message_id == ChatMessage.id,
            ChatMessageRead.user_id == user_id,
        ),
    )


class MessageRepository:
    def __init__(self, session: AsyncSession, store: LocalAttachmentStore):
        self.session = session
        self.store = store

    async def _require_session(self, session_id: str) -> ChatSession:
        chat = await self.session.get(ChatSession, session_id)
        if chat is None:
            raise NotFoundError("Chat session not found", {"session_id": session_id})
        return chat

    async def append(
        self,
        session_id: str,
        sender_id: str,
        content: Optional[str],
        files: Sequence[IncomingFile] = (),
    ) -> ChatMessage:
        """
        Persist a message with its attachments.

        Blobs are written before the row so a stored message never points at
        a missing file. Any failure leaves no message row behind.
        """
        content = (content or "").strip()
        files = list(files)
        if not content and not files:
            raise ValidationError("Message content or files are required")
        if len(content) > settings.chat_content_max_length:
            raise ValidationError(
                f"Message content cannot exceed {settings.chat_content_max_length} characters"
            )
        validate_files(files)
        await self._require_session(session_id)

        stored: List[Tuple[IncomingFile, StoredBlob]] = []
        try:
            for incoming in files:
                blob = await self.store.put(incoming.open_stream(), incoming.mime_type, incoming.original_name)
                stored.append((incoming, blob))
        except BaseException:
            await self._discard([blob for _, blob in stored])
            raise

        message = ChatMessage(
            session_id=session_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type_for(files),
            is_edited=False,
            created_at=utcnow(),
            attachments=[
                ChatAttachment(
                    position=position,
                    file_name=blob.file_name,
                    original_name=incoming.original_name,
                    mime_type=incoming.mime_type,
                    file_size=blob.file_size,
                )
                for position, (incoming, blob) in enumerate(stored)
            ],
            reads=[],
        )
        self.session.add(message)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.exception(f"Failed to persist message in chat {session_id}")
            await self._discard([blob for _, blob in stored])
            raise StorageFailure(details={"session_id": session_id}) from e

        if stored:
            logger.info(f"Saved message {message.id} with {len(stored)} attachments in chat {session_id}")
        return message

    async def _discard(self, blobs: Iterable[StoredBlob]) -> None:
        for blob in blobs:
            await self.store.delete(blob.file_name)

    async def list_page(
        self,
        session_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Tuple[List[ChatMessage], bool]:
        """
        Backward pagination. Page 1 is the most recent block; each page is
        returned oldest to newest.
        """
        if page_size is None:
            page_size = settings.chat_page_size
        if page < 1:
            raise ValidationError("Page must be a positive integer")
        if not 1 <= page_size <= settings.chat_page_size:
            raise ValidationError(f"Page size must be between 1 and {settings.chat_page_size}")
        await self._require_session(session_id)

        stmt = (
            select(ChatMessage)
            .options(selectinload(ChatMessage.attachments), selectinload(ChatMessage.reads))
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size + 1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        rows = list(result.scalars().all())

        has_more = len(rows) > page_size
        messages = rows[:page_size]
        messages.reverse()
        return messages, has_more

    async def mark_read(self, session_id: str, message_ids: Iterable[int], reader_id: str) -> List[int]:
        """
        Record reader_id as having read the given messages of the session.

        Ids from other sessions, the reader's own messages and already-read
        messages are skipped, so repeating the call is a no-op.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        await self._require_session(session_id)

        for attempt in range(2):
            result = await self.session.execute(
                select(ChatMessage.id)
                .where(ChatMessage.session_id == session_id, ChatMessage.id.in_(ids), _unread_by(reader_id))
                .order_by(ChatMessage.id)
            )
            updated = list(result.scalars().all())
            if not updated:
                return []

            now = utcnow()
            self.session.add_all(
                [ChatMessageRead(message_id=message_id, user_id=reader_id, read_at=now) for message_id in updated]
            )
            try:
                await self.session.commit()
                return updated
            except IntegrityError:
                # Another request recorded some of these first; recompute
                await self.session.rollback()
                logger.debug(f"Concurrent read receipts for {reader_id} in chat {session_id}, retrying")
            except SQLAlchemyError as e:
                await self.session.rollback()
                logger.exception(f"Failed to mark messages read in chat {session_id}")
                raise StorageFailure("Failed to mark messages as read") from e

        raise StorageFailure("Failed to mark messages as read")

    async def load_reads(self, messages: Sequence[ChatMessage]) -> None:
        """Refresh the read receipts of already loaded messages in one query"""
        if not messages:
            return
        result = await self.session.execute(
            select(ChatMessageRead)
            .where(ChatMessageRead.message_id.in_([m.id for m in messages]))
            .order_by(ChatMessageRead.read_at, ChatMessageRead.id)
        )
        by_message = defaultdict(list)
        for read in result.scalars().all():
            by_message[read.message_id].append(read)
        for message in messages:
            set_committed_value(message, "reads", by_message.get(message.id, []))

    async def unread_count(self, session_id: str, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count(ChatMessage.id)).where(ChatMessage.session_id == session_id, _unread_by(user_id))
        )
        return int(result.scalar_one())

    async def get_attachment(self, message_id: int, file_name: str, user_id: str) -> ChatAttachment:
        """
        Attachment of a message in one of user_id's sessions.
        Unknown ids and other people's chats are reported the same way.
        """
        result = await self.session.execute(
            select(ChatAttachment)
            .join(ChatMessage, ChatAttachment.message_id == ChatMessage.id)
            .join(ChatSession, ChatMessage.session_id == ChatSession.id)
            .where(
                ChatAttachment.message_id == message_id,
                ChatAttachment.file_name == file_name,
                or_(ChatSession.participant_a == user_id, ChatSession.participant_b == user_id),
            )
        )
        attachment = result.scalar_one_or_none()
        if attachment is None:
            raise NotFoundError("Attachment not found", {"message_id": message_id, "file_name": file_name})
        return attachment
