"""
Chat Models

ChatSession, ChatMessage, ChatAttachment and ChatMessageRead.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.time import utcnow
from app.models.base import Base, TimestampMixin


def normalize_pair(user_a: str, user_b: str) -> tuple[str, str]:
    """Order a participant pair so lookups ignore argument order"""
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class ChatSession(Base, TimestampMixin):
    """1:1 conversation container between two users"""

    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)

    # Stored normalized: participant_a < participant_b
    participant_a: Mapped[str] = mapped_column(String(255), nullable=False)
    participant_b: Mapped[str] = mapped_column(String(255), nullable=False)

    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)

    # Denormalized last message snapshot
    last_message_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_message_preview: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_message_sender_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    messages: Mapped[List["ChatMessage"]] = relationship(back_populates="session", lazy="noload")

    __table_args__ = (
        UniqueConstraint("participant_a", "participant_b", name="uq_chat_sessions_participants"),
        Index("idx_chat_sessions_participant_b", "participant_b"),
        Index("idx_chat_sessions_last_activity", "last_activity"),
    )

    @property
    def participants(self) -> tuple[str, str]:
        return (self.participant_a, self.participant_b)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants


class ChatMessage(Base):
    """Immutable chat message; only read receipts are appended later"""

    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("chat_sessions.id"), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")  # text, file, image
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    session: Mapped["ChatSession"] = relationship(back_populates="messages")
    attachments: Mapped[List["ChatAttachment"]] = relationship(
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="ChatAttachment.position",
    )
    reads: Mapped[List["ChatMessageRead"]] = relationship(
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="ChatMessageRead.read_at",
    )

    __table_args__ = (
        Index("idx_chat_messages_session_created", "session_id", "created_at", "id"),
        Index("idx_chat_messages_sender", "sender_id"),
    )

    def is_read_by(self, user_id: str) -> bool:
        return any(read.user_id == user_id for read in self.reads)


class ChatAttachment(Base):
    __tablename__ = "chat_attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("chat_messages.id", ondelete="CASCADE"), index=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(127), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)

    message: Mapped["ChatMessage"] = relationship(back_populates="attachments")


class ChatMessageRead(Base):
    """Read receipt: user_id viewed message_id at read_at"""

    __tablename__ = "chat_message_reads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    message: Mapped["ChatMessage"] = relationship(back_populates="reads")

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_chat_message_reads_reader"),
        Index("idx_chat_message_reads_user", "user_id"),
    )
