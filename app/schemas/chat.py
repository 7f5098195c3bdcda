"""
Chat Schemas
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from app.models.chat import ChatSession


# Attachments / receipts ----------------------------------------------
class AttachmentResponse(BaseModel):
    file_name: str
    original_name: str
    mime_type: str
    file_size: int

    class Config:
        from_attributes = True


class ReadReceiptResponse(BaseModel):
    user_id: str
    read_at: datetime

    class Config:
        from_attributes = True


# Message ------------------------------------------------------------
class MessageResponse(BaseModel):
    id: int
    session_id: str
    sender_id: str
    content: str
    message_type: str
    is_edited: bool = False
    created_at: datetime
    attachments: List[AttachmentResponse] = []
    read_by: List[ReadReceiptResponse] = Field(default=[], validation_alias="reads")

    class Config:
        from_attributes = True
        populate_by_name = True


class SendMessageResponse(BaseModel):
    message: MessageResponse


class MessagePageResponse(BaseModel):
    messages: List[MessageResponse]
    has_more: bool
    page: int
    page_size: int


class MarkReadRequest(BaseModel):
    message_ids: List[int] = Field(default=[], max_length=500)


class MarkReadResponse(BaseModel):
    updated: List[int]


# Session ------------------------------------------------------------
class LastMessageResponse(BaseModel):
    id: int
    content: str
    sender_id: str
    created_at: datetime


class ChatSessionResponse(BaseModel):
    id: str
    participants: List[str]
    created_at: datetime
    last_activity: datetime
    last_message: Optional[LastMessageResponse] = None
    unread_count: Optional[int] = None

    @classmethod
    def from_session(cls, session: ChatSession, unread_count: Optional[int] = None) -> "ChatSessionResponse":
        last_message = None
        if session.last_message_id is not None:
            last_message = LastMessageResponse(
                id=session.last_message_id,
                content=session.last_message_preview or "",
                sender_id=session.last_message_sender_id,
                created_at=session.last_message_at,
            )
        return cls(
            id=session.id,
            participants=list(session.participants),
            created_at=session.created_at,
            last_activity=session.last_activity,
            last_message=last_message,
            unread_count=unread_count,
        )


class ChatSessionListResponse(BaseModel):
    sessions: List[ChatSessionResponse]


# WebSocket ----------------------------------------------------------
class ClientEvent(BaseModel):
    """Inbound frame from a connected client"""

    event: Literal["join", "leave", "start_typing", "stop_typing", "mark_read", "ping"]
    session_id: Optional[str] = None
    message_ids: List[int] = Field(default=[], max_length=500)
