from app.models.base import Base
from app.models.chat import ChatAttachment, ChatMessage, ChatMessageRead, ChatSession

__all__ = [
    "Base",
    "ChatSession",
    "ChatMessage",
    "ChatAttachment",
    "ChatMessageRead",
]
