"""
Chat REST endpoints
"""

from typing import Annotated, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, File, Form, Query, UploadFile, status
from fastapi.responses import StreamingResponse

from app.chat.files import IncomingFile
from app.core.config import settings
from app.core.deps import ChatServiceDep, CurrentIdentityDep
from app.schemas.chat import (
    ChatSessionListResponse,
    ChatSessionResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessagePageResponse,
    MessageResponse,
    SendMessageResponse,
)

router = APIRouter()


@router.get("/sessions", response_model=ChatSessionListResponse, summary="List my chats")
async def list_sessions(identity: CurrentIdentityDep, service: ChatServiceDep):
    """Chats of the caller, most recently active first, with unread counts"""
    sessions = await service.list_sessions(identity)
    return ChatSessionListResponse(
        sessions=[ChatSessionResponse.from_session(chat, unread) for chat, unread in sessions]
    )


@router.post(
    "/sessions/{other_user_id}",
    response_model=ChatSessionResponse,
    summary="Get or create a chat with another user",
)
async def get_or_create_session(other_user_id: str, identity: CurrentIdentityDep, service: ChatServiceDep):
    chat = await service.get_or_create_session(identity, other_user_id)
    return ChatSessionResponse.from_session(chat)


@router.get(
    "/sessions/{session_id}/messages",
    response_model=MessagePageResponse,
    summary="Get a page of chat history",
)
async def get_messages(
    session_id: str,
    identity: CurrentIdentityDep,
    service: ChatServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=settings.chat_page_size)] = settings.chat_page_size,
):
    """
    Page 1 holds the most recent messages; higher pages go further back.
    Messages inside a page are oldest first. Returned messages are marked as
    read by the caller.
    """
    messages, has_more = await service.fetch_page(identity, session_id, page, page_size)
    return MessagePageResponse(
        messages=[MessageResponse.model_validate(message) for message in messages],
        has_more=has_more,
        page=page,
        page_size=page_size,
    )


@router.post(
    "/sessions/{session_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
)
async def send_message(
    session_id: str,
    identity: CurrentIdentityDep,
    service: ChatServiceDep,
    content: Annotated[Optional[str], Form()] = None,
    files: Annotated[Optional[List[UploadFile]], File()] = None,
):
    """
    Multipart request with optional text content and up to 5 files.
    The message is broadcast to the chat as soon as it is stored.
    """
    incoming = [IncomingFile.from_upload(upload) for upload in files or []]
    message = await service.send(identity, session_id, content, incoming)
    return SendMessageResponse(message=MessageResponse.model_validate(message))


@router.post(
    "/sessions/{session_id}/read",
    response_model=MarkReadResponse,
    summary="Mark messages as read",
)
async def mark_read(
    session_id: str,
    body: MarkReadRequest,
    identity: CurrentIdentityDep,
    service: ChatServiceDep,
):
    updated = await service.mark_read(identity, session_id, body.message_ids)
    return MarkReadResponse(updated=updated)


@router.get("/attachments/{message_id}/{file_name}", summary="Download or view an attachment")
async def get_attachment(
    message_id: int,
    file_name: str,
    identity: CurrentIdentityDep,
    service: ChatServiceDep,
    inline: bool = False,
):
    attachment, stream = await service.open_attachment(identity, message_id, file_name)
    disposition = "inline" if inline else "attachment"
    return StreamingResponse(
        stream,
        media_type=attachment.mime_type,
        headers={
            "Content-Disposition": f"{disposition}; filename*=utf-8''{quote(attachment.original_name)}",
            "Content-Length": str(attachment.file_size),
        },
    )
