"""
Chat WebSocket endpoint

Protocol (JSON text frames):
- client -> server: {"event": "join" | "leave" | "start_typing" | "stop_typing", "session_id": ...}
                    {"event": "mark_read", "session_id": ..., "message_ids": [...]}
                    {"event": "ping"}
- server -> client: connected, joined, left, read_ack, pong, error and the
                    broadcast events new_message, messages_read, user_typing,
                    user_stop_typing, user_online, user_offline
"""

import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.chat.gateway import ClientConnection
from app.chat.hub import ChatHub, get_chat_hub
from app.chat.service import ChatService
from app.core import security
from app.core.config import settings
from app.core.errors import AppError, ValidationError
from app.infra.db import get_session_factory
from app.schemas.chat import ClientEvent

logger = logging.getLogger(__name__)

router = APIRouter()


async def handle_client_event(
    service: ChatService,
    connection: ClientConnection,
    identity: security.Identity,
    frame: ClientEvent,
) -> None:
    """Apply one inbound frame; replies go to this connection only"""
    if frame.event == "ping":
        await connection.send_json({"event": "pong"})
        return

    session_id = frame.session_id
    if not session_id:
        raise ValidationError("session_id is required")

    gateway = service.hub.gateway

    if frame.event == "join":
        await service.ensure_participant(identity, session_id)
        await gateway.join(connection, session_id)
        await connection.send_json({"event": "joined", "session_id": session_id})
    elif frame.event == "leave":
        await gateway.leave(connection, session_id)
        # Another tab of the same user may still be in the chat
        if identity.user_id not in gateway.members(session_id):
            service.hub.typing.stop_typing(session_id, identity.user_id)
        await connection.send_json({"event": "left", "session_id": session_id})
    elif frame.event == "start_typing":
        await service.start_typing(identity, session_id)
    elif frame.event == "stop_typing":
        await service.stop_typing(identity, session_id)
    elif frame.event == "mark_read":
        updated = await service.mark_read(identity, session_id, frame.message_ids)
        await connection.send_json({"event": "read_ack", "session_id": session_id, "message_ids": updated})


@router.websocket("/ws")
async def chat_websocket(
    websocket: WebSocket,
    token: str = Query(...),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    hub: ChatHub = Depends(get_chat_hub),
):
    """
    WebSocket endpoint for real-time chat
    """
    if not settings.enable_websocket:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="WebSocket disabled")
        return

    # Authenticate
    identity = security.verify_token(token)
    if identity is None:
        logger.warning("Invalid token in WebSocket connection")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return

    connection = await hub.gateway.connect(identity.user_id, websocket)

    try:
        await connection.send_json({"event": "connected", "user_id": identity.user_id})

        while True:
            data = await websocket.receive_text()

            try:
                frame = ClientEvent.model_validate_json(data)
                # One short session per frame; nothing stays open between frames
                async with session_factory() as db:
                    await handle_client_event(ChatService(db, hub), connection, identity, frame)
            except PydanticValidationError:
                await connection.send_json({"event": "error", "code": "invalid_frame", "message": "Invalid event"})
            except AppError as e:
                await connection.send_json({"event": "error", "code": e.code, "message": e.message})
            except WebSocketDisconnect:
                raise
            except Exception:
                logger.exception(f"Error processing chat event from user {identity.user_id}")
                await connection.send_json({"event": "error", "code": "internal_error", "message": "Internal error"})

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        await hub.gateway.disconnect(connection)
        if not hub.gateway.is_connected(identity.user_id):
            hub.typing.clear_user(identity.user_id)
