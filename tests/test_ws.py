"""
WebSocket Tests
"""

import uuid
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.api.v1.ws_chat import handle_client_event
from app.core.security import create_access_token
from app.infra import db as db_module
from app.infra.db import get_session_factory
from app.main import app
from app.schemas.chat import ClientEvent

# Synchronous TestClient: the lifespan runs on the client's own loop, so the
# engine and chat hub live there too.


def make_token(user_id: str) -> str:
    return create_access_token({"sub": user_id, "role": "Employee"})


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def ws_url(user_id: str) -> str:
    return f"/api/v1/chat/ws?token={make_token(user_id)}"


def new_user(name: str) -> str:
    return f"{name}-{uuid.uuid4().hex[:8]}"


def connect_and_join(client: TestClient, user_id: str, session_id: str):
    ws = client.websocket_connect(ws_url(user_id))
    socket = ws.__enter__()
    assert socket.receive_json() == {"event": "connected", "user_id": user_id}
    socket.send_json({"event": "join", "session_id": session_id})
    assert socket.receive_json() == {"event": "joined", "session_id": session_id}
    return ws, socket


def test_invalid_token_rejected():
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/v1/chat/ws?token=garbage") as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 1008


def test_ping_and_bad_frames():
    user = new_user("dana")
    with TestClient(app) as client:
        with client.websocket_connect(ws_url(user)) as websocket:
            assert websocket.receive_json()["event"] == "connected"

            websocket.send_json({"event": "ping"})
            assert websocket.receive_json() == {"event": "pong"}

            websocket.send_json({"event": "dance"})
            assert websocket.receive_json()["code"] == "invalid_frame"

            websocket.send_json({"event": "join"})
            assert websocket.receive_json()["code"] == "validation_error"


def test_outsider_cannot_join():
    alice, bob, eve = new_user("alice"), new_user("bob"), new_user("eve")
    with TestClient(app) as client:
        session_id = client.post(f"/api/v1/chat/sessions/{bob}", headers=auth_headers(alice)).json()["id"]

        with client.websocket_connect(ws_url(eve)) as websocket:
            websocket.receive_json()
            websocket.send_json({"event": "join", "session_id": session_id})
            error = websocket.receive_json()
            assert error["event"] == "error"
            assert error["code"] == "not_participant"


def test_realtime_chat_flow():
    alice, bob = new_user("alice"), new_user("bob")
    with TestClient(app) as client:
        session_id = client.post(f"/api/v1/chat/sessions/{bob}", headers=auth_headers(alice)).json()["id"]

        ws_b_ctx, ws_b = connect_and_join(client, bob, session_id)
        ws_a_ctx, ws_a = connect_and_join(client, alice, session_id)
        try:
            assert ws_b.receive_json() == {"event": "user_online", "user_id": alice}

            response = client.post(
                f"/api/v1/chat/sessions/{session_id}/messages",
                headers=auth_headers(alice),
                data={"content": "hello"},
            )
            assert response.status_code == 201
            message_id = response.json()["message"]["id"]

            event = ws_b.receive_json()
            assert event["event"] == "new_message"
            assert event["session_id"] == session_id
            assert event["message"]["id"] == message_id
            assert event["message"]["content"] == "hello"
            # The sender's own connection gets it too
            assert ws_a.receive_json()["message"]["id"] == message_id

            ws_b.send_json({"event": "mark_read", "session_id": session_id, "message_ids": [message_id]})
            assert ws_b.receive_json() == {"event": "read_ack", "session_id": session_id, "message_ids": [message_id]}
            assert ws_a.receive_json() == {
                "event": "messages_read",
                "session_id": session_id,
                "message_ids": [message_id],
                "reader_id": bob,
            }

            # Typing indicator expires on the server without a stop signal
            ws_a.send_json({"event": "start_typing", "session_id": session_id})
            assert ws_b.receive_json() == {"event": "user_typing", "session_id": session_id, "user_id": alice}
            assert ws_b.receive_json() == {"event": "user_stop_typing", "session_id": session_id, "user_id": alice}
        finally:
            ws_a_ctx.__exit__(None, None, None)
            ws_b_ctx.__exit__(None, None, None)


def test_frames_release_their_session():
    alice, bob = new_user("alice"), new_user("bob")
    opened = []

    async def recording_factory():
        factory = db_module.AsyncSessionLocal

        def open_session():
            session = factory()
            opened.append(session)
            return session

        return open_session

    with TestClient(app) as client:
        session_id = client.post(f"/api/v1/chat/sessions/{bob}", headers=auth_headers(alice)).json()["id"]
        app.dependency_overrides[get_session_factory] = recording_factory
        try:
            ws_ctx, websocket = connect_and_join(client, alice, session_id)
            try:
                websocket.send_json({"event": "ping"})
                assert websocket.receive_json() == {"event": "pong"}

                # One session per frame, none left inside a transaction
                assert len(opened) == 2
                assert not any(session.in_transaction() for session in opened)
            finally:
                ws_ctx.__exit__(None, None, None)
        finally:
            app.dependency_overrides.pop(get_session_factory, None)


@pytest.mark.asyncio
async def test_leave_keeps_typing_while_another_tab_is_in(service, hub, alice, bob):
    chat = await service.get_or_create_session(alice, bob.user_id)
    tab_one = await hub.gateway.connect(alice.user_id, AsyncMock())
    tab_two = await hub.gateway.connect(alice.user_id, AsyncMock())
    for tab in (tab_one, tab_two):
        await handle_client_event(service, tab, alice, ClientEvent(event="join", session_id=chat.id))

    await service.start_typing(alice, chat.id)

    await handle_client_event(service, tab_one, alice, ClientEvent(event="leave", session_id=chat.id))
    assert hub.typing.is_typing(chat.id, alice.user_id)

    await handle_client_event(service, tab_two, alice, ClientEvent(event="leave", session_id=chat.id))
    assert not hub.typing.is_typing(chat.id, alice.user_id)
