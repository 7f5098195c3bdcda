"""
Delivery Gateway - real-time fan-out of chat events

Features:
- Process-local room registry (session_id -> joined connections)
- Multiple concurrent connections per user
- Race condition protection (asyncio.Lock) on registry changes
- Per-session ordered delivery through one dispatcher task per session
- Optional relay to other instances (see app.chat.relay)
- Presence: user_online on a user's first connection, user_offline on their last

Room membership is never persisted. A client that reconnects joins again and
re-fetches history to pick up anything published while it was away.
"""

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Set, Tuple

from fastapi import WebSocket

from app.core.time import to_utc_iso

logger = logging.getLogger(__name__)

# Outbound event names
NEW_MESSAGE = "new_message"
MESSAGES_READ = "messages_read"
USER_TYPING = "user_typing"
USER_STOP_TYPING = "user_stop_typing"
USER_ONLINE = "user_online"
USER_OFFLINE = "user_offline"

# Queue key for events addressed to every connection rather than one session
EVERYONE = "*"


class EventRelay(Protocol):
    async def publish(self, session_id: str, envelope: dict, exclude_user: Optional[str]) -> None: ...


class ClientConnection:
    """One connected WebSocket and the sessions it has joined"""

    def __init__(self, websocket: WebSocket, user_id: str):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.sessions: Set[str] = set()

    async def send_json(self, message: dict) -> None:
        await self.websocket.send_json(message)

    def __repr__(self) -> str:
        return f"<ClientConnection {self.id[:8]} user={self.user_id} sessions={len(self.sessions)}>"


class DeliveryGateway:
    """
    WebSocket connection manager scoped by chat session rooms.

    publish() only enqueues and returns immediately; sends happen on the
    session's dispatcher task, so a slow or dead socket never blocks a sender.
    """

    def __init__(self, relay: Optional[EventRelay] = None):
        # user_id -> connections
        self.active_connections: Dict[str, List[ClientConnection]] = {}
        # session_id -> joined connections
        self.rooms: Dict[str, Set[ClientConnection]] = {}
        self.relay = relay
        # Lock for registry mutations
        self._lock = asyncio.Lock()
        self._queues: Dict[str, Deque[Tuple[dict, Optional[str]]]] = {}
        self._dispatchers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    # Connection lifecycle ------------------------------------------------
    async def connect(self, user_id: str, websocket: WebSocket) -> ClientConnection:
        """Accept a WebSocket and register it for a user"""
        await websocket.accept()
        connection = ClientConnection(websocket, user_id)

        async with self._lock:
            self.active_connections.setdefault(user_id, []).append(connection)
            total = len(self.active_connections[user_id])
        logger.info(f"User {user_id} connected. Total connections: {total}")

        if total == 1:
            self.broadcast(USER_ONLINE, {"user_id": user_id}, exclude_user=user_id)
        return connection

    async def disconnect(self, connection: ClientConnection) -> List[str]:
        """Drop a connection from every room; returns the sessions it had joined"""
        went_offline = False
        async with self._lock:
            left = list(connection.sessions)
            for session_id in left:
                self._remove_from_room(connection, session_id)
            connection.sessions.clear()

            connections = self.active_connections.get(connection.user_id)
            if connections is not None:
                if connection in connections:
                    connections.remove(connection)
                # Clean up empty lists
                if not connections:
                    del self.active_connections[connection.user_id]
                    went_offline = True
        logger.info(f"User {connection.user_id} disconnected")

        if went_offline:
            self.broadcast(
                USER_OFFLINE,
                {"user_id": connection.user_id, "last_seen": to_utc_iso()},
                exclude_user=connection.user_id,
            )
        return left

    async def join(self, connection: ClientConnection, session_id: str) -> None:
        async with self._lock:
            self.rooms.setdefault(session_id, set()).add(connection)
            connection.sessions.add(session_id)
        logger.info(f"User {connection.user_id} joined chat {session_id}")

    async def leave(self, connection: ClientConnection, session_id: str) -> None:
        async with self._lock:
            self._remove_from_room(connection, session_id)
            connection.sessions.discard(session_id)
        logger.info(f"User {connection.user_id} left chat {session_id}")

    def _remove_from_room(self, connection: ClientConnection, session_id: str) -> None:
        room = self.rooms.get(session_id)
        if room is None:
            return
        room.discard(connection)
        if not room:
            del self.rooms[session_id]

    def members(self, session_id: str) -> Set[str]:
        """User ids with at least one connection joined to the session"""
        return {connection.user_id for connection in self.rooms.get(session_id, ())}

    def is_connected(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    # Publishing ------------------------------------------------------------
    def publish(
        self,
        session_id: str,
        event: str,
        payload: Dict[str, Any],
        exclude_user: Optional[str] = None,
        relay: bool = True,
    ) -> None:
        """
        Queue an event for every connection joined to the session.
        Events of one session are delivered in the order they are published.
        """
        envelope = {"event": event, "session_id": session_id, **payload}
        self._enqueue(session_id, envelope, exclude_user)

        if relay and self.relay is not None:
            task = asyncio.get_running_loop().create_task(
                self.relay.publish(session_id, envelope, exclude_user)
            )
            self._background.add(task)
            task.add_done_callback(self._relay_done)

    def broadcast(self, event: str, payload: Dict[str, Any], exclude_user: Optional[str] = None) -> None:
        """
        Queue an event for every connection of this instance.
        Presence only: it reflects local connections, so it is never relayed.
        """
        self._enqueue(EVERYONE, {"event": event, **payload}, exclude_user)

    def deliver_relayed(self, session_id: str, envelope: dict, exclude_user: Optional[str]) -> None:
        """Entry point for events received from another instance"""
        self._enqueue(session_id, envelope, exclude_user)

    def _enqueue(self, session_id: str, envelope: dict, exclude_user: Optional[str]) -> None:
        queue = self._queues.setdefault(session_id, deque())
        queue.append((envelope, exclude_user))
        if session_id not in self._dispatchers:
            task = asyncio.get_running_loop().create_task(self._dispatch(session_id))
            self._dispatchers[session_id] = task

    async def _dispatch(self, session_id: str) -> None:
        queue = self._queues[session_id]
        try:
            while queue:
                envelope, exclude_user = queue.popleft()
                try:
                    await self.deliver(session_id, envelope, exclude_user)
                except Exception:
                    logger.exception(f"Error delivering {envelope.get('event')} for chat {session_id}")
        finally:
            self._dispatchers.pop(session_id, None)
            if not queue:
                self._queues.pop(session_id, None)

    async def deliver(self, session_id: str, envelope: dict, exclude_user: Optional[str] = None) -> int:
        """
        Send one event to the connections currently joined to the session
        (every connection for EVERYONE).
        Returns the number of connections that received it.
        """
        async with self._lock:
            # Snapshot so joins/leaves during the send do not affect iteration
            if session_id == EVERYONE:
                targets = [c for user_connections in self.active_connections.values() for c in user_connections]
            else:
                targets = self.rooms.get(session_id, ())
            connections = [connection for connection in targets if connection.user_id != exclude_user]

        if not connections:
            return 0

        results = await asyncio.gather(
            *(self._safe_send(connection, envelope) for connection in connections),
            return_exceptions=True,
        )
        return sum(1 for result in results if result is True)

    async def _safe_send(self, connection: ClientConnection, message: dict) -> bool:
        """Send message; a dropped socket simply misses the event"""
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Dropped {message.get('event')} for {connection!r}: {e}")
            return False

    def _relay_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Relay publish failed: {task.exception()}")

    async def flush(self) -> None:
        """Wait until every queued event has been delivered"""
        while self._dispatchers or self._background:
            await asyncio.gather(
                *list(self._dispatchers.values()),
                *list(self._background),
                return_exceptions=True,
            )

    async def close(self) -> None:
        for task in [*self._dispatchers.values(), *self._background]:
            task.cancel()
        await asyncio.gather(*self._dispatchers.values(), *self._background, return_exceptions=True)
        self._dispatchers.clear()
        self._background.clear()
        self._queues.clear()
