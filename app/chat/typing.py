"""
Typing indicators

Ephemeral, never persisted. The server arms its own expiry per
(session, user) so a crashed client cannot leave "typing..." stuck on.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple

from app.chat.gateway import USER_STOP_TYPING, USER_TYPING, DeliveryGateway
from app.core.config import settings

logger = logging.getLogger(__name__)

TypingKey = Tuple[str, str]


class TypingBroadcaster:
    def __init__(self, gateway: DeliveryGateway, ttl_seconds: Optional[float] = None):
        self.gateway = gateway
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.chat_typing_ttl_seconds
        # (session_id, user_id) -> expiry timer
        self._timers: Dict[TypingKey, asyncio.TimerHandle] = {}

    def start_typing(self, session_id: str, user_id: str) -> None:
        """Broadcast user_typing and (re)arm the expiry timer"""
        key = (session_id, user_id)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        self.gateway.publish(session_id, USER_TYPING, {"user_id": user_id}, exclude_user=user_id)
        self._timers[key] = asyncio.get_running_loop().call_later(
            self.ttl_seconds, self._expire, session_id, user_id
        )

    def stop_typing(self, session_id: str, user_id: str) -> bool:
        """Broadcast user_stop_typing once; no-op if the user is not typing"""
        timer = self._timers.pop((session_id, user_id), None)
        if timer is None:
            return False
        timer.cancel()
        self.gateway.publish(session_id, USER_STOP_TYPING, {"user_id": user_id}, exclude_user=user_id)
        return True

    def _expire(self, session_id: str, user_id: str) -> None:
        if self._timers.pop((session_id, user_id), None) is None:
            return
        logger.debug(f"Typing expired for user {user_id} in chat {session_id}")
        self.gateway.publish(session_id, USER_STOP_TYPING, {"user_id": user_id}, exclude_user=user_id)

    def is_typing(self, session_id: str, user_id: str) -> bool:
        return (session_id, user_id) in self._timers

    def clear_user(self, user_id: str) -> int:
        """Stop every typing state of a user (disconnect)"""
        keys = [key for key in self._timers if key[1] == user_id]
        for session_id, _ in keys:
            self.stop_typing(session_id, user_id)
        return len(keys)

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
