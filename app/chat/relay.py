"""
Cross-instance relay for chat events over Redis pub/sub

Each instance publishes every gateway event tagged with its own id and
re-delivers events from other instances to its local rooms.
"""

import asyncio
import json
import logging
import uuid
from typing import Optional

from redis.asyncio import Redis

from app.chat.gateway import DeliveryGateway
from app.core.config import settings

logger = logging.getLogger(__name__)


class RedisEventRelay:
    def __init__(self, redis: Redis, channel: Optional[str] = None, instance_id: Optional[str] = None):
        self.redis = redis
        self.channel = channel or settings.chat_relay_channel
        self.instance_id = instance_id or uuid.uuid4().hex
        self._listener: Optional[asyncio.Task] = None

    async def publish(self, session_id: str, envelope: dict, exclude_user: Optional[str]) -> None:
        payload = {
            "origin": self.instance_id,
            "session_id": session_id,
            "exclude_user": exclude_user,
            "envelope": envelope,
        }
        await self.redis.publish(self.channel, json.dumps(payload, default=str))

    def handle(self, gateway: DeliveryGateway, raw: str) -> bool:
        """Deliver one relayed frame locally. Returns False if it was ignored."""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid relay frame on {self.channel}")
            return False

        if payload.get("origin") == self.instance_id:
            return False
        session_id = payload.get("session_id")
        envelope = payload.get("envelope")
        if not session_id or not isinstance(envelope, dict):
            logger.warning(f"Malformed relay frame on {self.channel}")
            return False

        gateway.deliver_relayed(session_id, envelope, payload.get("exclude_user"))
        return True

    async def listen(self, gateway: DeliveryGateway) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info(f"Subscribed to chat relay channel {self.channel}")
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.handle(gateway, message["data"])
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    def start(self, gateway: DeliveryGateway) -> asyncio.Task:
        self._listener = asyncio.get_running_loop().create_task(self.listen(gateway))
        return self._listener

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None
