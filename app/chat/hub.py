"""
Process-wide chat runtime: gateway, typing broadcaster, session locks and
attachment store. Created in the application lifespan.
"""

import logging
from typing import Optional

from app.chat.gateway import DeliveryGateway
from app.chat.locks import KeyedLock
from app.chat.relay import RedisEventRelay
from app.chat.typing import TypingBroadcaster
from app.core.config import settings
from app.infra.storage import LocalAttachmentStore

logger = logging.getLogger(__name__)


class ChatHub:
    def __init__(
        self,
        store: Optional[LocalAttachmentStore] = None,
        gateway: Optional[DeliveryGateway] = None,
        typing_ttl_seconds: Optional[float] = None,
    ):
        self.store = store or LocalAttachmentStore(settings.chat_upload_dir)
        self.gateway = gateway or DeliveryGateway()
        self.typing = TypingBroadcaster(self.gateway, typing_ttl_seconds)
        self.locks = KeyedLock()
        self.relay: Optional[RedisEventRelay] = None

    def attach_relay(self, relay: RedisEventRelay) -> None:
        self.relay = relay
        self.gateway.relay = relay
        relay.start(self.gateway)
        logger.info(f"Chat relay enabled on {relay.channel} as {relay.instance_id}")

    async def close(self) -> None:
        self.typing.close()
        if self.relay is not None:
            await self.relay.stop()
        await self.gateway.close()


hub: Optional[ChatHub] = None


def init_chat_hub(**kwargs) -> ChatHub:
    global hub
    hub = ChatHub(**kwargs)
    return hub


def get_chat_hub() -> ChatHub:
    if hub is None:
        raise RuntimeError("Chat hub is not initialized")
    return hub


async def close_chat_hub() -> None:
    global hub
    if hub is not None:
        await hub.close()
    hub = None
