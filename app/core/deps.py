"""
Dependency Injection

FastAPI dependencies for routes.
"""

from typing import Annotated

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.chat.hub import ChatHub, get_chat_hub
from app.chat.service import ChatService
from app.core.config import settings
from app.core.errors import AuthenticationError
from app.core.security import Identity, verify_token
from app.infra.db import get_db
from app.infra.redis import get_redis

# Tokens are issued by the external identity provider
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.api_prefix}/auth/token", auto_error=False)

# Type aliases for common dependencies
SessionDep = Annotated[AsyncSession, Depends(get_db)]
RedisDep = Annotated[Redis, Depends(get_redis)]
ChatHubDep = Annotated[ChatHub, Depends(get_chat_hub)]


async def get_current_identity(token: Annotated[str, Depends(oauth2_scheme)]) -> Identity:
    """
    Validate token and return the caller identity.
    Does not touch the database.
    """
    identity = verify_token(token) if token else None
    if identity is None:
        raise AuthenticationError("Could not validate credentials")
    return identity


CurrentIdentityDep = Annotated[Identity, Depends(get_current_identity)]


async def get_chat_service(session: SessionDep, hub: ChatHubDep) -> ChatService:
    return ChatService(session, hub)


ChatServiceDep = Annotated[ChatService, Depends(get_chat_service)]
