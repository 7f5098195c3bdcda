"""
Conftest
"""

import os
import tempfile
import uuid
from typing import AsyncGenerator

# Settings are read at import time, so the environment goes first
_TMP_DIR = tempfile.mkdtemp(prefix="hr-chat-tests-")
os.environ["ENV"] = "test"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-hr-chat-backend-0123456789"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/app.db"
os.environ["DB_AUTO_CREATE"] = "true"
os.environ["CHAT_UPLOAD_DIR"] = os.path.join(_TMP_DIR, "uploads")
os.environ["CHAT_TYPING_TTL_SECONDS"] = "0.3"
# Nothing listens on port 1; redis checks report an error instead of hanging
os.environ["REDIS_URL"] = "redis://127.0.0.1:1/0"

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.chat.hub import ChatHub, get_chat_hub
from app.chat.service import ChatService
from app.core.security import Identity, create_access_token
from app.infra.db import build_engine, build_sessionmaker, get_db
from app.infra.redis import get_redis
from app.infra.storage import LocalAttachmentStore
from app.main import app
from app.models import Base

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


def make_token(user_id: str, role: str = "Employee") -> str:
    return create_access_token({"sub": user_id, "role": role})


def auth_headers(user_id: str, role: str = "Employee") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
async def test_engine():
    engine = build_engine(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_sessionmaker(test_engine)


@pytest.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(tmp_path) -> LocalAttachmentStore:
    return LocalAttachmentStore(tmp_path / "uploads")


@pytest.fixture
async def hub(store) -> AsyncGenerator[ChatHub, None]:
    chat_hub = ChatHub(store=store, typing_ttl_seconds=0.2)
    yield chat_hub
    await chat_hub.close()


@pytest.fixture
def service(test_session, hub) -> ChatService:
    return ChatService(test_session, hub)


@pytest.fixture
def alice() -> Identity:
    return Identity(user_id=f"alice-{uuid.uuid4().hex[:8]}", role="Employee")


@pytest.fixture
def bob() -> Identity:
    return Identity(user_id=f"bob-{uuid.uuid4().hex[:8]}", role="HR Manager")


@pytest.fixture
def carol() -> Identity:
    return Identity(user_id=f"carol-{uuid.uuid4().hex[:8]}", role="Employee")


@pytest.fixture
def fake_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.ping.return_value = True
    return redis


@pytest.fixture
async def client(session_factory, hub, fake_redis) -> AsyncGenerator[AsyncClient, None]:
    # Override dependencies
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_hub] = lambda: hub
    app.dependency_overrides[get_redis] = override_get_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def headers_for():
    return auth_headers
