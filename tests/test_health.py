"""
Health Endpoint Tests
"""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"api": "ok", "db": "ok", "redis": "ok"}


@pytest.mark.asyncio
async def test_health_reports_redis_down(client: AsyncClient, fake_redis):
    fake_redis.ping.side_effect = ConnectionError("refused")

    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    data = response.json()
    assert data["api"] == "ok"
    assert data["redis"] == "error"


@pytest.mark.asyncio
async def test_request_id_echoed(client: AsyncClient):
    response = await client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"

    response = await client.get("/api/v1/health")
    assert response.headers["X-Request-ID"]
