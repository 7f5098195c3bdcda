import asyncio
from unittest.mock import AsyncMock

import pytest

from app.chat.gateway import NEW_MESSAGE, USER_OFFLINE, USER_ONLINE, DeliveryGateway


def events_of(ws: AsyncMock, name: str) -> list:
    return [c.args[0] for c in ws.send_json.call_args_list if c.args[0].get("event") == name]


async def settle(gateway: DeliveryGateway, *sockets: AsyncMock) -> None:
    """Deliver pending presence events and forget them"""
    await gateway.flush()
    for ws in sockets:
        ws.send_json.reset_mock()


@pytest.mark.asyncio
async def test_connect_accepts_and_registers():
    gateway = DeliveryGateway()
    ws = AsyncMock()

    connection = await gateway.connect("u1", ws)

    ws.accept.assert_called_once()
    assert gateway.active_connections["u1"] == [connection]
    assert gateway.is_connected("u1")


@pytest.mark.asyncio
async def test_publish_reaches_only_joined_connections():
    gateway = DeliveryGateway()
    ws_joined, ws_other = AsyncMock(), AsyncMock()
    joined = await gateway.connect("u1", ws_joined)
    await gateway.connect("u2", ws_other)
    await gateway.join(joined, "s1")
    await settle(gateway, ws_joined, ws_other)

    gateway.publish("s1", NEW_MESSAGE, {"message": {"id": 1}})
    await gateway.flush()

    ws_joined.send_json.assert_called_once_with({"event": NEW_MESSAGE, "session_id": "s1", "message": {"id": 1}})
    ws_other.send_json.assert_not_called()


@pytest.mark.asyncio
async def test_publish_excludes_acting_user():
    gateway = DeliveryGateway()
    ws_a, ws_b = AsyncMock(), AsyncMock()
    await gateway.join(await gateway.connect("a", ws_a), "s1")
    await gateway.join(await gateway.connect("b", ws_b), "s1")
    await settle(gateway, ws_a, ws_b)

    gateway.publish("s1", "user_typing", {"user_id": "a"}, exclude_user="a")
    await gateway.flush()

    ws_a.send_json.assert_not_called()
    assert len(events_of(ws_b, "user_typing")) == 1


@pytest.mark.asyncio
async def test_events_delivered_in_publish_order():
    gateway = DeliveryGateway()
    received = []

    async def slow_send(message):
        # Yield so a broken ordering would show up
        await asyncio.sleep(0)
        received.append(message["seq"])

    ws = AsyncMock()
    ws.send_json.side_effect = slow_send
    await gateway.join(await gateway.connect("u1", ws), "s1")

    for seq in range(50):
        gateway.publish("s1", NEW_MESSAGE, {"seq": seq})
    await gateway.flush()

    assert received == list(range(50))


@pytest.mark.asyncio
async def test_dropped_connection_does_not_block_others():
    gateway = DeliveryGateway()
    dead, alive = AsyncMock(), AsyncMock()
    dead.send_json.side_effect = RuntimeError("socket closed")
    await gateway.join(await gateway.connect("u1", dead), "s1")
    await gateway.join(await gateway.connect("u2", alive), "s1")
    await settle(gateway, dead, alive)

    delivered = await gateway.deliver("s1", {"event": NEW_MESSAGE})

    assert delivered == 1
    alive.send_json.assert_called_once()


@pytest.mark.asyncio
async def test_leave_stops_delivery():
    gateway = DeliveryGateway()
    ws = AsyncMock()
    connection = await gateway.connect("u1", ws)
    await gateway.join(connection, "s1")
    await gateway.leave(connection, "s1")

    gateway.publish("s1", NEW_MESSAGE, {})
    await gateway.flush()

    ws.send_json.assert_not_called()
    assert "s1" not in gateway.rooms


@pytest.mark.asyncio
async def test_disconnect_leaves_every_room():
    gateway = DeliveryGateway()
    connection = await gateway.connect("u1", AsyncMock())
    await gateway.join(connection, "s1")
    await gateway.join(connection, "s2")

    left = await gateway.disconnect(connection)

    assert sorted(left) == ["s1", "s2"]
    assert gateway.rooms == {}
    assert "u1" not in gateway.active_connections


@pytest.mark.asyncio
async def test_race_condition_connect_disconnect():
    """
    Rapid connect/join/disconnect to verify lock integrity
    """
    gateway = DeliveryGateway()

    async def spam(i):
        connection = await gateway.connect("u1", AsyncMock())
        await gateway.join(connection, f"s{i % 3}")
        await asyncio.sleep(0.001)
        await gateway.disconnect(connection)

    await asyncio.gather(*(spam(i) for i in range(100)))

    # Should be empty at the end
    assert gateway.active_connections == {}
    assert gateway.rooms == {}


@pytest.mark.asyncio
async def test_send_while_disconnecting():
    """
    Publishing while a connection leaves must not break iteration.
    """
    gateway = DeliveryGateway()
    ws1, ws2 = AsyncMock(), AsyncMock()
    c1 = await gateway.connect("u1", ws1)
    c2 = await gateway.connect("u1", ws2)
    await gateway.join(c1, "s1")
    await gateway.join(c2, "s1")

    async def disconnect_one():
        await asyncio.sleep(0.005)
        await gateway.disconnect(c1)

    async def send_msgs():
        for _ in range(10):
            gateway.publish("s1", NEW_MESSAGE, {"msg": "hello"})
            await asyncio.sleep(0.001)

    await asyncio.gather(disconnect_one(), send_msgs())
    await gateway.flush()

    assert gateway.active_connections["u1"] == [c2]
    assert ws2.send_json.call_count == 10


@pytest.mark.asyncio
async def test_relay_receives_published_events():
    relay = AsyncMock()
    gateway = DeliveryGateway(relay=relay)

    gateway.publish("s1", NEW_MESSAGE, {"message": {"id": 7}}, exclude_user="u1")
    await gateway.flush()

    relay.publish.assert_awaited_once_with(
        "s1", {"event": NEW_MESSAGE, "session_id": "s1", "message": {"id": 7}}, "u1"
    )


@pytest.mark.asyncio
async def test_relayed_events_are_not_relayed_again():
    relay = AsyncMock()
    gateway = DeliveryGateway(relay=relay)
    ws = AsyncMock()
    await gateway.join(await gateway.connect("u2", ws), "s1")

    gateway.deliver_relayed("s1", {"event": NEW_MESSAGE, "session_id": "s1"}, None)
    await gateway.flush()

    ws.send_json.assert_called_once()
    relay.publish.assert_not_called()


@pytest.mark.asyncio
async def test_first_connection_announces_online():
    gateway = DeliveryGateway()
    ws_a, ws_b, ws_b2 = AsyncMock(), AsyncMock(), AsyncMock()
    await gateway.connect("a", ws_a)
    await gateway.flush()

    await gateway.connect("b", ws_b)
    await gateway.connect("b", ws_b2)
    await gateway.flush()

    assert events_of(ws_a, USER_ONLINE) == [{"event": USER_ONLINE, "user_id": "b"}]
    # Nobody is told about their own presence
    assert events_of(ws_b, USER_ONLINE) == []
    assert events_of(ws_b2, USER_ONLINE) == []


@pytest.mark.asyncio
async def test_last_disconnect_announces_offline():
    gateway = DeliveryGateway()
    ws_a = AsyncMock()
    await gateway.connect("a", ws_a)
    first = await gateway.connect("b", AsyncMock())
    second = await gateway.connect("b", AsyncMock())

    await gateway.disconnect(first)
    await gateway.flush()
    assert events_of(ws_a, USER_OFFLINE) == []

    await gateway.disconnect(second)
    await gateway.flush()
    offline = events_of(ws_a, USER_OFFLINE)
    assert len(offline) == 1
    assert offline[0]["user_id"] == "b"
    assert offline[0]["last_seen"].endswith("+00:00")


@pytest.mark.asyncio
async def test_presence_is_not_relayed():
    relay = AsyncMock()
    gateway = DeliveryGateway(relay=relay)

    connection = await gateway.connect("a", AsyncMock())
    await gateway.disconnect(connection)
    await gateway.flush()

    relay.publish.assert_not_called()
