from __future__ import annotations

import asyncio
import json

import pytest
import websockets
from jose import jwt

from chatrelay.core.bus import MemoryFanoutBus, MemoryHub, publish_notification
from chatrelay.core.config import RelayConfig
from chatrelay.core.store import SqliteStore
from chatrelay.server.runtime import RelayServer

SECRET = "runtime-secret"


def token_for(user_id: str) -> str:
    return jwt.encode({"userId": user_id}, SECRET, algorithm="HS256")


async def recv(ws, timeout: float = 2.0) -> dict:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def assert_silent(ws, timeout: float = 0.3) -> None:
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout)


async def login(server: RelayServer, user_id: str):
    ws = await websockets.connect(f"ws://127.0.0.1:{server.port}")
    await ws.send(json.dumps({"type": "auth", "token": token_for(user_id)}))
    ack = await recv(ws)
    assert ack == {"type": "connected", "userId": user_id, "message": "Authenticated successfully"}
    return ws


@pytest.fixture
async def cluster(tmp_path):
    db_path = tmp_path / "relay.db"
    seed = SqliteStore(db_path)
    await seed.init()
    for uid, name in (("u1", "Ann"), ("u2", "Bob"), ("u3", "Cy")):
        await seed.add_user(uid, name=name)
    await seed.add_friendship("u1", "u2")
    await seed.close()

    hub = MemoryHub()
    servers = []
    for name in ("relay-a", "relay-b"):
        cfg = RelayConfig(
            instance_id=name,
            listen="127.0.0.1:0",
            db_path=str(db_path),
            jwt_secret=SECRET,
            bus="memory",
        )
        server = RelayServer(cfg, bus=MemoryFanoutBus(hub))
        await server.start()
        servers.append(server)
    # Let the fanout consumers attach to the hub.
    await asyncio.sleep(0.05)
    yield servers, hub
    for server in servers:
        await server.stop()


async def test_same_instance_delivery_is_exactly_once(cluster):
    (a_srv, _), _ = cluster
    a = await login(a_srv, "u1")
    b = await login(a_srv, "u2")
    try:
        await a.send(json.dumps({"type": "message", "toId": "u2", "content": "hi"}))

        incoming = await recv(b)
        assert incoming["type"] == "message"
        assert incoming["message"]["fromId"] == "u1"
        assert incoming["message"]["content"] == "hi"
        assert incoming["message"]["from"]["name"] == "Ann"

        ack = await recv(a)
        assert ack["type"] == "message_sent"
        assert ack["message"]["id"] == incoming["message"]["id"]

        await assert_silent(b)
        await assert_silent(a)

        msg = await a_srv.store.get_message(ack["message"]["id"])
        assert (msg.from_id, msg.to_id, msg.seen) == ("u1", "u2", False)
    finally:
        await a.close()
        await b.close()


async def test_cross_instance_delivery_via_fanout(cluster):
    (a_srv, b_srv), _ = cluster
    a = await login(a_srv, "u1")
    b = await login(b_srv, "u2")
    try:
        await a.send(json.dumps({"type": "message", "toId": "u2", "content": "over there"}))

        assert (await recv(a))["type"] == "message_sent"
        incoming = await recv(b)
        assert incoming["type"] == "message"
        assert incoming["message"]["content"] == "over there"
        await assert_silent(b)

        await b.send(json.dumps({"type": "mark_seen", "messageId": incoming["message"]["id"]}))
        await assert_silent(b)
        msg = await b_srv.store.get_message(incoming["message"]["id"])
        assert msg.seen is True
    finally:
        await a.close()
        await b.close()


async def test_typing_never_crosses_instances(cluster):
    (a_srv, b_srv), _ = cluster
    a = await login(a_srv, "u1")
    b_remote = await login(b_srv, "u2")
    c_local = await login(a_srv, "u3")
    try:
        await a.send(json.dumps({"type": "typing", "toId": "u2", "isTyping": True}))
        await assert_silent(b_remote)

        await a.send(json.dumps({"type": "typing", "toId": "u3", "isTyping": True}))
        assert await recv(c_local) == {"type": "typing", "fromId": "u1", "isTyping": True}
    finally:
        for ws in (a, b_remote, c_local):
            await ws.close()


async def test_no_relationship_gets_single_error(cluster):
    (a_srv, _), _ = cluster
    a = await login(a_srv, "u1")
    c = await login(a_srv, "u3")
    try:
        await a.send(json.dumps({"type": "message", "toId": "u3", "content": "hi"}))
        assert await recv(a) == {"type": "error", "message": "Not friends with this user"}
        await assert_silent(a)
        await assert_silent(c)
        assert await a_srv.store.conversation("u1", "u3") == []
    finally:
        await a.close()
        await c.close()


async def test_bad_token_closes_connection(cluster):
    (a_srv, _), _ = cluster
    ws = await websockets.connect(f"ws://127.0.0.1:{a_srv.port}")
    try:
        await ws.send(json.dumps({"type": "auth", "token": "garbage"}))
        assert await recv(ws) == {"type": "error", "message": "Invalid or expired token"}
        with pytest.raises(websockets.ConnectionClosed):
            await asyncio.wait_for(ws.recv(), 2)
        assert len(a_srv.registry) == 0
    finally:
        await ws.close()


async def test_malformed_frame_keeps_connection_open(cluster):
    (a_srv, _), _ = cluster
    a = await login(a_srv, "u1")
    try:
        await a.send("{not json")
        assert (await recv(a))["type"] == "error"
        await a.send(json.dumps({"type": "dance"}))
        assert (await recv(a))["type"] == "error"
        assert a_srv.registry.lookup("u1") is not None
    finally:
        await a.close()


async def test_duplicate_login_and_stale_close(cluster):
    (a_srv, _), _ = cluster
    first = await login(a_srv, "u1")
    second = await login(a_srv, "u1")
    await first.close()
    await asyncio.sleep(0.1)

    entry = a_srv.registry.lookup("u1")
    assert entry is not None

    b = await login(a_srv, "u2")
    try:
        await b.send(json.dumps({"type": "message", "toId": "u1", "content": "still there?"}))
        assert (await recv(second))["message"]["content"] == "still there?"
    finally:
        await second.close()
        await b.close()


async def test_external_notification_reaches_user_on_any_instance(cluster):
    (_, b_srv), hub = cluster
    b = await login(b_srv, "u2")
    publisher = MemoryFanoutBus(hub)
    try:
        await publish_notification(publisher, "notifications", "u2", {"type": "friend_accepted", "by": "u1"})
        assert await recv(b) == {
            "type": "notification",
            "notification": {"type": "friend_accepted", "by": "u1"},
        }
    finally:
        await b.close()


async def test_disconnect_removes_registry_entry(cluster):
    (a_srv, _), _ = cluster
    a = await login(a_srv, "u1")
    assert a_srv.registry.lookup("u1") is not None
    await a.close()
    await asyncio.sleep(0.1)
    assert a_srv.registry.lookup("u1") is None
