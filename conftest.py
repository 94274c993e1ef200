from __future__ import annotations

import json
from typing import Dict, List, Set

import pytest

from chatrelay.core.errors import AuthError, FanoutUnavailable, PersistenceError
from chatrelay.core.proto import FanoutEvent, Message, new_message_id, utcnow
from chatrelay.core.registry import ConnectionRegistry
from chatrelay.core.relay import Connection, RelayCore


class FakeTransport:
    """Records frames the relay pushes; mimics the websocket send/close surface."""

    def __init__(self) -> None:
        self.frames: List[dict] = []
        self.closed = False
        self.close_code = None

    async def send(self, message: str) -> None:
        self.frames.append(json.loads(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code

    def of_type(self, kind: str) -> List[dict]:
        return [f for f in self.frames if f.get("type") == kind]


class FakeVerifier:
    def __init__(self, tokens: Dict[str, str]) -> None:
        self.tokens = tokens
        self.calls: List[str] = []

    def verify(self, token: str) -> str:
        self.calls.append(token)
        if not isinstance(token, str):
            raise AuthError("Invalid or expired token")
        try:
            return self.tokens[token]
        except KeyError:
            raise AuthError("Invalid or expired token") from None


class FakeStore:
    """Relationship oracle + message store kept in memory."""

    def __init__(self) -> None:
        self.friends: Set[frozenset] = set()
        self.messages: Dict[str, Message] = {}
        self.writes: List[Message] = []
        self.fail = False

    def befriend(self, a: str, b: str) -> None:
        self.friends.add(frozenset((a, b)))

    async def authorized(self, a: str, b: str) -> bool:
        return frozenset((a, b)) in self.friends

    async def create_message(self, from_id: str, to_id: str, content: str) -> Message:
        if self.fail:
            raise PersistenceError("Failed to save message")
        msg = Message(id=new_message_id(), from_id=from_id, to_id=to_id, content=content, created_at=utcnow())
        self.messages[msg.id] = msg
        self.writes.append(msg)
        return msg

    async def mark_seen(self, message_id: str, by_id: str) -> int:
        if self.fail:
            raise PersistenceError("Failed to update message")
        msg = self.messages.get(message_id)
        if msg is None or msg.to_id != by_id:
            return 0
        msg.seen = True
        return 1


class FakeBus:
    def __init__(self) -> None:
        self.published: List[tuple[str, FanoutEvent]] = []
        self.fail = False

    async def publish(self, channel: str, event: FanoutEvent) -> None:
        if self.fail:
            raise FanoutUnavailable("connection refused")
        self.published.append((channel, event))

    async def close(self) -> None:
        pass


@pytest.fixture
def verifier():
    return FakeVerifier({"tok-u1": "u1", "tok-u2": "u2", "tok-u3": "u3"})


@pytest.fixture
def store():
    s = FakeStore()
    s.befriend("u1", "u2")
    return s


@pytest.fixture
def bus():
    return FakeBus()


@pytest.fixture
def core(verifier, store, bus):
    return RelayCore(
        instance_id="inst-a",
        verifier=verifier,
        oracle=store,
        store=store,
        bus=bus,
        registry=ConnectionRegistry(),
    )


@pytest.fixture
def make_conn():
    def _make(remote: str = "127.0.0.1:5000") -> Connection:
        return Connection(transport=FakeTransport(), remote=remote)
    return _make
