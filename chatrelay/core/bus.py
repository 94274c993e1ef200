from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Iterable, Protocol, Set, Tuple, Union

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..utils import canonical
from .errors import FanoutUnavailable
from .proto import FanoutEvent

"""
Fanout bus
----------
Cross-instance publish/subscribe used to reach recipients connected to a
different server instance.

Contract
========
- publish(channel, event): best effort, at most once. No acknowledgement, no
  retry. A retried publish could double-deliver, so none is attempted.
- subscribe(channels): lazy, infinite async iterator of (channel, event).
  It can be started once per bus. Every instance receives its own publishes.
- Events for recipients that are not registered locally are dropped by the
  consumer; there is no catch-up queue at this layer.
- Backbone failures raise FanoutUnavailable. Callers log and carry on:
  local delivery and persistence never depend on the bus.
"""

log = logging.getLogger("chatrelay.core.bus")

Delivery = Tuple[str, FanoutEvent]


class FanoutBus(Protocol):
    async def publish(self, channel: str, event: FanoutEvent) -> None: ...

    def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Delivery]: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def encode_event(event: FanoutEvent) -> bytes:
    return canonical.dumps(event.model_dump(exclude_none=True))


def decode_event(data: Union[str, bytes]) -> FanoutEvent:
    """Decode a bus payload.

    Besides the native ``{kind, payload, origin}`` shape, the bare shapes used
    by the HTTP API publishers are accepted: ``{userId, notification}`` and
    ``{type: "message", message}``.
    """

    doc = canonical.loads(data)
    if not isinstance(doc, dict):
        raise ValueError("bus event must be an object")
    if "kind" not in doc:
        if "notification" in doc:
            doc = {"kind": "notification", "payload": doc}
        elif doc.get("type") == "message" and isinstance(doc.get("message"), dict):
            doc = {"kind": "message", "payload": doc["message"]}
    return FanoutEvent.model_validate(doc)


def _decode_or_none(channel: str, data: Union[str, bytes]) -> FanoutEvent | None:
    try:
        return decode_event(data)
    except (ValueError, ValidationError) as exc:
        log.warning("Dropped malformed event on %s: %s", channel, exc)
        return None


# ---------------------------------------------------------------------------
# Redis backbone
# ---------------------------------------------------------------------------

class RedisFanoutBus:
    """Redis pub/sub with separate publish and subscribe clients."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._pub = aioredis.from_url(url)
        self._sub = aioredis.from_url(url)
        self._started = False

    async def publish(self, channel: str, event: FanoutEvent) -> None:
        try:
            await self._pub.publish(channel, encode_event(event))
        except (RedisError, OSError) as exc:
            raise FanoutUnavailable(f"publish to {channel!r} failed: {exc}") from exc

    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Delivery]:
        if self._started:
            raise RuntimeError("subscription already started")
        self._started = True
        pubsub = self._sub.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(*channels)
            async for msg in pubsub.listen():
                if msg.get("type") != "message":
                    continue
                channel = msg["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode("utf-8")
                event = _decode_or_none(channel, msg["data"])
                if event is not None:
                    yield channel, event
        except (RedisError, OSError) as exc:
            raise FanoutUnavailable(f"subscription lost: {exc}") from exc
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        await self._pub.aclose()
        await self._sub.aclose()


# ---------------------------------------------------------------------------
# In-process backbone
# ---------------------------------------------------------------------------

class MemoryHub:
    """Shared switchboard for MemoryFanoutBus instances in one process."""

    def __init__(self) -> None:
        self._queues: Dict[str, Set[asyncio.Queue]] = {}

    def attach(self, channels: Iterable[str], queue: asyncio.Queue) -> None:
        for channel in channels:
            self._queues.setdefault(channel, set()).add(queue)

    def detach(self, queue: asyncio.Queue) -> None:
        for queues in self._queues.values():
            queues.discard(queue)

    def deliver(self, channel: str, data: Union[str, bytes]) -> int:
        targets = list(self._queues.get(channel, ()))
        for queue in targets:
            queue.put_nowait((channel, data))
        return len(targets)


class MemoryFanoutBus:
    def __init__(self, hub: MemoryHub | None = None) -> None:
        self.hub = hub if hub is not None else MemoryHub()
        self._started = False
        self._closed = False

    async def publish(self, channel: str, event: FanoutEvent) -> None:
        if self._closed:
            raise FanoutUnavailable("bus is closed")
        self.hub.deliver(channel, encode_event(event))

    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Delivery]:
        if self._started:
            raise RuntimeError("subscription already started")
        self._started = True
        queue: asyncio.Queue = asyncio.Queue()
        self.hub.attach(list(channels), queue)
        try:
            while True:
                channel, data = await queue.get()
                event = _decode_or_none(channel, data)
                if event is not None:
                    yield channel, event
        finally:
            self.hub.detach(queue)

    async def close(self) -> None:
        self._closed = True


async def publish_notification(bus: FanoutBus, channel: str, user_id: str, notification: Any) -> None:
    """Publish an out-of-band notification for one user (e.g. friend accepted)."""

    event = FanoutEvent(kind="notification", payload={"userId": user_id, "notification": notification})
    await bus.publish(channel, event)


__all__ = [
    "FanoutBus",
    "RedisFanoutBus",
    "MemoryHub",
    "MemoryFanoutBus",
    "encode_event",
    "decode_event",
    "publish_notification",
]
