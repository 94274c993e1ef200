from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import websockets

from . import proto
from .auth import IdentityVerifier
from .bus import FanoutBus
from .errors import (
    AuthError,
    AuthorizationError,
    FanoutUnavailable,
    PersistenceError,
    ProtocolError,
    RelayError,
)
from .registry import ConnectionRegistry
from .store import MessageStore, RelationshipOracle

log = logging.getLogger("chatrelay.core.relay")

POLICY_VIOLATION = 1008


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class ConnState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(slots=True, eq=False)
class Connection:
    """One live transport session.

    ``identity`` is a back-reference set once at authentication so the owner
    of a connection is known without scanning the registry.
    """

    transport: Transport
    remote: str = "?"
    identity: Optional[str] = None
    state: ConnState = ConnState.UNAUTHENTICATED
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = proto.encode_frame(frame)
        async with self.send_lock:
            await self.transport.send(text)


class RelayCore:
    """Per-connection state machine: authenticate, authorize, persist, deliver.

    Frames from one connection are handled one at a time by the caller; work
    for different connections interleaves at await points only.
    """

    def __init__(
        self,
        *,
        instance_id: str,
        verifier: IdentityVerifier,
        oracle: RelationshipOracle,
        store: MessageStore,
        bus: FanoutBus,
        registry: Optional[ConnectionRegistry[Connection]] = None,
        chat_channel: str = "chat",
        notification_channel: str = "notifications",
    ) -> None:
        self.instance_id = instance_id
        self.verifier = verifier
        self.oracle = oracle
        self.store = store
        self.bus = bus
        self.registry: ConnectionRegistry[Connection] = registry if registry is not None else ConnectionRegistry()
        self.chat_channel = chat_channel
        self.notification_channel = notification_channel

    # ------------------------------------------------------------------
    # Frame boundary
    # ------------------------------------------------------------------

    async def handle_raw(self, conn: Connection, raw: str | bytes) -> None:
        if conn.state is ConnState.CLOSED:
            return
        try:
            frame = proto.parse_client_frame(raw)
            await self._dispatch(conn, frame)
        except AuthError as exc:
            await self._reject_auth(conn, exc)
        except PersistenceError as exc:
            log.exception("Store failure on frame from %s", conn.identity or conn.remote)
            await self._push(conn, proto.error_frame(exc.message))
        except RelayError as exc:
            await self._push(conn, proto.error_frame(exc.message))
        except Exception:
            log.exception("Unhandled error on frame from %s", conn.identity or conn.remote)
            await self._push(conn, proto.error_frame("Internal server error"))

    async def _dispatch(self, conn: Connection, frame: proto.ClientFrame) -> None:
        if isinstance(frame, proto.AuthFrame):
            await self._on_auth(conn, frame)
            return
        if conn.state is not ConnState.AUTHENTICATED:
            raise ProtocolError("Not authenticated")
        if isinstance(frame, proto.MessageFrame):
            await self._on_message(conn, frame)
        elif isinstance(frame, proto.TypingFrame):
            await self._on_typing(conn, frame)
        elif isinstance(frame, proto.MarkSeenFrame):
            await self._on_mark_seen(conn, frame)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _on_auth(self, conn: Connection, frame: proto.AuthFrame) -> None:
        if conn.state is ConnState.AUTHENTICATED:
            raise ProtocolError("Already authenticated")
        identity = self.verifier.verify(frame.token)
        if inspect.isawaitable(identity):
            identity = await identity
        if conn.state is ConnState.CLOSED:
            # Transport went away while the token was being checked.
            log.debug("Dropped auth for %s: connection closed during verification", conn.remote)
            return
        conn.identity = identity
        conn.state = ConnState.AUTHENTICATED
        self.registry.register(identity, conn)
        log.info("User %s connected from %s", identity, conn.remote)
        await self._push(conn, proto.connected_frame(identity))

    async def _reject_auth(self, conn: Connection, exc: AuthError) -> None:
        log.warning("Authentication failed from %s", conn.remote)
        await self._push(conn, proto.error_frame(exc.message))
        conn.state = ConnState.CLOSED
        try:
            await conn.transport.close(POLICY_VIOLATION, "authentication failed")
        except Exception:
            log.debug("Transport close failed for %s", conn.remote, exc_info=True)

    async def _on_message(self, conn: Connection, frame: proto.MessageFrame) -> None:
        sender = conn.identity
        if not await self.oracle.authorized(sender, frame.to_id):
            log.info("Rejected message %s -> %s: no relationship", sender, frame.to_id)
            raise AuthorizationError("Not friends with this user")

        message = await self.store.create_message(sender, frame.to_id, frame.content)
        wire = message.to_wire()

        recipient = self.registry.lookup(frame.to_id)
        if recipient is not None:
            await self._deliver(recipient, proto.message_frame(wire))

        event = proto.FanoutEvent(kind="message", payload=wire, origin=self.instance_id)
        await self._publish(self.chat_channel, event)

        await self._push(conn, proto.message_sent_frame(wire))

    async def _on_typing(self, conn: Connection, frame: proto.TypingFrame) -> None:
        # Local only, no relationship check, never persisted.
        recipient = self.registry.lookup(frame.to_id)
        if recipient is not None:
            await self._deliver(recipient, proto.typing_frame(conn.identity, frame.is_typing))

    async def _on_mark_seen(self, conn: Connection, frame: proto.MarkSeenFrame) -> None:
        changed = await self.store.mark_seen(frame.message_id, conn.identity)
        if not changed:
            log.debug("mark_seen %s by %s matched nothing", frame.message_id, conn.identity)

    def disconnect(self, conn: Connection) -> None:
        """Transport closed or errored: stop processing and drop our entry."""

        conn.state = ConnState.CLOSED
        if conn.identity and self.registry.unregister(conn.identity, conn):
            log.info("User %s disconnected", conn.identity)

    # ------------------------------------------------------------------
    # Fanout
    # ------------------------------------------------------------------

    async def run_fanout(self) -> None:
        """Consume the bus until it ends; failures leave the instance degraded."""

        channels = [self.chat_channel, self.notification_channel]
        try:
            async for channel, event in self.bus.subscribe(channels):
                try:
                    await self.on_fanout(channel, event)
                except Exception:
                    log.exception("Fanout delivery failed on %s", channel)
        except FanoutUnavailable as exc:
            log.warning("Fanout subscription lost, cross-instance delivery disabled: %s", exc)

    async def on_fanout(self, channel: str, event: proto.FanoutEvent) -> None:
        if event.kind == "notification":
            target = self._lookup(event.payload.get("userId"))
            if target is not None:
                await self._deliver(target, proto.notification_frame(event.payload.get("notification")))
        elif event.kind == "message":
            if event.origin == self.instance_id:
                # The send path on this instance already delivered locally.
                return
            target = self._lookup(event.payload.get("toId"))
            if target is not None:
                await self._deliver(target, proto.message_frame(event.payload))

    async def _publish(self, channel: str, event: proto.FanoutEvent) -> None:
        try:
            await self.bus.publish(channel, event)
        except FanoutUnavailable as exc:
            log.warning("Fanout publish skipped, cross-instance delivery degraded: %s", exc)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def _lookup(self, identity: Any) -> Optional[Connection]:
        if not isinstance(identity, str) or not identity:
            return None
        return self.registry.lookup(identity)

    async def _push(self, conn: Connection, frame: Dict[str, Any]) -> bool:
        if conn.state is ConnState.CLOSED:
            return False
        try:
            await conn.send(frame)
        except websockets.ConnectionClosed:
            log.debug("Dropped %s frame for closed connection %s", frame.get("type"), conn.identity or conn.remote)
            return False
        return True

    async def _deliver(self, conn: Connection, frame: Dict[str, Any]) -> bool:
        """Push to a recipient; its transport failures never abort the caller."""

        try:
            return await self._push(conn, frame)
        except Exception:
            log.warning(
                "Delivery of %s frame to %s failed",
                frame.get("type"),
                conn.identity or conn.remote,
                exc_info=True,
            )
            return False


__all__ = ["Connection", "ConnState", "RelayCore", "Transport", "POLICY_VIOLATION"]
