from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import websockets

from chatrelay.core.auth import IdentityVerifier, JwtVerifier
from chatrelay.core.bus import FanoutBus, MemoryFanoutBus, RedisFanoutBus
from chatrelay.core.config import RelayConfig
from chatrelay.core.registry import ConnectionRegistry
from chatrelay.core.relay import Connection, RelayCore
from chatrelay.core.store import SqliteStore

log = logging.getLogger("chatrelay.server.runtime")


def build_bus(config: RelayConfig) -> FanoutBus:
    if config.bus == "memory":
        return MemoryFanoutBus()
    return RedisFanoutBus(config.redis_url)


class RelayServer:
    """Websocket front of one relay instance."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        store: Optional[SqliteStore] = None,
        bus: Optional[FanoutBus] = None,
        verifier: Optional[IdentityVerifier] = None,
    ) -> None:
        self.cfg = config
        self.instance_id = config.instance_id
        self.listen_host, self.listen_port = config.host_port

        self.store = store if store is not None else SqliteStore(config.db_path)
        self.bus = bus if bus is not None else build_bus(config)
        self.verifier = verifier if verifier is not None else JwtVerifier(
            config.jwt_secret, algorithms=[config.jwt_algorithm], claim=config.identity_claim
        )
        self.registry: ConnectionRegistry[Connection] = ConnectionRegistry()
        self.core = RelayCore(
            instance_id=self.instance_id,
            verifier=self.verifier,
            oracle=self.store,
            store=self.store,
            bus=self.bus,
            registry=self.registry,
            chat_channel=config.chat_channel,
            notification_channel=config.notification_channel,
        )

        self._connections: list[Connection] = []
        self._ws_server: Any = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.init()
        self._ws_server = await websockets.serve(self._handle_connection, self.listen_host, self.listen_port)
        log.info(
            "Relay %s listening on ws://%s:%d (bus=%s)",
            self.instance_id,
            self.listen_host,
            self.port,
            type(self.bus).__name__,
        )
        self._tasks.append(asyncio.create_task(self.core.run_fanout(), name=f"fanout-{self.instance_id}"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for conn in list(self._connections):
            try:
                await conn.transport.close()
            except Exception:
                log.debug("Close failed for %s", conn.remote, exc_info=True)
        self._connections.clear()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        await self.bus.close()
        await self.store.close()
        log.info("Relay %s stopped", self.instance_id)

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when listening on port 0."""

        if self._ws_server is None:
            return self.listen_port
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return self.listen_port

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: Any) -> None:
        conn = Connection(transport=websocket, remote=self._fmt_remote(websocket))
        self._connections.append(conn)
        log.debug("Accepted connection from %s", conn.remote)
        try:
            async for raw in websocket:
                await self.core.handle_raw(conn, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.core.disconnect(conn)
            try:
                self._connections.remove(conn)
            except ValueError:
                pass
            log.debug("Connection from %s closed", conn.remote)

    @staticmethod
    def _fmt_remote(websocket: Any) -> str:
        peer = getattr(websocket, "remote_address", None)
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["RelayServer", "build_bus"]
