from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

import websockets

log = logging.getLogger("chatrelay.cmd.client")

HELP = "Commands: /tell <user> <msg>, /typing <user> on|off, /seen <messageId>, /quit"


class ClientApp:
    def __init__(self, server_url: str, token: str) -> None:
        self.server_url = server_url
        self.token = token
        self.user_id: Optional[str] = None
        self.ws: Any = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with websockets.connect(self.server_url) as ws:
            self.ws = ws
            await self._send_frame({"type": "auth", "token": self.token})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(HELP)
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line:
                await self._handle_command(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/tell" and len(parts) >= 3:
            await self._send_frame({"type": "message", "toId": parts[1], "content": line.split(" ", 2)[2]})
        elif cmd == "/typing" and len(parts) == 3:
            await self._send_frame({"type": "typing", "toId": parts[1], "isTyping": parts[2] == "on"})
        elif cmd == "/seen" and len(parts) == 2:
            await self._send_frame({"type": "mark_seen", "messageId": parts[1]})
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(HELP)

    async def _rx_loop(self) -> None:
        try:
            async for raw in self.ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(frame)
        except websockets.ConnectionClosed:
            pass
        print("[connection closed]")
        self.stop_event.set()

    def _handle_incoming(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "connected":
            self.user_id = frame.get("userId")
            print(f"[connected as {self.user_id}]")
        elif kind in {"message", "message_sent"}:
            msg = frame.get("message") or {}
            arrow = "->" if kind == "message_sent" else "<-"
            peer = msg.get("toId") if kind == "message_sent" else msg.get("fromId")
            print(f"{arrow} {peer}: {msg.get('content')}  (id {msg.get('id')})")
        elif kind == "typing":
            state = "is typing" if frame.get("isTyping") else "stopped typing"
            print(f"[{frame.get('fromId')} {state}]")
        elif kind == "notification":
            print(f"[notification] {json.dumps(frame.get('notification'))}")
        elif kind == "error":
            print(f"[error] {frame.get('message')}")
        else:
            log.debug("Unhandled frame %s", kind)

    async def _send_frame(self, frame: Dict[str, Any]) -> None:
        await self.ws.send(json.dumps(frame, separators=(",", ":")))


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Line-mode chat relay client")
    parser.add_argument("--url", default="ws://localhost:3002", help="Relay websocket URL")
    parser.add_argument("--token", default=os.getenv("CHATRELAY_TOKEN"), help="Bearer token (or CHATRELAY_TOKEN)")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.token:
        parser.error("--token is required")

    app = ClientApp(args.url, args.token)
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
