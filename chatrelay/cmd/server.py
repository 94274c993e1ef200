from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from chatrelay.core.config import RelayConfig, load_config
from chatrelay.server.runtime import RelayServer

log = logging.getLogger("chatrelay.cmd.server")


async def _run(config: RelayConfig) -> None:
    server = RelayServer(config)
    await server.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await server.stop()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Real-time chat relay server")
    parser.add_argument("--config", help="Path to server YAML config")
    parser.add_argument("--log-level", help="Override log level from config")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)
    level = (args.log_level or config.log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
