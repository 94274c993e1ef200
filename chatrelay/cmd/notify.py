from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

from chatrelay.core.bus import RedisFanoutBus, publish_notification
from chatrelay.core.config import load_config

log = logging.getLogger("chatrelay.cmd.notify")


async def _send(redis_url: str, channel: str, user_id: str, notification: Any) -> None:
    bus = RedisFanoutBus(redis_url)
    try:
        await publish_notification(bus, channel, user_id, notification)
        log.info("Published notification for %s on %s", user_id, channel)
    finally:
        await bus.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Publish one notification to connected relays")
    parser.add_argument("--config", help="Path to server YAML config (for redis_url and channel)")
    parser.add_argument("--user", required=True, help="Recipient user id")
    parser.add_argument("--json", dest="payload", required=True, help="Notification body as JSON")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config(Path(args.config) if args.config else None)
    try:
        notification = json.loads(args.payload)
    except ValueError as exc:
        parser.error(f"--json is not valid JSON: {exc}")
    asyncio.run(_send(config.redis_url, config.notification_channel, args.user, notification))


if __name__ == "__main__":
    main()
