from __future__ import annotations

import logging
from typing import Dict, Generic, Optional, TypeVar

log = logging.getLogger("chatrelay.core.registry")

C = TypeVar("C")


class ConnectionRegistry(Generic[C]):
    """Identity -> live connection map for one server instance.

    At most one connection per identity. A second registration replaces the
    first (last writer wins) without notifying the displaced connection.
    Access is single-threaded on the event loop, so no locking is done here.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, C] = {}

    def register(self, identity: str, conn: C) -> Optional[C]:
        previous = self._entries.get(identity)
        self._entries[identity] = conn
        if previous is not None and previous is not conn:
            log.info("Identity %s re-registered; previous connection displaced", identity)
            return previous
        return None

    def unregister(self, identity: str, conn: C) -> bool:
        """Drop the entry only if it still points at ``conn``."""

        if self._entries.get(identity) is conn:
            del self._entries[identity]
            return True
        return False

    def lookup(self, identity: str) -> Optional[C]:
        return self._entries.get(identity)

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["ConnectionRegistry"]
