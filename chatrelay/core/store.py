from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import aiosqlite

from .errors import PersistenceError
from .proto import Message, UserSummary, new_message_id, utcnow

"""
SqliteStore - aiosqlite-backed persistence for the relay
--------------------------------------------------------

Answers the two questions the relay delegates:
- Relationship oracle: are two users friends? Rows are directed, either
  direction satisfies the relation.
- Message store: append messages and flip ``seen`` for the receiver.

Tables:
1. users    -> id, display name, email, avatar url
2. friends  -> (user_id, friend_id) directed rows
3. messages -> private messages between two users
"""

log = logging.getLogger("chatrelay.core.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    id         TEXT PRIMARY KEY,
    name       TEXT,
    email      TEXT,
    avatar_url TEXT
);
CREATE TABLE IF NOT EXISTS friends(
    user_id    TEXT NOT NULL,
    friend_id  TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (user_id, friend_id)
);
CREATE TABLE IF NOT EXISTS messages(
    id         TEXT PRIMARY KEY,
    from_id    TEXT NOT NULL,
    to_id      TEXT NOT NULL,
    content    TEXT NOT NULL,
    created_at TEXT NOT NULL,
    seen       INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS messages_pair ON messages(from_id, to_id, created_at);
"""

_DB_ERRORS = (aiosqlite.Error, sqlite3.Error, ValueError)


class RelationshipOracle(Protocol):
    async def authorized(self, a: str, b: str) -> bool: ...


class MessageStore(Protocol):
    async def create_message(self, from_id: str, to_id: str, content: str) -> Message: ...

    async def mark_seen(self, message_id: str, by_id: str) -> int: ...


class SqliteStore:
    """Persistent SQLite store implementing RelationshipOracle and MessageStore."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.path)
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except _DB_ERRORS as exc:
            raise PersistenceError(f"cannot open store at {self.path}: {exc}") from exc
        log.info("Store ready at %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError("Message store unavailable")
        return self._db

    # ------------------------------------------------------------------
    # Users and relationships
    # ------------------------------------------------------------------

    async def add_user(
        self,
        user_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> None:
        try:
            await self.db.execute(
                "INSERT OR REPLACE INTO users(id,name,email,avatar_url) VALUES(?,?,?,?)",
                (user_id, name, email, avatar_url),
            )
            await self.db.commit()
        except _DB_ERRORS as exc:
            raise PersistenceError(f"cannot save user: {exc}") from exc

    async def add_friendship(self, a: str, b: str) -> None:
        """Record one directed friendship row; ``authorized`` reads both ways."""

        try:
            await self.db.execute(
                "INSERT OR IGNORE INTO friends(user_id,friend_id,created_at) VALUES(?,?,?)",
                (a, b, utcnow().isoformat()),
            )
            await self.db.commit()
        except _DB_ERRORS as exc:
            raise PersistenceError(f"cannot save friendship: {exc}") from exc

    async def authorized(self, a: str, b: str) -> bool:
        try:
            cur = await self.db.execute(
                "SELECT 1 FROM friends WHERE (user_id=? AND friend_id=?) OR (user_id=? AND friend_id=?) LIMIT 1",
                (a, b, b, a),
            )
            row = await cur.fetchone()
        except _DB_ERRORS as exc:
            raise PersistenceError(f"relationship lookup failed: {exc}") from exc
        return row is not None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_message(self, from_id: str, to_id: str, content: str) -> Message:
        message_id = new_message_id()
        created_at = utcnow()
        try:
            summaries = await self._summaries([from_id, to_id])
            await self.db.execute(
                "INSERT INTO messages(id,from_id,to_id,content,created_at,seen) VALUES(?,?,?,?,?,0)",
                (message_id, from_id, to_id, content, created_at.isoformat()),
            )
            await self.db.commit()
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Failed to save message: {exc}") from exc
        return Message(
            id=message_id,
            from_id=from_id,
            to_id=to_id,
            content=content,
            created_at=created_at,
            seen=False,
            sender=summaries.get(from_id),
            receiver=summaries.get(to_id),
        )

    async def mark_seen(self, message_id: str, by_id: str) -> int:
        """Mark a message seen, only when ``by_id`` is its receiver.

        Returns the number of rows changed; zero is not an error.
        """

        try:
            cur = await self.db.execute(
                "UPDATE messages SET seen=1 WHERE id=? AND to_id=?",
                (message_id, by_id),
            )
            await self.db.commit()
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Failed to update message: {exc}") from exc
        return cur.rowcount

    async def get_message(self, message_id: str) -> Optional[Message]:
        try:
            cur = await self.db.execute("SELECT * FROM messages WHERE id=?", (message_id,))
            row = await cur.fetchone()
            if row is None:
                return None
            summaries = await self._summaries([row["from_id"], row["to_id"]])
        except _DB_ERRORS as exc:
            raise PersistenceError(f"message lookup failed: {exc}") from exc
        return self._to_message(row, summaries)

    async def conversation(self, a: str, b: str) -> List[Message]:
        """All messages between two users in both directions, oldest first."""

        try:
            cur = await self.db.execute(
                "SELECT * FROM messages WHERE (from_id=? AND to_id=?) OR (from_id=? AND to_id=?) "
                "ORDER BY created_at ASC",
                (a, b, b, a),
            )
            rows = await cur.fetchall()
            summaries = await self._summaries([a, b])
        except _DB_ERRORS as exc:
            raise PersistenceError(f"conversation lookup failed: {exc}") from exc
        return [self._to_message(row, summaries) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _summaries(self, user_ids: List[str]) -> Dict[str, UserSummary]:
        ids = sorted(set(user_ids))
        marks = ",".join("?" for _ in ids)
        cur = await self.db.execute(f"SELECT * FROM users WHERE id IN ({marks})", ids)
        rows = await cur.fetchall()
        return {
            row["id"]: UserSummary(id=row["id"], name=row["name"], email=row["email"], avatar_url=row["avatar_url"])
            for row in rows
        }

    @staticmethod
    def _to_message(row: aiosqlite.Row, summaries: Dict[str, UserSummary]) -> Message:
        return Message(
            id=row["id"],
            from_id=row["from_id"],
            to_id=row["to_id"],
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
            seen=bool(row["seen"]),
            sender=summaries.get(row["from_id"]),
            receiver=summaries.get(row["to_id"]),
        )


__all__ = ["RelationshipOracle", "MessageStore", "SqliteStore", "SCHEMA"]
