from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import aiosqlite

from .errors import StorageUnavailable
from .proto import Message, now_ms


"""
Message Store
-------------
Durable, ordered persistence of direct messages keyed by conversation.

A conversation key is the sorted pair of the two participants, so a conversation is found
the same way whichever side sent a given message. Every backend stores both members of the
normalized pair and assigns a strictly increasing ``seq`` per key, so replay order never
depends on wall-clock resolution.

Backend contract
================
- append(key, ...)     → Message  (append-only; assigns seq and a store-wide unique id)
- range(key)           → [Message] in (timestamp, id) order
- touching(identity)   → [key] for every conversation the identity takes part in
- last_timestamp(key)  → int | None
Backends raise StorageUnavailable for any failure and leave no partial write behind.
"""


log = logging.getLogger("dmrelay.store")

ConversationKey = Tuple[str, str]
ClockFn = Callable[[], int]


def conversation_key(user_a: str, user_b: str) -> ConversationKey:
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


# -------------------------------
# Backends
# -------------------------------

class MessageBackend(ABC):
    """Durable ordered storage used by MessageStore."""

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def last_timestamp(self, key: ConversationKey) -> Optional[int]:
        ...

    @abstractmethod
    async def append(
        self,
        key: ConversationKey,
        sender: str,
        recipient: str,
        content: str,
        timestamp: int,
    ) -> Message:
        ...

    @abstractmethod
    async def range(self, key: ConversationKey) -> List[Message]:
        ...

    @abstractmethod
    async def touching(self, identity: str) -> List[ConversationKey]:
        ...


class MemoryBackend(MessageBackend):
    """Process-local backend. Nothing survives a restart."""

    def __init__(self) -> None:
        self._conversations: Dict[ConversationKey, List[Message]] = {}
        self._by_user: Dict[str, Set[ConversationKey]] = {}
        self._next_id = 1

    async def last_timestamp(self, key: ConversationKey) -> Optional[int]:
        items = self._conversations.get(key)
        return items[-1].timestamp if items else None

    async def append(self, key, sender, recipient, content, timestamp) -> Message:
        items = self._conversations.setdefault(key, [])
        message = Message(
            id=self._next_id,
            sender=sender,
            recipient=recipient,
            content=content,
            timestamp=timestamp,
            seq=len(items) + 1,
        )
        self._next_id += 1
        items.append(message)
        for member in key:
            self._by_user.setdefault(member, set()).add(key)
        return message

    async def range(self, key: ConversationKey) -> List[Message]:
        return list(self._conversations.get(key, ()))

    async def touching(self, identity: str) -> List[ConversationKey]:
        return sorted(self._by_user.get(identity, ()))


_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages(
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    user_lo   TEXT    NOT NULL,
    user_hi   TEXT    NOT NULL,
    seq       INTEGER NOT NULL,
    sender    TEXT    NOT NULL,
    recipient TEXT    NOT NULL,
    content   TEXT    NOT NULL,
    ts        INTEGER NOT NULL,
    UNIQUE (user_lo, user_hi, seq)
);
CREATE INDEX IF NOT EXISTS messages_user_hi ON messages(user_hi);
"""


class SQLiteBackend(MessageBackend):
    """aiosqlite-backed store: one row per message, one transaction per append."""

    def __init__(self, path: str | Path = "dmrelay.db") -> None:
        self.path = str(path)
        self._db: Optional[aiosqlite.Connection] = None
        # one connection: reads must not observe another append's open transaction
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.path)
            await self._db.executescript(_SCHEMA)
            await self._db.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"cannot open {self.path}: {exc}") from exc
        log.info("Opened message database %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageUnavailable("message database is not open")
        return self._db

    async def last_timestamp(self, key: ConversationKey) -> Optional[int]:
        db = self._conn()
        async with self._lock:
            try:
                async with db.execute(
                    "SELECT MAX(ts) FROM messages WHERE user_lo=? AND user_hi=?", key
                ) as cur:
                    row = await cur.fetchone()
            except (sqlite3.Error, ValueError) as exc:
                raise StorageUnavailable(str(exc)) from exc
        return row[0] if row else None

    async def append(self, key, sender, recipient, content, timestamp) -> Message:
        db = self._conn()
        async with self._lock:
            try:
                async with db.execute(
                    "SELECT COALESCE(MAX(seq), 0) FROM messages WHERE user_lo=? AND user_hi=?", key
                ) as cur:
                    row = await cur.fetchone()
                seq = row[0] + 1
                cur = await db.execute(
                    "INSERT INTO messages(user_lo, user_hi, seq, sender, recipient, content, ts) "
                    "VALUES(?,?,?,?,?,?,?)",
                    (key[0], key[1], seq, sender, recipient, content, timestamp),
                )
                message_id = cur.lastrowid
                await cur.close()
                await db.commit()
            except (sqlite3.Error, ValueError) as exc:
                await self._rollback(db)
                raise StorageUnavailable(f"append failed: {exc}") from exc
            except BaseException:
                await self._rollback(db)
                raise
        return Message(
            id=message_id,
            sender=sender,
            recipient=recipient,
            content=content,
            timestamp=timestamp,
            seq=seq,
        )

    async def range(self, key: ConversationKey) -> List[Message]:
        db = self._conn()
        async with self._lock:
            try:
                async with db.execute(
                    "SELECT id, sender, recipient, content, ts, seq FROM messages "
                    "WHERE user_lo=? AND user_hi=? ORDER BY ts, id",
                    key,
                ) as cur:
                    rows = await cur.fetchall()
            except (sqlite3.Error, ValueError) as exc:
                raise StorageUnavailable(str(exc)) from exc
        return [
            Message(id=r[0], sender=r[1], recipient=r[2], content=r[3], timestamp=r[4], seq=r[5])
            for r in rows
        ]

    async def touching(self, identity: str) -> List[ConversationKey]:
        db = self._conn()
        async with self._lock:
            try:
                async with db.execute(
                    "SELECT DISTINCT user_lo, user_hi FROM messages WHERE user_lo=? OR user_hi=? "
                    "ORDER BY user_lo, user_hi",
                    (identity, identity),
                ) as cur:
                    rows = await cur.fetchall()
            except (sqlite3.Error, ValueError) as exc:
                raise StorageUnavailable(str(exc)) from exc
        return [(r[0], r[1]) for r in rows]

    @staticmethod
    async def _rollback(db: aiosqlite.Connection) -> None:
        try:
            await db.rollback()
        except (sqlite3.Error, ValueError):
            log.exception("Rollback failed")


def open_backend(config: Dict[str, Any]) -> MessageBackend:
    """Build (not open) the backend named by the ``store`` config section."""

    section = config.get("store") or {}
    kind = section.get("backend", "sqlite")
    if kind == "memory":
        return MemoryBackend()
    if kind == "sqlite":
        return SQLiteBackend(section.get("path", "data/dmrelay.db"))
    raise ValueError(f"unknown store backend: {kind}")


# -------------------------------
# Store
# -------------------------------

@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class MessageStore:
    """Assigns positions to messages and answers conversation queries."""

    def __init__(self, backend: MessageBackend, *, clock: ClockFn = now_ms) -> None:
        self.backend = backend
        self.clock = clock
        # appends to one conversation are serialized; different conversations are not.
        # An entry lives only while some append holds or waits for it.
        self._locks: Dict[ConversationKey, _KeyLock] = {}

    @asynccontextmanager
    async def _conversation_lock(self, key: ConversationKey) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def append(self, sender: str, recipient: str, content: str) -> Message:
        key = conversation_key(sender, recipient)
        async with self._conversation_lock(key):
            last = await self.backend.last_timestamp(key)
            ts = self.clock()
            if last is not None and ts < last:
                ts = last  # clock stepped back; keep timestamps non-decreasing
            message = await self.backend.append(key, sender, recipient, content, ts)
        log.debug("Stored message %d (%s -> %s, seq=%d)", message.id, sender, recipient, message.seq)
        return message

    async def list_conversation(self, user_a: str, user_b: str) -> List[Message]:
        return await self.backend.range(conversation_key(user_a, user_b))

    async def list_partners(self, user: str) -> Set[str]:
        partners: Set[str] = set()
        for lo, hi in await self.backend.touching(user):
            other = hi if lo == user else lo
            if other != user:
                partners.add(other)
        return partners


__all__ = [
    "ConversationKey",
    "conversation_key",
    "MessageBackend",
    "MemoryBackend",
    "SQLiteBackend",
    "open_backend",
    "MessageStore",
]
