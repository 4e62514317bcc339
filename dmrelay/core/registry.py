from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Protocol

from .errors import RelayFailed
from .proto import dumps, now_ms


"""
Connection Registry
-------------------
In-memory map from identity to the connection that currently receives that identity's live
deliveries. It is the only answer to "is this user online right now".

  • register:   last-registered-wins; the superseded connection is returned, not closed
  • lookup:     non-blocking
  • unregister: guarded; only removes the mapping if it still points at the given connection,
                so a stale disconnect cannot evict a newer connection after a reconnect race

All three take one coarse lock. They never await and never do I/O, so the lock is held for a
dict operation only and lookups do not queue behind slow work on other keys.
"""


log = logging.getLogger("dmrelay.registry")

OVERFLOW_DROP = "drop"
OVERFLOW_DISCONNECT = "disconnect"
OVERFLOW_POLICIES = {OVERFLOW_DROP, OVERFLOW_DISCONNECT}


class Transport(Protocol):
    def send(self, text: str) -> Awaitable[None]: ...

    def close(self) -> Awaitable[None]: ...


@dataclass(eq=False)
class Connection:
    """Live handle bound to one identity, with a bounded outbound buffer.

    A writer task drains the buffer to the transport, so pushing never waits on a slow peer.
    """

    identity: str
    transport: Transport
    send_buffer: int = 64
    overflow_policy: str = OVERFLOW_DROP
    connected_at: int = field(default_factory=now_ms)
    closed: bool = False
    _queue: asyncio.Queue = field(init=False, repr=False)
    _writer: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _closer: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _closing: asyncio.Event = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"unknown overflow policy: {self.overflow_policy}")
        if self.send_buffer < 1:
            raise ValueError("send_buffer must be positive")
        self._queue = asyncio.Queue(maxsize=self.send_buffer)
        self._closing = asyncio.Event()

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain(), name=f"writer:{self.identity}")

    def push(self, frame: Dict[str, Any]) -> None:
        """Enqueue without waiting. Raises RelayFailed if the frame cannot be queued."""

        if self.closed:
            raise RelayFailed(f"connection for {self.identity} is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            if self.overflow_policy == OVERFLOW_DISCONNECT:
                log.warning("Send buffer full for %s; disconnecting", self.identity)
                self._abort()
                raise RelayFailed(f"send buffer full for {self.identity}; disconnected") from None
            raise RelayFailed(f"send buffer full for {self.identity}; frame dropped") from None

    async def send(self, frame: Dict[str, Any]) -> None:
        """Enqueue a reply for this connection's own session, waiting for buffer space.

        The wait ends early with RelayFailed if the connection is closed meanwhile.
        """

        if self.closed:
            raise RelayFailed(f"connection for {self.identity} is closed")
        if not self._queue.full():
            self._queue.put_nowait(frame)
            return
        put = asyncio.ensure_future(self._queue.put(frame))
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({put, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closing.cancel()
            if not put.done():
                put.cancel()
        if self.closed:
            raise RelayFailed(f"connection for {self.identity} closed while sending")

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the transport."""

        if self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def close(self) -> None:
        self._mark_closed()
        if self._writer is not None:
            self._writer.cancel()
        self._discard_pending()
        tasks = [t for t in (self._writer, self._closer) if t is not None]
        await asyncio.gather(*tasks, return_exceptions=True)

    def _mark_closed(self) -> None:
        self.closed = True
        self._closing.set()

    def _abort(self) -> None:
        self._mark_closed()
        if self._writer is not None:
            self._writer.cancel()
        self._discard_pending()
        self._closer = asyncio.create_task(self.transport.close(), name=f"close:{self.identity}")
        self._closer.add_done_callback(self._log_close_failure)

    def _log_close_failure(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            log.warning("Closing transport for %s failed: %s", self.identity, task.exception())

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.transport.send(dumps(frame))
            except Exception as exc:  # transport died; the reader side will unregister us
                log.warning("Write to %s failed: %s", self.identity, exc)
                self._mark_closed()
                self._queue.task_done()
                self._discard_pending()
                return
            self._queue.task_done()

    def _discard_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()


class ConnectionRegistry:
    """identity → current Connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}

    def register(self, identity: str, connection: Connection) -> Optional[Connection]:
        if not identity:
            raise ValueError("identity is required")
        with self._lock:
            previous = self._connections.get(identity)
            self._connections[identity] = connection
        if previous is not None and previous is not connection:
            log.info("Connection for %s replaced", identity)
            return previous
        log.info("Registered %s", identity)
        return None

    def lookup(self, identity: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(identity)

    def unregister(self, identity: str, connection: Connection) -> bool:
        with self._lock:
            if self._connections.get(identity) is not connection:
                removed = False
            else:
                del self._connections[identity]
                removed = True
        if removed:
            log.info("Unregistered %s", identity)
        else:
            log.debug("Ignored stale unregister for %s", identity)
        return removed

    def online(self) -> List[str]:
        with self._lock:
            return sorted(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


__all__ = [
    "Connection",
    "ConnectionRegistry",
    "Transport",
    "OVERFLOW_DROP",
    "OVERFLOW_DISCONNECT",
    "OVERFLOW_POLICIES",
]
