from __future__ import annotations

import logging
from enum import Enum
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, Optional

from . import proto
from .auth import Authenticator
from .delivery import DeliveryCoordinator
from .errors import Forbidden, InvalidRequest, RelayError, RelayFailed, Unauthenticated
from .history import HistoryService
from .registry import OVERFLOW_DROP, Connection, ConnectionRegistry, Transport

log = logging.getLogger("dmrelay.gateway")


class SessionState(str, Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


class Gateway:
    """Owns live-connection lifecycles and hands inbound frames to the core services."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        coordinator: DeliveryCoordinator,
        history: HistoryService,
        authenticator: Authenticator,
        *,
        send_buffer: int = 64,
        overflow_policy: str = OVERFLOW_DROP,
    ) -> None:
        self.registry = registry
        self.coordinator = coordinator
        self.history = history
        self.authenticator = authenticator
        self.send_buffer = send_buffer
        self.overflow_policy = overflow_policy

    def open_session(self, transport: Transport) -> "Session":
        return Session(self, transport)

    async def serve(self, transport: Transport, frames: AsyncIterable[str | bytes]) -> None:
        """Run one session until the transport's inbound stream ends."""

        session = self.open_session(transport)
        try:
            async for raw in frames:
                await session.handle(raw)
        finally:
            await session.close()


class Session:
    """One live channel: CONNECTING → JOINED → DISCONNECTED.

    DISCONNECTED is terminal. A reconnect gets a new Session and a new Connection.
    """

    def __init__(self, gateway: Gateway, transport: Transport) -> None:
        self.gateway = gateway
        self.transport = transport
        self.state = SessionState.CONNECTING
        self.identity: Optional[str] = None
        self.connection: Optional[Connection] = None
        self._handlers: Dict[str, Callable[[proto.Frame], Awaitable[None]]] = {
            proto.T_JOIN: self._on_join,
            proto.T_SEND: self._on_send,
            proto.T_HISTORY: self._on_history,
            proto.T_PARTNERS: self._on_partners,
            proto.T_LIST: self._on_list,
            proto.T_PING: self._on_ping,
        }

    async def handle(self, raw: str | bytes) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        try:
            frame = proto.parse_frame(raw)
            await self._handlers[frame.type](frame)
        except RelayError as exc:
            log.debug("Rejected frame from %s: %s %s", self.identity or "<anonymous>", exc.code, exc.detail)
            await self._reply_error(exc)

    async def close(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        if self.connection is not None:
            self.gateway.registry.unregister(self.connection.identity, self.connection)
            await self.connection.close()
            log.info("User %s disconnected", self.connection.identity)

    # ------------------------------------------------------------------
    # Frame handlers
    # ------------------------------------------------------------------

    async def _on_join(self, frame: proto.Frame) -> None:
        if self.state is SessionState.JOINED:
            raise InvalidRequest("already joined")
        token = frame.payload.get("token")
        claimed = frame.payload.get("user") or frame.from_
        if not isinstance(token, str) or not token:
            raise Unauthenticated("join requires a token")
        identity = self.gateway.authenticator.verify(token)
        if claimed and claimed != identity:
            raise Forbidden("token does not belong to the claimed user")

        conn = Connection(
            identity=identity,
            transport=self.transport,
            send_buffer=self.gateway.send_buffer,
            overflow_policy=self.gateway.overflow_policy,
        )
        conn.start()
        self.gateway.registry.register(identity, conn)
        self.identity = identity
        self.connection = conn
        self.state = SessionState.JOINED
        await self._reply(proto.T_JOINED, {"user": identity, "connected_at": conn.connected_at})

    async def _on_send(self, frame: proto.Frame) -> None:
        identity = self._require_joined()
        payload = frame.payload
        message = await self.gateway.coordinator.send(identity, payload.get("to"), payload.get("content"))
        await self._reply(proto.T_SENT, message.model_dump())

    async def _on_history(self, frame: proto.Frame) -> None:
        identity = self._require_joined()
        peer = frame.payload.get("with")
        messages = await self.gateway.history.get_history(identity, peer)
        await self._reply(proto.T_HISTORY, {"with": peer, "messages": [m.model_dump() for m in messages]})

    async def _on_partners(self, frame: proto.Frame) -> None:
        identity = self._require_joined()
        partners = await self.gateway.history.get_partners(identity)
        await self._reply(proto.T_PARTNERS, {"partners": partners})

    async def _on_list(self, frame: proto.Frame) -> None:
        self._require_joined()
        await self._reply(proto.T_ONLINE, {"users": self.gateway.registry.online()})

    async def _on_ping(self, frame: proto.Frame) -> None:
        await self._reply(proto.T_PONG, {})

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def _require_joined(self) -> str:
        if self.state is not SessionState.JOINED or not self.identity:
            raise Unauthenticated("join first")
        return self.identity

    async def _reply(self, type_: str, payload: Dict[str, Any]) -> None:
        await self._send_frame(proto.build_frame(type_, self.identity or "*", payload))

    async def _reply_error(self, exc: RelayError) -> None:
        await self._send_frame(proto.error_frame(self.identity or "*", exc.code, exc.detail))

    async def _send_frame(self, frame: Dict[str, Any]) -> None:
        # once joined, replies share the connection's buffer so they stay ordered with relays
        if self.connection is not None:
            try:
                await self.connection.send(frame)
            except RelayFailed as exc:
                log.debug("Reply to %s dropped: %s", self.identity, exc)
            return
        await self.transport.send(proto.dumps(frame))


__all__ = ["Gateway", "Session", "SessionState"]
