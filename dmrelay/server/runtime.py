from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import uvicorn
import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from dmrelay.core.auth import Authenticator
from dmrelay.core.delivery import DeliveryCoordinator
from dmrelay.core.gateway import Gateway
from dmrelay.core.history import HistoryService
from dmrelay.core.registry import OVERFLOW_DROP, ConnectionRegistry
from dmrelay.core.store import MessageBackend, MessageStore, open_backend
from dmrelay.server.config import DEFAULT_HTTP_LISTEN, DEFAULT_LISTEN, parse_listen
from dmrelay.server.http import create_app

log = logging.getLogger("dmrelay.server.runtime")


class ServerRuntime:
    """Wires the core services together and serves the live channel and the REST surface."""

    def __init__(self, config: Dict[str, Any], *, backend: Optional[MessageBackend] = None) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = parse_listen(config.get("listen", DEFAULT_LISTEN))
        http_listen = config.get("http_listen", DEFAULT_HTTP_LISTEN)
        self.http_addr = parse_listen(http_listen) if http_listen is not None else None

        self.backend = backend if backend is not None else open_backend(config)
        self.store = MessageStore(self.backend)
        self.registry = ConnectionRegistry()
        self.coordinator = DeliveryCoordinator.from_config(self.store, self.registry, config)
        self.history = HistoryService(self.store)
        self.authenticator = Authenticator.from_config(config)

        conn_cfg = config.get("connection") or {}
        self.gateway = Gateway(
            self.registry,
            self.coordinator,
            self.history,
            self.authenticator,
            send_buffer=int(conn_cfg.get("send_buffer", 64)),
            overflow_policy=conn_cfg.get("overflow_policy", OVERFLOW_DROP),
        )
        self.app = create_app(self.coordinator, self.history, self.authenticator, self.registry)

        self._ws_server: Optional[Server] = None
        self._http_server: Optional[uvicorn.Server] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.backend.open()

        self._ws_server = await serve(self._handle_connection, self.listen_host, self.listen_port)
        log.info("Live channel listening on ws://%s:%d", self.listen_host, self.bound_port)

        if self.http_addr is not None:
            host, port = self.http_addr
            http_cfg = uvicorn.Config(self.app, host=host, port=port, log_config=None, lifespan="off")
            self._http_server = uvicorn.Server(http_cfg)
            self._tasks.append(asyncio.create_task(self._http_server.serve(), name="http"))
            log.info("REST surface listening on http://%s:%d", host, port)

    async def stop(self) -> None:
        if self._http_server is not None:
            self._http_server.should_exit = True
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._http_server = None

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        await self.backend.close()

    @property
    def bound_port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        remote = self._fmt_remote(websocket)
        log.debug("Accepted connection from %s", remote)
        try:
            await self.gateway.serve(websocket, websocket)
        except websockets.ConnectionClosed:
            pass
        log.debug("Connection from %s closed", remote)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime"]
