from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import json
import logging
import sys
from typing import Any, Dict, Optional

import httpx
import websockets
from websockets.asyncio.client import ClientConnection, connect

from dmrelay.core import proto

log = logging.getLogger("dmrelay.cmd.client")


async def login(http_url: str, username: str, password: str) -> str:
    async with httpx.AsyncClient(base_url=http_url, timeout=10.0) as client:
        resp = await client.post("/login", json={"username": username, "password": password})
    if resp.status_code != 200:
        raise SystemExit(f"login failed: {resp.status_code} {resp.text}")
    return resp.json()["token"]


class ClientApp:
    def __init__(self, server_url: str, user_id: str, token: str) -> None:
        self.server_url = server_url
        self.user_id = user_id
        self.token = token

        self.ws: Optional[ClientConnection] = None
        self.last_peer: Optional[str] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with connect(self.server_url) as ws:
            self.ws = ws
            await self._send_frame(proto.T_JOIN, {"user": self.user_id, "token": self.token})
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
        print("Commands: /tell <user> <msg>, /history <user>, /partners, /list, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                await self._handle_command(line)
            elif self.last_peer:
                await self._cmd_tell(self.last_peer, line)
            else:
                print("Use /tell <user> <msg> first")

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/tell" and len(parts) >= 3:
            await self._cmd_tell(parts[1], line.split(" ", 2)[2])
        elif cmd == "/history" and len(parts) == 2:
            await self._send_frame(proto.T_HISTORY, {"with": parts[1]})
        elif cmd == "/partners":
            await self._send_frame(proto.T_PARTNERS, {})
        elif cmd == "/list":
            await self._send_frame(proto.T_LIST, {})
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    async def _cmd_tell(self, target: str, text: str) -> None:
        self.last_peer = target
        await self._send_frame(proto.T_SEND, {"to": target, "content": text}, to=target)

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = proto.Frame.model_validate(json.loads(raw))
                except ValueError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(frame)
        except websockets.ConnectionClosed:
            print("Connection closed by server")
        self.stop_event.set()

    def _handle_incoming(self, frame: proto.Frame) -> None:
        p = frame.payload
        if frame.type == proto.T_DELIVER:
            self.last_peer = p.get("sender")
            print(f"[{p.get('sender')}] {p.get('content')}")
        elif frame.type == proto.T_SENT:
            log.debug("Message %s stored", p.get("id"))
        elif frame.type == proto.T_HISTORY:
            for m in p.get("messages", []):
                print(f"  {m['timestamp']} {m['sender']} -> {m['recipient']}: {m['content']}")
        elif frame.type == proto.T_PARTNERS:
            print("Partners: " + (", ".join(p.get("partners", [])) or "(none)"))
        elif frame.type == proto.T_ONLINE:
            print("Online: " + ", ".join(p.get("users", [])))
        elif frame.type == proto.T_JOINED:
            print(f"Joined as {p.get('user')}")
        elif frame.type == proto.T_ERROR:
            print(f"Error {p.get('code')}: {p.get('detail')}")

    async def _send_frame(self, type_: str, payload: Dict[str, Any], *, to: str = proto.SERVER_ID) -> None:
        assert self.ws is not None
        frame = proto.build_frame(type_, to, payload, from_=self.user_id)
        await self.ws.send(proto.dumps(frame))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Direct-message relay client")
    parser.add_argument("--server", default="ws://127.0.0.1:7001", help="Live channel URL")
    parser.add_argument("--http", default="http://127.0.0.1:8000", help="REST base URL")
    parser.add_argument("--user", required=True)
    parser.add_argument("--password", help="Prompted for when omitted")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    password = args.password or getpass.getpass(f"Password for {args.user}: ")
    token = asyncio.run(login(args.http, args.user, password))
    asyncio.run(ClientApp(args.server, args.user, token).run())


if __name__ == "__main__":
    main()
