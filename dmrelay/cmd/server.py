from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import signal
from pathlib import Path
from typing import Any, Dict

from dmrelay.core.auth import hash_password
from dmrelay.server.config import load_config
from dmrelay.server.runtime import ServerRuntime

log = logging.getLogger("dmrelay.cmd.server")


async def _run(config: Dict[str, Any]) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Direct-message relay server")
    parser.add_argument("--config", required=True, help="Path to server YAML config")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config))
    level = str(config.get("log_level", "INFO")).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


def hash_password_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Print an auth.users entry for the server config")
    parser.add_argument("username")
    args = parser.parse_args(argv)
    password = getpass.getpass(f"Password for {args.username}: ")
    print(f"{args.username}: \"{hash_password(password)}\"")


if __name__ == "__main__":
    main()
