from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

DEFAULT_LISTEN = "0.0.0.0:7001"
DEFAULT_HTTP_LISTEN = "0.0.0.0:8000"


def parse_listen(value: str) -> Tuple[str, int]:
    host, sep, port = str(value).rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"listen address must be host:port, got {value!r}")
    return host, int(port)


def load_config(path: Path | str) -> Dict[str, Any]:
    """Read the server YAML and check the few keys the runtime cannot default."""

    config = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(config, dict):
        raise ValueError("config root must be a mapping")
    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    parse_listen(config.get("listen", DEFAULT_LISTEN))
    http_listen = config.get("http_listen", DEFAULT_HTTP_LISTEN)
    if http_listen is not None:
        parse_listen(http_listen)
    auth = config.get("auth") or {}
    if not auth.get("secret"):
        raise ValueError("auth.secret is required")
    if not isinstance(auth.get("users") or {}, dict):
        raise ValueError("auth.users must map usernames to password hashes")


__all__ = ["load_config", "validate_config", "parse_listen", "DEFAULT_LISTEN", "DEFAULT_HTTP_LISTEN"]
