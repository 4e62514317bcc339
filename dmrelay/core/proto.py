from __future__ import annotations

import json
import time
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidRequest


# ---------------------------------------------------------------------------
# Frame types carried over the live channel
# ---------------------------------------------------------------------------

# client -> server
T_JOIN = "join"
T_SEND = "send"
T_HISTORY = "history"
T_PARTNERS = "partners"
T_LIST = "list"
T_PING = "ping"

# server -> client
T_JOINED = "joined"
T_SENT = "sent"
T_DELIVER = "deliver"
T_ONLINE = "online"
T_PONG = "pong"
T_ERROR = "error"

CLIENT_TYPES = {T_JOIN, T_SEND, T_HISTORY, T_PARTNERS, T_LIST, T_PING}

SERVER_ID = "server"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Frame(BaseModel):
    """JSON frame exchanged over the live WebSocket channel."""

    type: str
    from_: str = Field(default="", alias="from")
    to: str = ""
    ts: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


class Message(BaseModel):
    """A persisted direct message. Immutable once the store hands it out."""

    id: int
    sender: str
    recipient: str
    content: str
    timestamp: int
    seq: int

    model_config = ConfigDict(frozen=True)

    def sort_key(self) -> tuple[int, int]:
        return (self.timestamp, self.id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def build_frame(
    type: str,
    to: str,
    payload: Dict[str, Any],
    *,
    from_: str = SERVER_ID,
    ts: int | None = None,
) -> Dict[str, Any]:
    """Create a frame dict ready for ``dumps``."""

    return {
        "type": type,
        "from": from_,
        "to": to,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


def deliver_frame(message: Message) -> Dict[str, Any]:
    payload = {
        "id": message.id,
        "sender": message.sender,
        "recipient": message.recipient,
        "content": message.content,
        "timestamp": message.timestamp,
    }
    return build_frame(T_DELIVER, message.recipient, payload)


def error_frame(to: str, code: str, detail: str) -> Dict[str, Any]:
    return build_frame(T_ERROR, to or "*", {"code": code, "detail": detail})


def parse_frame(raw: str | bytes) -> Frame:
    """Decode one inbound text frame; raises InvalidRequest on anything malformed."""

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"invalid json: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidRequest("frame must be an object")
    try:
        frame = Frame.model_validate(data)
    except ValidationError as exc:
        raise InvalidRequest(f"invalid frame: {exc.errors()[0]['msg']}") from exc
    if frame.type not in CLIENT_TYPES:
        raise InvalidRequest(f"unsupported type {frame.type}")
    return frame


def dumps(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


__all__ = [
    "Frame",
    "Message",
    "CLIENT_TYPES",
    "now_ms",
    "build_frame",
    "deliver_frame",
    "error_frame",
    "parse_frame",
    "dumps",
]
