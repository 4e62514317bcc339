from __future__ import annotations

import logging
from typing import Any, Dict

from .errors import InvalidRequest, RelayFailed
from .proto import Message, deliver_frame
from .registry import ConnectionRegistry
from .store import MessageStore

log = logging.getLogger("dmrelay.delivery")

DEFAULT_MAX_CONTENT_LENGTH = 4096


class DeliveryCoordinator:
    """Persists a message, then relays it to the recipient's live connection if there is one.

    The store is authoritative and is written first. Live relay is best-effort: a recipient
    that is offline, or whose connection fails mid-push, still finds the message in history.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: ConnectionRegistry,
        *,
        allow_self_messages: bool = True,
        max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
    ) -> None:
        self.store = store
        self.registry = registry
        self.allow_self_messages = allow_self_messages
        self.max_content_length = max_content_length

    @classmethod
    def from_config(cls, store: MessageStore, registry: ConnectionRegistry, config: Dict[str, Any]) -> "DeliveryCoordinator":
        section = config.get("delivery") or {}
        return cls(
            store,
            registry,
            allow_self_messages=bool(section.get("allow_self_messages", True)),
            max_content_length=int(section.get("max_content_length", DEFAULT_MAX_CONTENT_LENGTH)),
        )

    async def send(self, sender: str, recipient: str, content: str) -> Message:
        self._validate(sender, recipient, content)

        # StorageUnavailable propagates: nothing was sent, nothing is relayed
        message = await self.store.append(sender, recipient, content)

        self._relay(message)
        return message

    def _validate(self, sender: Any, recipient: Any, content: Any) -> None:
        for name, value in (("sender", sender), ("recipient", recipient), ("content", content)):
            if not isinstance(value, str) or not value:
                raise InvalidRequest(f"{name} is required")
        if len(content) > self.max_content_length:
            raise InvalidRequest(f"content exceeds {self.max_content_length} characters")
        if sender == recipient and not self.allow_self_messages:
            raise InvalidRequest("messages to yourself are disabled")

    def _relay(self, message: Message) -> bool:
        conn = self.registry.lookup(message.recipient)
        if conn is None:
            log.debug("Recipient %s offline; message %d kept for history", message.recipient, message.id)
            return False
        try:
            conn.push(deliver_frame(message))
        except RelayFailed as exc:
            log.warning("Live relay of message %d to %s failed: %s", message.id, message.recipient, exc)
            return False
        log.info("Relayed message %d from %s to %s", message.id, message.sender, message.recipient)
        return True


__all__ = ["DeliveryCoordinator", "DEFAULT_MAX_CONTENT_LENGTH"]
