from __future__ import annotations

from typing import List

from .errors import InvalidRequest
from .proto import Message
from .store import MessageStore


class HistoryService:
    """Read side over the message store. Independent of who is online."""

    def __init__(self, store: MessageStore) -> None:
        self.store = store

    async def get_history(self, user_a: str, user_b: str) -> List[Message]:
        _require(user_a=user_a, user_b=user_b)
        return await self.store.list_conversation(user_a, user_b)

    async def get_partners(self, user: str) -> List[str]:
        _require(user=user)
        return sorted(await self.store.list_partners(user))


def _require(**ids: str) -> None:
    for name, value in ids.items():
        if not isinstance(value, str) or not value:
            raise InvalidRequest(f"{name} is required")


__all__ = ["HistoryService"]
