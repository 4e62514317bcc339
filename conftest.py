import json

import pytest

from dmrelay.core.auth import Authenticator
from dmrelay.core.delivery import DeliveryCoordinator
from dmrelay.core.gateway import Gateway
from dmrelay.core.history import HistoryService
from dmrelay.core.registry import ConnectionRegistry
from dmrelay.core.store import MemoryBackend, MessageStore


class FakeTransport:
    """Records every text frame written to it."""

    def __init__(self, fail=False):
        self.sent = []
        self.closed = False
        self.fail = fail

    async def send(self, text):
        if self.fail:
            raise ConnectionError("peer went away")
        self.sent.append(text)

    async def close(self):
        self.closed = True

    @property
    def frames(self):
        return [json.loads(t) for t in self.sent]

    def of_type(self, type_):
        return [f for f in self.frames if f["type"] == type_]


class Clock:
    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return MessageStore(MemoryBackend(), clock=clock)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def coordinator(store, registry):
    return DeliveryCoordinator(store, registry)


@pytest.fixture
def history(store):
    return HistoryService(store)


@pytest.fixture
def authenticator():
    users = {"alice": "plain$wonderland", "bob": "plain$builder", "carol": "plain$carols"}
    return Authenticator(users, "test-secret")


@pytest.fixture
def gateway(registry, coordinator, history, authenticator):
    return Gateway(registry, coordinator, history, authenticator)


@pytest.fixture
def make_transport():
    return FakeTransport
