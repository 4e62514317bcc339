# tests/test_gateway.py
from __future__ import annotations

import asyncio
import json

import pytest

from dmrelay.core.gateway import Gateway, SessionState


def frame(type_, **payload):
    return json.dumps({"type": type_, "from": payload.pop("from_", ""), "to": "server", "ts": 1, "payload": payload})


async def joined_session(gateway, authenticator, make_transport, user):
    t = make_transport()
    s = gateway.open_session(t)
    await s.handle(frame("join", user=user, token=authenticator.issue(user)))
    await s.connection.flush()
    return s, t


async def settle(*sessions):
    for s in sessions:
        if s.connection is not None:
            await s.connection.flush()


# -----------------------------
# join
# -----------------------------

@pytest.mark.asyncio
async def test_join_registers_and_acknowledges(gateway, registry, authenticator, make_transport):
    s, t = await joined_session(gateway, authenticator, make_transport, "alice")

    assert s.state is SessionState.JOINED
    assert registry.lookup("alice") is s.connection
    joined = t.of_type("joined")
    assert len(joined) == 1 and joined[0]["payload"]["user"] == "alice"
    await s.close()


@pytest.mark.asyncio
async def test_join_with_bad_token_is_rejected(gateway, registry, make_transport):
    t = make_transport()
    s = gateway.open_session(t)
    await s.handle(frame("join", user="alice", token="garbage"))

    assert s.state is SessionState.CONNECTING
    assert registry.lookup("alice") is None
    assert t.of_type("error")[0]["payload"]["code"] == "UNAUTHENTICATED"


@pytest.mark.asyncio
async def test_join_with_someone_elses_token_is_forbidden(gateway, registry, authenticator, make_transport):
    t = make_transport()
    s = gateway.open_session(t)
    await s.handle(frame("join", user="alice", token=authenticator.issue("bob")))

    assert s.state is SessionState.CONNECTING
    assert registry.online() == []
    assert t.of_type("error")[0]["payload"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_second_join_rejected(gateway, authenticator, make_transport):
    s, t = await joined_session(gateway, authenticator, make_transport, "alice")
    await s.handle(frame("join", user="alice", token=authenticator.issue("alice")))
    await settle(s)
    assert t.of_type("error")[0]["payload"]["code"] == "INVALID_REQUEST"
    await s.close()


# -----------------------------
# traffic before join
# -----------------------------

@pytest.mark.asyncio
async def test_send_before_join_is_rejected_not_forwarded(gateway, history, make_transport):
    t = make_transport()
    s = gateway.open_session(t)
    await s.handle(frame("send", to="bob", content="sneaky", from_="alice"))

    assert t.of_type("error")[0]["payload"]["code"] == "UNAUTHENTICATED"
    assert await history.get_history("alice", "bob") == []
    assert s.state is SessionState.CONNECTING
    assert t.closed is False


@pytest.mark.asyncio
async def test_malformed_frames_get_error(gateway, make_transport):
    t = make_transport()
    s = gateway.open_session(t)
    await s.handle("{not json")
    await s.handle(json.dumps(["a", "list"]))
    await s.handle(json.dumps({"type": "teleport"}))

    codes = [f["payload"]["code"] for f in t.of_type("error")]
    assert codes == ["INVALID_REQUEST"] * 3


@pytest.mark.asyncio
async def test_ping_works_without_join(gateway, make_transport):
    t = make_transport()
    s = gateway.open_session(t)
    await s.handle(frame("ping"))
    assert len(t.of_type("pong")) == 1


# -----------------------------
# send / relay
# -----------------------------

@pytest.mark.asyncio
async def test_send_between_online_users(gateway, authenticator, history, make_transport):
    alice, ta = await joined_session(gateway, authenticator, make_transport, "alice")
    bob, tb = await joined_session(gateway, authenticator, make_transport, "bob")

    await alice.handle(frame("send", to="bob", content="hello"))
    await settle(alice, bob)

    delivered = tb.of_type("deliver")
    assert len(delivered) == 1
    assert delivered[0]["payload"]["sender"] == "alice"
    assert delivered[0]["payload"]["content"] == "hello"

    # sender gets the persisted message back, never a deliver echo
    sent = ta.of_type("sent")
    assert len(sent) == 1 and sent[0]["payload"]["content"] == "hello"
    assert ta.of_type("deliver") == []

    msgs = await history.get_history("bob", "alice")
    assert [m.content for m in msgs] == ["hello"]
    assert msgs[0].id == sent[0]["payload"]["id"] == delivered[0]["payload"]["id"]
    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_offline_recipient_then_join_and_query(gateway, authenticator, make_transport):
    alice, ta = await joined_session(gateway, authenticator, make_transport, "alice")
    await alice.handle(frame("send", to="bob", content="hi"))
    await settle(alice)
    assert len(ta.of_type("sent")) == 1

    bob, tb = await joined_session(gateway, authenticator, make_transport, "bob")
    assert tb.of_type("deliver") == []  # no replay push on join

    await bob.handle(frame("history", **{"with": "alice"}))
    await settle(bob)
    hist = tb.of_type("history")[0]["payload"]["messages"]
    assert [(m["sender"], m["content"]) for m in hist] == [("alice", "hi")]
    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_send_with_missing_content_reports_error(gateway, authenticator, make_transport):
    alice, ta = await joined_session(gateway, authenticator, make_transport, "alice")
    await alice.handle(frame("send", to="bob"))
    await settle(alice)
    assert ta.of_type("error")[0]["payload"]["code"] == "INVALID_REQUEST"
    await alice.close()


@pytest.mark.asyncio
async def test_partners_and_list(gateway, authenticator, make_transport):
    alice, ta = await joined_session(gateway, authenticator, make_transport, "alice")
    bob, _ = await joined_session(gateway, authenticator, make_transport, "bob")
    await alice.handle(frame("send", to="carol", content="yo"))
    await alice.handle(frame("partners"))
    await alice.handle(frame("list"))
    await settle(alice)

    assert ta.of_type("partners")[0]["payload"]["partners"] == ["carol"]
    assert ta.of_type("online")[0]["payload"]["users"] == ["alice", "bob"]
    await alice.close()
    await bob.close()


# -----------------------------
# disconnect
# -----------------------------

@pytest.mark.asyncio
async def test_close_unregisters_and_is_terminal(gateway, registry, authenticator, make_transport):
    s, t = await joined_session(gateway, authenticator, make_transport, "alice")
    await s.close()

    assert s.state is SessionState.DISCONNECTED
    assert registry.lookup("alice") is None

    before = len(t.sent)
    await s.handle(frame("ping"))
    assert len(t.sent) == before


@pytest.mark.asyncio
async def test_stale_session_close_keeps_reconnected_session(gateway, registry, authenticator, make_transport):
    old, _ = await joined_session(gateway, authenticator, make_transport, "alice")
    new, _ = await joined_session(gateway, authenticator, make_transport, "alice")

    await old.close()

    assert registry.lookup("alice") is new.connection
    await new.close()
    assert registry.lookup("alice") is None


@pytest.mark.asyncio
async def test_serve_runs_until_stream_ends(gateway, registry, authenticator, make_transport):
    t = make_transport()
    token = authenticator.issue("alice")

    async def frames():
        yield frame("join", user="alice", token=token)
        yield frame("ping")

    await gateway.serve(t, frames())

    assert registry.lookup("alice") is None


class StalledTransport:
    """Accepts the first write and never finishes it, like a peer that stopped reading."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._never = asyncio.Event()

    async def send(self, text):
        self.sent.append(text)
        await self._never.wait()

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_disconnect_overflow_releases_pending_reply(registry, coordinator, history, authenticator):
    gateway = Gateway(registry, coordinator, history, authenticator, send_buffer=1, overflow_policy="disconnect")
    t = StalledTransport()
    s = gateway.open_session(t)
    await s.handle(frame("join", user="bob", token=authenticator.issue("bob")))
    await asyncio.sleep(0)  # writer takes "joined" and blocks on the peer
    await s.handle(frame("ping"))  # fills the buffer
    pending = asyncio.create_task(s.handle(frame("ping")))
    await asyncio.sleep(0)
    assert not pending.done()

    await coordinator.send("alice", "bob", "hi")

    await asyncio.wait_for(pending, 1.0)
    await s.close()
    assert t.closed is True
    assert registry.lookup("bob") is None
