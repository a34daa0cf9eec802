"""
Unit tests for the protocol state machine
"""
import asyncio

import pytest

from parley_server.codec import Envelope, MessageType
from conftest import flush


def env(kind, sender=None, to=None, text=None):
    return Envelope(kind, sender, to, text, 0)


def seen(session):
    return [(e.type, e.text) for e in session.writer.envelopes()]


async def connected(registry, make_session, count):
    sessions = [make_session() for _ in range(count)]
    for session in sessions:
        await registry.register_unnamed(session)
    return sessions


async def joined(router, registry, make_session, *names):
    sessions = await connected(registry, make_session, len(names))
    for session, name in zip(sessions, names):
        assert await router.handle(session, env(MessageType.JOIN, name))
    await flush(*sessions)
    for session in sessions:
        session.writer.buffer.clear()
    return sessions


@pytest.mark.fast
@pytest.mark.asyncio
async def test_join_announces_and_pushes_userlist(relay, make_session):
    registry, _, router = relay
    amy, lurker = await connected(registry, make_session, 2)

    assert await router.handle(amy, env(MessageType.JOIN, "amy"))
    await flush(amy, lurker)
    expected = [("sys", "amy joined"), ("userlist", "amy")]
    assert seen(amy) == expected
    # unnamed sessions receive broadcasts too
    assert seen(lurker) == expected
    assert amy.username == "amy"


@pytest.mark.fast
@pytest.mark.asyncio
async def test_userlist_sorted_not_arrival_order(relay, make_session):
    registry, _, router = relay
    sessions = await connected(registry, make_session, 3)
    for session, name in zip(sessions, ["cid", "amy", "bob"]):
        await router.handle(session, env(MessageType.JOIN, name))
    await flush(*sessions)
    lists = [text for kind, text in seen(sessions[0]) if kind == "userlist"]
    assert lists == ["cid", "amy,cid", "amy,bob,cid"]


@pytest.mark.fast
@pytest.mark.asyncio
@pytest.mark.parametrize("name", [None, "", "   "])
async def test_join_without_name_stays_unnamed(relay, make_session, name):
    registry, _, router = relay
    session, other = await connected(registry, make_session, 2)

    assert await router.handle(session, env(MessageType.JOIN, name))
    await flush(session, other)
    assert seen(session) == [("sys", "Missing username")]
    assert seen(other) == []
    assert session.username is None


@pytest.mark.fast
@pytest.mark.asyncio
async def test_duplicate_join_rejected_and_closed_silently(relay, make_session):
    registry, _, router = relay
    amy, = await joined(router, registry, make_session, "amy")
    impostor, = await connected(registry, make_session, 1)

    assert not await router.handle(impostor, env(MessageType.JOIN, "amy"))
    await router.depart(impostor)
    await flush(amy)
    assert seen(impostor) == [("sys", "Username already used")]
    assert impostor.writer.closed
    assert seen(amy) == []
    assert registry.lookup("amy") is amy
    assert await registry.snapshot_names() == ["amy"]


@pytest.mark.fast
@pytest.mark.asyncio
async def test_rejoin_while_named_is_ignored(relay, make_session):
    registry, _, router = relay
    amy, bob = await joined(router, registry, make_session, "amy", "bob")

    assert await router.handle(amy, env(MessageType.JOIN, "amelia"))
    await flush(amy, bob)
    assert seen(amy) == []
    assert seen(bob) == []
    assert amy.username == "amy"
    assert await registry.snapshot_names() == ["amy", "bob"]


@pytest.mark.fast
@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["msg", "pm", "typing", "stoptyping"])
async def test_named_only_types_rejected_before_join(relay, make_session, kind):
    registry, _, router = relay
    bob, = await joined(router, registry, make_session, "bob")
    stranger, = await connected(registry, make_session, 1)

    assert await router.handle(stranger, env(kind, "stranger", "bob", "hello"))
    await flush(stranger, bob)
    assert seen(stranger) == [("sys", "You must join first")]
    assert seen(bob) == []


@pytest.mark.fast
@pytest.mark.asyncio
async def test_msg_broadcast_uses_session_name(relay, make_session):
    registry, _, router = relay
    amy, bob = await joined(router, registry, make_session, "amy", "bob")

    assert await router.handle(amy, env(MessageType.MSG, "spoofed", text="hello"))
    await flush(amy, bob)
    for session in (amy, bob):
        envelopes = session.writer.envelopes()
        assert len(envelopes) == 1
        assert envelopes[0].type == MessageType.MSG
        assert envelopes[0].sender == "amy"
        assert envelopes[0].text == "hello"
        assert envelopes[0].ts > 0


@pytest.mark.fast
@pytest.mark.asyncio
async def test_pm_delivers_to_target_and_echoes_sender(relay, make_session):
    registry, _, router = relay
    amy, bob, cid = await joined(router, registry, make_session, "amy", "bob", "cid")

    assert await router.handle(amy, env(MessageType.PM, to="bob", text="psst"))
    await flush(amy, bob, cid)
    for session in (amy, bob):
        envelopes = session.writer.envelopes()
        assert len(envelopes) == 1
        assert (envelopes[0].type, envelopes[0].sender, envelopes[0].to, envelopes[0].text) == \
            ("pm", "amy", "bob", "psst")
    assert seen(cid) == []


@pytest.mark.fast
@pytest.mark.asyncio
async def test_pm_to_self_delivered_once(relay, make_session):
    registry, _, router = relay
    amy, bob = await joined(router, registry, make_session, "amy", "bob")

    await router.handle(amy, env(MessageType.PM, to="amy", text="note to self"))
    await flush(amy, bob)
    assert seen(amy) == [("pm", "note to self")]
    assert seen(bob) == []


@pytest.mark.fast
@pytest.mark.asyncio
@pytest.mark.parametrize("to,error", [
    (None, "PM requires 'to'"),
    ("", "PM requires 'to'"),
    ("zed", "User 'zed' not found"),
])
async def test_pm_errors_go_to_sender_only(relay, make_session, to, error):
    registry, _, router = relay
    amy, bob = await joined(router, registry, make_session, "amy", "bob")

    assert await router.handle(amy, env(MessageType.PM, to=to, text="hi"))
    await flush(amy, bob)
    assert seen(amy) == [("sys", error)]
    assert seen(bob) == []


@pytest.mark.fast
@pytest.mark.asyncio
async def test_pm_to_broken_target_aborts_target_only(relay, make_session):
    registry, _, router = relay
    amy, = await joined(router, registry, make_session, "amy")
    ghost = make_session(fail=True)
    await registry.register_unnamed(ghost)
    await registry.claim_name(ghost, "ghost")

    assert await router.handle(amy, env(MessageType.PM, to="ghost", text="boo"))
    await flush(amy)
    assert not ghost.alive
    assert amy.alive
    assert seen(amy) == [("pm", "boo")]


@pytest.mark.fast
@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["typing", "stoptyping"])
async def test_typing_broadcast_includes_sender(relay, make_session, kind):
    """The server does not filter presence notices; clients skip their own"""
    registry, _, router = relay
    amy, bob = await joined(router, registry, make_session, "amy", "bob")

    assert await router.handle(amy, env(kind, "amy"))
    await flush(amy, bob)
    for session in (amy, bob):
        envelopes = session.writer.envelopes()
        assert [(e.type, e.sender) for e in envelopes] == [(kind, "amy")]


@pytest.mark.fast
@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["wave", "sys", "userlist"])
async def test_unrecognized_types_ignored_in_both_states(relay, make_session, kind):
    registry, _, router = relay
    amy, = await joined(router, registry, make_session, "amy")
    stranger, = await connected(registry, make_session, 1)

    assert await router.handle(amy, env(kind, "amy", text="?"))
    assert await router.handle(stranger, env(kind, text="?"))
    await flush(amy, stranger)
    assert seen(amy) == []
    assert seen(stranger) == []


@pytest.mark.fast
@pytest.mark.asyncio
async def test_leave_stops_in_any_state(relay, make_session):
    registry, _, router = relay
    amy, = await joined(router, registry, make_session, "amy")
    stranger, = await connected(registry, make_session, 1)
    assert not await router.handle(amy, env(MessageType.LEAVE))
    assert not await router.handle(stranger, env(MessageType.LEAVE))


@pytest.mark.fast
@pytest.mark.asyncio
async def test_depart_announces_once(relay, make_session):
    registry, _, router = relay
    amy, bob = await joined(router, registry, make_session, "amy", "bob")

    await router.depart(amy)
    await router.depart(amy)
    await flush(bob)
    assert seen(bob) == [("sys", "amy left"), ("userlist", "bob")]
    assert amy.writer.closed
    assert registry.lookup("amy") is None
    assert await registry.snapshot_names() == ["bob"]


@pytest.mark.fast
@pytest.mark.asyncio
async def test_depart_unnamed_is_silent(relay, make_session):
    registry, _, router = relay
    bob, = await joined(router, registry, make_session, "bob")
    stranger, = await connected(registry, make_session, 1)

    await router.depart(stranger)
    await flush(bob)
    assert seen(bob) == []
    assert stranger.writer.closed
    assert len(registry) == 1


@pytest.mark.fast
@pytest.mark.asyncio
async def test_name_reusable_after_departure(relay, make_session):
    registry, _, router = relay
    amy, = await joined(router, registry, make_session, "amy")
    await router.depart(amy)

    again, = await connected(registry, make_session, 1)
    assert await router.handle(again, env(MessageType.JOIN, "amy"))
    assert registry.lookup("amy") is again


@pytest.mark.fast
@pytest.mark.asyncio
async def test_pm_to_stalled_target_does_not_block_sender(relay, make_session):
    """A target that stops reading is aborted and the sender keeps going"""
    registry, _, router = relay
    amy, cid = await joined(router, registry, make_session, "amy", "cid")
    bob = make_session(stall=True)
    await registry.register_unnamed(bob)
    await registry.claim_name(bob, "bob")

    assert await asyncio.wait_for(
        router.handle(amy, env(MessageType.PM, to="bob", text="are you there")), timeout=2.0
    )
    assert not bob.alive
    assert bob.writer.closed

    assert await asyncio.wait_for(router.handle(amy, env(MessageType.MSG, text="hello")), timeout=2.0)
    await flush(amy, cid)
    assert seen(amy) == [("pm", "are you there"), ("msg", "hello")]
    assert seen(cid) == [("msg", "hello")]


@pytest.mark.fast
@pytest.mark.asyncio
async def test_depart_announces_before_closing_stalled_session(relay, make_session):
    registry, _, router = relay
    bob, = await joined(router, registry, make_session, "bob")
    stuck = make_session(stall=True)
    await registry.register_unnamed(stuck)
    await registry.claim_name(stuck, "stuck")
    await stuck.enqueue(b"never drained\n")

    depart = asyncio.create_task(router.depart(stuck))
    await asyncio.sleep(0.1)
    await flush(bob)
    assert seen(bob) == [("sys", "stuck left"), ("userlist", "bob")]
    stuck.abort()
    await asyncio.wait_for(depart, timeout=2.0)
    assert registry.lookup("stuck") is None
