from __future__ import annotations

import pytest

from fakes import FakeChannel
from harmony.net import protocol
from harmony.session.membership import MembershipRegistry, Participant, Role


HOST = Participant(user_id="host-1", role=Role.HOST, supports_service_a=True)
GUEST = Participant(user_id="guest-1", role=Role.GUEST, supports_service_b=True)


def roster(*participants: Participant) -> dict:
    return {"participants": [p.to_json() for p in participants]}


@pytest.mark.asyncio
async def test_join_announces_capabilities():
    channel = FakeChannel()
    registry = MembershipRegistry(channel)

    await registry.join("s1", HOST)

    assert channel.sent == [
        (protocol.JOIN_SESSION, {"sessionId": "s1", "userId": "host-1"}),
        (
            protocol.DEVICE_CAPABILITIES,
            {
                "sessionId": "s1",
                "userId": "host-1",
                "role": "host",
                "flags": {"supportsServiceA": True, "supportsServiceB": False},
            },
        ),
    ]
    assert registry.host_id == "host-1"
    with pytest.raises(RuntimeError):
        await registry.join("s2", HOST)


@pytest.mark.asyncio
async def test_roster_excludes_self_and_host():
    channel = FakeChannel()
    registry = MembershipRegistry(channel)
    updates: list = []

    async def on_roster(guests):
        updates.append([g.user_id for g in guests])

    registry.on_roster_update(on_roster)
    await registry.join("s1", HOST)
    await channel.deliver(protocol.DEVICE_LIST, roster(HOST, GUEST, Participant("guest-2", Role.GUEST)))

    assert [p.user_id for p in registry.current_roster()] == ["guest-1", "guest-2"]
    assert registry.current_roster()[0].supports_service_b is True
    assert updates == [["guest-1", "guest-2"]]

    await channel.deliver(protocol.DEVICE_LIST, roster(HOST, GUEST))
    assert updates[-1] == ["guest-1"]


@pytest.mark.asyncio
async def test_guest_learns_host_from_roster():
    channel = FakeChannel()
    registry = MembershipRegistry(channel)

    await registry.join("s1", GUEST)
    assert registry.host_id is None

    await channel.deliver(protocol.DEVICE_LIST, roster(HOST, GUEST))
    assert registry.host_id == "host-1"
    assert registry.current_roster() == []
    assert [p.user_id for p in registry.participants()] == ["host-1"]


@pytest.mark.asyncio
async def test_roster_cannot_flip_own_role():
    channel = FakeChannel()
    registry = MembershipRegistry(channel)

    await registry.join("s1", GUEST)
    await channel.deliver(protocol.DEVICE_LIST, roster(Participant("guest-1", Role.HOST)))

    assert registry.participant.role is Role.GUEST
    assert registry.host_id is None


@pytest.mark.asyncio
async def test_malformed_roster_entries_are_dropped():
    channel = FakeChannel()
    registry = MembershipRegistry(channel)

    await registry.join("s1", HOST)
    await channel.deliver(
        protocol.DEVICE_LIST,
        {"participants": [{"role": "guest"}, {"userId": "g", "role": "dj"}, GUEST.to_json(), "junk"]},
    )

    assert [p.user_id for p in registry.current_roster()] == ["guest-1"]


@pytest.mark.asyncio
async def test_reconnect_re_announces_and_leave_unsubscribes():
    channel = FakeChannel()
    registry = MembershipRegistry(channel)
    await registry.join("s1", GUEST)
    channel.sent.clear()

    await channel.deliver(protocol.CONNECTED, {"transport": "websocket", "rejoined": "s1"})
    assert [e for e, _ in channel.sent] == [protocol.DEVICE_CAPABILITIES]

    await registry.leave()
    assert channel.sent[-1] == (protocol.LEAVE_SESSION, {"sessionId": "s1"})
    assert registry.session_id is None
    assert channel.handlers[protocol.DEVICE_LIST] == []
