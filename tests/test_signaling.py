"""Per-pair handshake state machine tests."""
from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import pytest

from fakes import FakeChannel, FakePeer, ManualTimer, PeerRecorder, settle
from harmony.errors import SignalingError
from harmony.net import protocol
from harmony.rtc.signaling import (
    CoordinatorCallbacks,
    ExchangeState,
    SignalingCoordinator,
)
from harmony.session.membership import Participant, Role


SESSION = "s1"
LOCAL_TRACK = object()


class Harness:
    def __init__(
        self, role: Role, user_id: str, *, max_attempts: int = 2, peers: Optional[PeerRecorder] = None
    ) -> None:
        self.channel = FakeChannel()
        self.peers = peers or PeerRecorder()
        self.timer = ManualTimer()
        self.streams: list = []
        self.states: list = []
        self.closed: list = []
        self.coordinator = SignalingCoordinator(
            self.channel,
            SESSION,
            Participant(user_id, role),
            local_track_factory=lambda: LOCAL_TRACK,
            peer_factory=self.peers,
            callbacks=CoordinatorCallbacks(
                on_remote_stream=self._on_stream,
                on_pair_state=self._on_state,
                on_pair_closed=self._on_closed,
            ),
            max_attempts=max_attempts,
            sleep=self.timer.sleep,
        )
        self.coordinator.start()

    async def _on_stream(self, peer_id, track):
        self.streams.append((peer_id, track))

    async def _on_state(self, peer_id, state):
        self.states.append((peer_id, state))

    async def _on_closed(self, peer_id):
        self.closed.append(peer_id)

    async def offer_from(self, guest: str, sdp: str = "guest-offer") -> None:
        await self.channel.deliver(
            protocol.WEBRTC_OFFER,
            {"sessionId": SESSION, "from": guest, "to": "host", "offer": {"type": "offer", "sdp": sdp}},
        )

    async def answer_from(self, host: str, sdp: str = "host-answer") -> None:
        await self.channel.deliver(
            protocol.WEBRTC_ANSWER,
            {"sessionId": SESSION, "from": host, "answer": {"type": "answer", "sdp": sdp}},
        )

    async def ice_from(self, peer: str, candidate: dict) -> None:
        await self.channel.deliver(
            protocol.WEBRTC_ICE_CANDIDATE, {"sessionId": SESSION, "from": peer, "candidate": candidate}
        )


def cand(n: int) -> dict:
    return {"candidate": f"candidate:{n} 1 udp 2122260223 10.0.0.{n} 5000{n} typ host", "sdpMid": "0", "sdpMLineIndex": 0}


@pytest.mark.asyncio
async def test_guest_walks_offer_answer_connected():
    h = Harness(Role.GUEST, "guest-1")

    await h.coordinator.stream_to("host")
    peer = h.peers.peers[0]
    assert peer.track is LOCAL_TRACK
    assert h.coordinator.exchange_state("host") is ExchangeState.OFFER_CREATED
    assert h.channel.sent_of(protocol.WEBRTC_OFFER) == [
        {"sessionId": SESSION, "to": "host", "offer": {"type": "offer", "sdp": "offer-sdp-host"}}
    ]

    await h.answer_from("host")
    assert h.coordinator.exchange_state("host") is ExchangeState.ANSWER_RECEIVED
    assert peer.log == ["create_offer", ("apply_answer", "host-answer")]

    await peer.set_state("connected")
    ex = h.coordinator.exchange("host")
    assert ex.history == [
        ExchangeState.IDLE,
        ExchangeState.OFFER_CREATED,
        ExchangeState.ANSWER_RECEIVED,
        ExchangeState.CONNECTED,
    ]
    assert (ex.offers, ex.answers) == (1, 1)
    await h.coordinator.close()
    assert peer.closed


@pytest.mark.asyncio
async def test_host_answers_and_exposes_inbound_audio_on_connect():
    h = Harness(Role.HOST, "host")

    await h.offer_from("guest-1")
    peer = h.peers.peers[0]
    assert peer.track is None
    assert h.coordinator.exchange_state("guest-1") is ExchangeState.ANSWER_SENT
    assert h.channel.sent_of(protocol.WEBRTC_ANSWER) == [
        {"sessionId": SESSION, "to": "guest-1", "answer": {"type": "answer", "sdp": "answer-sdp-guest-1"}}
    ]

    remote_track = object()
    await peer.deliver_track(remote_track)
    assert h.streams == []

    await peer.set_state("connected")
    assert h.coordinator.exchange_state("guest-1") is ExchangeState.CONNECTED
    assert h.streams == [("guest-1", remote_track)]
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_second_offer_on_connected_pair_is_rejected():
    h = Harness(Role.HOST, "host")
    await h.offer_from("guest-1")
    peer = h.peers.peers[0]
    await peer.set_state("connected")

    await h.offer_from("guest-1", sdp="again")

    assert h.coordinator.exchange_state("guest-1") is ExchangeState.CONNECTED
    assert len(h.peers.peers) == 1
    assert not peer.closed
    assert len(h.channel.sent_of(protocol.WEBRTC_ANSWER)) == 1
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_candidates_before_offer_are_buffered_and_flushed_in_order():
    h = Harness(Role.HOST, "host")

    await h.ice_from("guest-1", cand(1))
    await h.ice_from("guest-1", cand(2))
    assert h.coordinator.exchange_state("guest-1") is ExchangeState.IDLE
    assert h.coordinator.exchange("guest-1").pending_candidates == [cand(1), cand(2)]

    await h.offer_from("guest-1")
    peer = h.peers.peers[0]
    assert peer.log == [("apply_offer", "guest-offer"), ("ice", cand(1)), ("ice", cand(2)), "create_answer"]

    await h.ice_from("guest-1", cand(3))
    assert peer.log[-1] == ("ice", cand(3))
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_guest_buffers_candidates_until_answer():
    h = Harness(Role.GUEST, "guest-1")
    await h.coordinator.stream_to("host")
    peer = h.peers.peers[0]

    await h.ice_from("host", cand(1))
    assert ("ice", cand(1)) not in peer.log

    await h.answer_from("host")
    assert peer.log[-2:] == [("apply_answer", "host-answer"), ("ice", cand(1))]
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_bad_message_resets_only_its_pair():
    h = Harness(Role.HOST, "host")
    await h.offer_from("guest-1")
    await h.offer_from("guest-2")
    first, second = h.peers.peers

    # A host never receives answers; this is out of order for guest-1 only.
    await h.answer_from("guest-1")

    assert h.coordinator.exchange_state("guest-1") is ExchangeState.IDLE
    assert h.coordinator.exchange("guest-1") is None
    assert first.closed
    assert h.closed == ["guest-1"]
    assert h.coordinator.exchange_state("guest-2") is ExchangeState.ANSWER_SENT
    assert not second.closed
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_malformed_offer_is_contained():
    h = Harness(Role.HOST, "host")
    await h.offer_from("guest-1")

    await h.channel.deliver(protocol.WEBRTC_OFFER, {"sessionId": SESSION, "from": "guest-2", "offer": {"type": "answer", "sdp": "x"}})
    await h.channel.deliver(protocol.WEBRTC_OFFER, {"sessionId": SESSION, "offer": {"sdp": "x"}})
    await h.channel.deliver(protocol.WEBRTC_OFFER, {"sessionId": "other", "from": "guest-3", "offer": "x"})

    assert h.coordinator.exchange_state("guest-2") is ExchangeState.IDLE
    assert h.coordinator.exchange_state("guest-3") is ExchangeState.IDLE
    assert h.coordinator.exchange_state("guest-1") is ExchangeState.ANSWER_SENT
    assert len(h.peers.peers) == 1
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_guest_rejects_offers():
    h = Harness(Role.GUEST, "guest-1")
    await h.offer_from("host")

    assert h.peers.peers == []
    assert h.channel.sent == []
    with pytest.raises(SignalingError):
        await h.coordinator.handle_offer("host", {"offer": {"type": "offer", "sdp": "x"}})


@pytest.mark.asyncio
async def test_host_cannot_originate_stream():
    h = Harness(Role.HOST, "host")
    with pytest.raises(SignalingError):
        await h.coordinator.stream_to("guest-1")


@pytest.mark.asyncio
async def test_establishment_timeout_retries_once_then_gives_up():
    h = Harness(Role.GUEST, "guest-1")
    await h.coordinator.stream_to("host")
    await settle()
    assert len(h.timer.pending) == 1

    assert h.timer.fire() == 10.0
    await settle()
    assert len(h.channel.sent_of(protocol.WEBRTC_OFFER)) == 2
    assert h.peers.peers[0].closed
    assert h.coordinator.exchange("host").attempt == 2
    assert h.coordinator.exchange_state("host") is ExchangeState.OFFER_CREATED

    h.timer.fire()
    await settle()
    assert len(h.channel.sent_of(protocol.WEBRTC_OFFER)) == 2
    assert h.coordinator.exchange_state("host") is ExchangeState.IDLE
    assert all(p.closed for p in h.peers.peers)
    assert h.timer.pending == []


@pytest.mark.asyncio
async def test_connect_cancels_timeout():
    h = Harness(Role.HOST, "host")
    await h.offer_from("guest-1")
    await settle()
    assert len(h.timer.pending) == 1

    await h.peers.peers[0].set_state("connected")
    await settle()

    h.timer.fire()
    await settle()
    assert h.coordinator.exchange_state("guest-1") is ExchangeState.CONNECTED


@pytest.mark.asyncio
async def test_failed_connection_is_retried_by_guest():
    h = Harness(Role.GUEST, "guest-1")
    await h.coordinator.stream_to("host")
    await h.answer_from("host")

    await h.peers.peers[0].set_state("failed")

    assert len(h.peers.peers) == 2
    assert h.coordinator.exchange_state("host") is ExchangeState.OFFER_CREATED
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_close_pair_releases_only_that_pair():
    h = Harness(Role.HOST, "host")
    await h.offer_from("guest-1")
    await h.offer_from("guest-2")

    await h.coordinator.close_pair("guest-1")

    assert h.peers.for_peer("guest-1")[0].closed
    assert not h.peers.for_peer("guest-2")[0].closed
    assert h.coordinator.exchange_state("guest-2") is ExchangeState.ANSWER_SENT
    assert ("guest-1", "closed") in h.states
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_start_stream_to_addressed_to_this_guest():
    h = Harness(Role.GUEST, "guest-1")

    await h.channel.deliver(protocol.START_STREAM_TO, {"fromUserId": "guest-2", "toUserId": "host"})
    assert h.peers.peers == []

    await h.channel.deliver(protocol.START_STREAM_TO, {"fromUserId": "guest-1", "toUserId": "host"})
    assert h.coordinator.exchange_state("host") is ExchangeState.OFFER_CREATED
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_host_offer_restart_replaces_unfinished_exchange():
    h = Harness(Role.HOST, "host")
    await h.offer_from("guest-1", sdp="first")
    await h.offer_from("guest-1", sdp="second")

    first, second = h.peers.peers
    assert first.closed
    assert second.log[0] == ("apply_offer", "second")
    assert h.coordinator.exchange_state("guest-1") is ExchangeState.ANSWER_SENT
    await h.coordinator.close()


class BrokenOfferPeer(FakePeer):
    async def create_offer(self) -> str:
        self.log.append("create_offer")
        raise RuntimeError("codec setup failed")


class GatedOfferPeer(FakePeer):
    gate: asyncio.Event

    async def create_offer(self) -> str:
        await self.gate.wait()
        return await super().create_offer()


class ScriptedRecorder(PeerRecorder):
    """Builds peers from a list of classes, then plain FakePeers."""

    def __init__(self, kinds: List[Any]) -> None:
        super().__init__()
        self.kinds = list(kinds)

    def __call__(self, peer_id: str, callbacks: Any, track: Any) -> FakePeer:
        kind = self.kinds.pop(0) if self.kinds else FakePeer
        peer = kind(peer_id, callbacks, track)
        self.peers.append(peer)
        return peer


STREAM_TO_HOST = {"fromUserId": "guest-1", "toUserId": "host"}


@pytest.mark.asyncio
async def test_crashed_offer_setup_releases_its_peer():
    h = Harness(Role.GUEST, "guest-1", peers=ScriptedRecorder([BrokenOfferPeer]))

    await h.channel.deliver(protocol.START_STREAM_TO, STREAM_TO_HOST)

    assert h.coordinator.exchange("host") is None
    assert h.peers.peers[0].closed
    assert h.channel.sent_of(protocol.WEBRTC_OFFER) == []

    await h.channel.deliver(protocol.START_STREAM_TO, STREAM_TO_HOST)
    assert len(h.peers.peers) == 2
    assert not h.peers.peers[1].closed
    assert h.coordinator.exchange_state("host") is ExchangeState.OFFER_CREATED
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_new_offer_closes_peer_still_creating_one():
    GatedOfferPeer.gate = asyncio.Event()
    h = Harness(Role.GUEST, "guest-1", peers=ScriptedRecorder([GatedOfferPeer]))

    pending = asyncio.create_task(h.channel.deliver(protocol.START_STREAM_TO, STREAM_TO_HOST))
    await settle()
    assert h.coordinator.exchange_state("host") is ExchangeState.IDLE

    await h.channel.deliver(protocol.START_STREAM_TO, STREAM_TO_HOST)
    first, second = h.peers.peers
    assert first.closed
    assert not second.closed

    GatedOfferPeer.gate.set()
    await pending
    assert h.coordinator.exchange_state("host") is ExchangeState.OFFER_CREATED
    assert len(h.channel.sent_of(protocol.WEBRTC_OFFER)) == 1
    await h.coordinator.close()


@pytest.mark.asyncio
async def test_replaced_peer_events_do_not_touch_new_pair():
    h = Harness(Role.HOST, "host")
    await h.offer_from("guest-1", sdp="first")
    await h.offer_from("guest-1", sdp="second")
    first, second = h.peers.peers

    # The old pc reports its own shutdown after the restart.
    await first.set_state("closed")
    await first.set_state("connected")

    assert h.coordinator.exchange_state("guest-1") is ExchangeState.ANSWER_SENT
    assert not second.closed
    assert h.closed == ["guest-1"]
    await h.coordinator.close()
