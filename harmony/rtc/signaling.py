"""Per-pair WebRTC handshake state machine (guest offers, host answers)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from aiortc import MediaStreamTrack

from ..errors import ChannelError, SignalingError
from ..net import protocol
from ..net.channel_client import RealtimeChannel, Subscription
from ..net.protocol import ProtocolError
from ..session.membership import Participant, Role
from .webrtc_peer import PeerCallbacks, WebRTCPeer, build_rtc_configuration


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


class ExchangeState(str, Enum):
    IDLE = "idle"
    OFFER_CREATED = "offer-created"
    ANSWER_SENT = "answer-sent"
    ANSWER_RECEIVED = "answer-received"
    CONNECTED = "connected"
    CLOSED = "closed"


_TRANSITIONS: Dict[ExchangeState, Tuple[ExchangeState, ...]] = {
    ExchangeState.IDLE: (ExchangeState.OFFER_CREATED, ExchangeState.ANSWER_SENT, ExchangeState.CLOSED),
    ExchangeState.OFFER_CREATED: (ExchangeState.ANSWER_RECEIVED, ExchangeState.CLOSED),
    ExchangeState.ANSWER_SENT: (ExchangeState.CONNECTED, ExchangeState.CLOSED),
    ExchangeState.ANSWER_RECEIVED: (ExchangeState.CONNECTED, ExchangeState.CLOSED),
    ExchangeState.CONNECTED: (ExchangeState.CLOSED,),
    ExchangeState.CLOSED: (),
}


class OfferRejected(SignalingError):
    """A repeated offer for a pair that is already connected."""


@dataclass
class SignalingExchange:
    host_id: str
    guest_id: str
    local_role: Role
    attempt: int = 1
    state: ExchangeState = ExchangeState.IDLE
    remote_description_applied: bool = False
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    offers: int = 0
    answers: int = 0
    history: List[ExchangeState] = field(default_factory=lambda: [ExchangeState.IDLE])
    remote_track: Optional[MediaStreamTrack] = None

    @property
    def pair_key(self) -> Tuple[str, str]:
        return (self.host_id, self.guest_id)

    @property
    def remote_id(self) -> str:
        return self.guest_id if self.local_role is Role.HOST else self.host_id

    def advance(self, new_state: ExchangeState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SignalingError(self.remote_id, f"illegal transition {self.state.value} -> {new_state.value}")
        if new_state is ExchangeState.CONNECTED and (self.offers != 1 or self.answers != 1):
            raise SignalingError(self.remote_id, f"connect without one offer/answer ({self.offers}/{self.answers})")
        self.state = new_state
        self.history.append(new_state)


class PeerConnection(Protocol):
    async def create_offer(self) -> str: ...

    async def apply_offer(self, sdp: str) -> None: ...

    async def create_answer(self) -> str: ...

    async def apply_answer(self, sdp: str) -> None: ...

    async def add_ice_candidate(self, candidate_obj: Any) -> None: ...

    async def close(self) -> None: ...


PeerFactory = Callable[[str, PeerCallbacks, Optional[MediaStreamTrack]], PeerConnection]


@dataclass
class CoordinatorCallbacks:
    on_remote_stream: Optional[AsyncCallback] = None  # (peer_id: str, track: MediaStreamTrack)
    on_pair_state: Optional[AsyncCallback] = None  # (peer_id: str, state: str)
    on_pair_closed: Optional[AsyncCallback] = None  # (peer_id: str)


class SignalingCoordinator:
    def __init__(
        self,
        channel: RealtimeChannel,
        session_id: str,
        participant: Participant,
        *,
        ice_servers: Optional[Iterable[Dict[str, Any]]] = None,
        local_track_factory: Optional[Callable[[], Optional[MediaStreamTrack]]] = None,
        peer_factory: Optional[PeerFactory] = None,
        callbacks: Optional[CoordinatorCallbacks] = None,
        connect_timeout: float = 10.0,
        max_attempts: int = 2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._channel = channel
        self._session_id = session_id
        self._self = participant
        self._local_track_factory = local_track_factory
        self._callbacks = callbacks or CoordinatorCallbacks()
        self._connect_timeout = connect_timeout
        self._max_attempts = max_attempts
        self._sleep = sleep

        rtc_config = build_rtc_configuration(ice_servers) if peer_factory is None else None

        def _default_factory(
            peer_id: str, cb: PeerCallbacks, track: Optional[MediaStreamTrack]
        ) -> PeerConnection:
            return WebRTCPeer(peer_id=peer_id, local_audio_track=track, callbacks=cb, rtc_config=rtc_config)

        self._peer_factory: PeerFactory = peer_factory or _default_factory
        self._exchanges: Dict[str, SignalingExchange] = {}
        self._peers: Dict[str, PeerConnection] = {}
        self._timers: Dict[str, asyncio.Task[None]] = {}
        self._subscriptions: List[Subscription] = []

    @property
    def role(self) -> Role:
        return self._self.role

    def exchange(self, peer_id: str) -> Optional[SignalingExchange]:
        return self._exchanges.get(peer_id)

    def exchange_state(self, peer_id: str) -> ExchangeState:
        ex = self._exchanges.get(peer_id)
        return ex.state if ex else ExchangeState.IDLE

    def start(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self._channel.on(protocol.WEBRTC_OFFER, self._on_offer),
            self._channel.on(protocol.WEBRTC_ANSWER, self._on_answer),
            self._channel.on(protocol.WEBRTC_ICE_CANDIDATE, self._on_ice),
            self._channel.on(protocol.START_STREAM_TO, self._on_start_stream_to),
        ]

    async def close(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        for peer_id in list(self._exchanges.keys()):
            await self.close_pair(peer_id)

    # ----------------------
    # Guest side
    # ----------------------
    async def stream_to(self, host_id: str) -> None:
        if self.role is not Role.GUEST:
            raise SignalingError(host_id, "only guests originate offers")
        ex = self._exchanges.get(host_id)
        if ex is not None and ex.state not in (ExchangeState.IDLE, ExchangeState.CLOSED):
            logger.info("rtc stream_to host=%s already %s", host_id, ex.state.value)
            return
        await self._offer(host_id, attempt=1)

    async def _offer(self, host_id: str, attempt: int) -> None:
        ex = self._new_exchange(host_id, attempt=attempt)
        track = self._local_track_factory() if self._local_track_factory else None
        if track is None:
            logger.warning("rtc offer to=%s without a local capture track", host_id)
        peer = await self._create_peer(host_id, track)

        logger.info("rtc creating offer to=%s attempt=%s", host_id, attempt)
        sdp = await peer.create_offer()
        if self._exchanges.get(host_id) is not ex:
            return
        ex.offers += 1
        ex.advance(ExchangeState.OFFER_CREATED)
        self._arm_timeout(host_id, ex)
        await self._notify_state(host_id, ex.state)
        try:
            await self._channel.send(protocol.WEBRTC_OFFER, protocol.make_offer(self._session_id, host_id, sdp))
        except ChannelError:
            await self._reset_pair(host_id, "offer not delivered")
            raise

    async def handle_answer(self, from_peer: str, payload: Dict[str, Any]) -> None:
        if self.role is not Role.GUEST:
            raise SignalingError(from_peer, "host received an answer")
        ex = self._exchanges.get(from_peer)
        peer = self._peers.get(from_peer)
        if ex is None or peer is None or ex.state is not ExchangeState.OFFER_CREATED:
            state = ex.state.value if ex else "none"
            raise SignalingError(from_peer, f"answer while {state}")
        sdp = protocol.description_sdp(payload, "answer", "answer")

        logger.info("rtc answer received from=%s sdp_len=%s", from_peer, len(sdp))
        await peer.apply_answer(sdp)
        if self._exchanges.get(from_peer) is not ex:
            return
        ex.answers += 1
        ex.advance(ExchangeState.ANSWER_RECEIVED)
        await self._flush_candidates(from_peer, ex, peer)
        await self._notify_state(from_peer, ex.state)

    # ----------------------
    # Host side
    # ----------------------
    async def handle_offer(self, from_peer: str, payload: Dict[str, Any]) -> None:
        if self.role is not Role.HOST:
            raise SignalingError(from_peer, "guest received an offer")
        sdp = protocol.description_sdp(payload, "offer", "offer")

        ex = self._exchanges.get(from_peer)
        carried: List[Dict[str, Any]] = []
        if ex is not None:
            if ex.state is ExchangeState.CONNECTED:
                raise OfferRejected(from_peer, "second offer rejected, pair already connected")
            if ex.state is ExchangeState.IDLE:
                carried = list(ex.pending_candidates)
            else:
                # The guest restarted its handshake; only the newest offer counts.
                logger.info("rtc offer from=%s restarts pair in state=%s", from_peer, ex.state.value)
                await self._reset_pair(from_peer, "superseded by new offer")

        logger.info("rtc offer received from=%s sdp_len=%s", from_peer, len(sdp))
        ex = self._new_exchange(from_peer, pending=carried)
        ex.offers += 1
        peer = await self._create_peer(from_peer, None)

        await peer.apply_offer(sdp)
        if self._exchanges.get(from_peer) is not ex:
            return
        await self._flush_candidates(from_peer, ex, peer)
        answer_sdp = await peer.create_answer()
        if self._exchanges.get(from_peer) is not ex:
            return
        ex.answers += 1
        ex.advance(ExchangeState.ANSWER_SENT)
        self._arm_timeout(from_peer, ex)
        await self._notify_state(from_peer, ex.state)
        await self._channel.send(protocol.WEBRTC_ANSWER, protocol.make_answer(self._session_id, from_peer, answer_sdp))

    # ----------------------
    # Both sides
    # ----------------------
    async def handle_ice(self, from_peer: str, payload: Dict[str, Any]) -> None:
        candidate = payload.get("candidate")
        ex = self._exchanges.get(from_peer)
        if ex is None:
            if self.role is not Role.HOST:
                raise SignalingError(from_peer, "candidate for unknown pair")
            # Candidate raced ahead of the offer; hold it until the offer arrives.
            ex = self._new_exchange(from_peer)
        if ex.state is ExchangeState.CLOSED:
            return

        peer = self._peers.get(from_peer)
        if not ex.remote_description_applied or peer is None:
            ex.pending_candidates.append(candidate)
            logger.debug("rtc ice buffered from=%s pending=%s", from_peer, len(ex.pending_candidates))
            return
        logger.debug("rtc ice received from=%s has_candidate=%s", from_peer, bool(candidate))
        await peer.add_ice_candidate(candidate)

    async def close_pair(self, peer_id: str) -> None:
        ex = self._exchanges.pop(peer_id, None)
        peer = self._peers.pop(peer_id, None)
        self._cancel_timer(peer_id)
        if ex is not None and ex.state is not ExchangeState.CLOSED:
            ex.advance(ExchangeState.CLOSED)
        if peer is not None:
            logger.debug("rtc closing peer pc peer_id=%s", peer_id)
            try:
                await peer.close()
            except Exception:
                logger.exception("rtc peer close failed peer_id=%s", peer_id)
        if ex is not None:
            await self._notify_state(peer_id, ExchangeState.CLOSED)
            if self._callbacks.on_pair_closed:
                await self._callbacks.on_pair_closed(peer_id)

    async def _reset_pair(self, peer_id: str, reason: str) -> None:
        logger.warning("rtc resetting pair peer_id=%s: %s", peer_id, reason)
        await self.close_pair(peer_id)

    def _new_exchange(
        self, remote_id: str, *, attempt: int = 1, pending: Optional[List[Dict[str, Any]]] = None
    ) -> SignalingExchange:
        if self.role is Role.HOST:
            host_id, guest_id = self._self.user_id, remote_id
        else:
            host_id, guest_id = remote_id, self._self.user_id
        ex = SignalingExchange(
            host_id=host_id,
            guest_id=guest_id,
            local_role=self.role,
            attempt=attempt,
            pending_candidates=list(pending or []),
        )
        self._exchanges[remote_id] = ex
        return ex

    async def _create_peer(self, peer_id: str, track: Optional[MediaStreamTrack]) -> PeerConnection:
        stale = self._peers.pop(peer_id, None)
        if stale is not None:
            logger.info("rtc replacing live peer pc peer_id=%s", peer_id)
            try:
                await stale.close()
            except Exception:
                logger.exception("rtc peer close failed peer_id=%s", peer_id)

        peer: Optional[PeerConnection] = None

        def _live() -> bool:
            # A replaced pc still reports its own close; it must not touch the new pair.
            return peer is not None and self._peers.get(peer_id) is peer

        async def on_state(pid: str, state: str) -> None:
            if _live():
                await self._on_peer_state(pid, state)

        async def on_ice(pid: str, candidate: Dict[str, Any]) -> None:
            if _live():
                await self._on_local_ice(pid, candidate)

        async def on_track(pid: str, remote: MediaStreamTrack) -> None:
            if _live():
                await self._on_track(pid, remote)

        cb = PeerCallbacks(on_connection_state=on_state, on_local_ice=on_ice, on_track=on_track)
        peer = self._peer_factory(peer_id, cb, track)
        self._peers[peer_id] = peer
        logger.debug("rtc created peer pc peer_id=%s", peer_id)
        return peer

    async def _flush_candidates(self, peer_id: str, ex: SignalingExchange, peer: PeerConnection) -> None:
        ex.remote_description_applied = True
        pending, ex.pending_candidates = ex.pending_candidates, []
        if pending:
            logger.debug("rtc flushing buffered ice peer_id=%s count=%s", peer_id, len(pending))
        for candidate in pending:
            await peer.add_ice_candidate(candidate)

    def _arm_timeout(self, peer_id: str, ex: SignalingExchange) -> None:
        self._cancel_timer(peer_id)
        self._timers[peer_id] = asyncio.create_task(self._timeout(peer_id, ex), name=f"rtc-timeout-{peer_id}")

    def _cancel_timer(self, peer_id: str) -> None:
        task = self._timers.pop(peer_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _timeout(self, peer_id: str, ex: SignalingExchange) -> None:
        await self._sleep(self._connect_timeout)
        if self._exchanges.get(peer_id) is not ex or ex.state is ExchangeState.CONNECTED:
            return
        self._timers.pop(peer_id, None)
        logger.warning("rtc connect timeout peer_id=%s state=%s attempt=%s", peer_id, ex.state.value, ex.attempt)
        await self._connection_failed(peer_id, ex)

    async def _connection_failed(self, peer_id: str, ex: SignalingExchange) -> None:
        await self._reset_pair(peer_id, "connection failed")
        if self.role is Role.GUEST and ex.attempt < self._max_attempts:
            try:
                await self._offer(peer_id, attempt=ex.attempt + 1)
            except (SignalingError, ChannelError) as e:
                logger.warning("rtc retry failed peer_id=%s: %s", peer_id, e)
            except Exception:
                logger.exception("rtc retry crashed peer_id=%s", peer_id)

    async def _notify_state(self, peer_id: str, state: ExchangeState) -> None:
        if self._callbacks.on_pair_state:
            await self._callbacks.on_pair_state(peer_id, state.value)

    # ----------------------
    # Peer callbacks
    # ----------------------
    async def _on_local_ice(self, peer_id: str, candidate: Dict[str, Any]) -> None:
        logger.debug("rtc local ice peer_id=%s", peer_id)
        try:
            await self._channel.send(
                protocol.WEBRTC_ICE_CANDIDATE, protocol.make_ice(self._session_id, peer_id, candidate)
            )
        except ChannelError as e:
            logger.warning("rtc local ice not delivered peer_id=%s: %s", peer_id, e)

    async def _on_track(self, peer_id: str, track: MediaStreamTrack) -> None:
        ex = self._exchanges.get(peer_id)
        if ex is None or self.role is not Role.HOST:
            return
        ex.remote_track = track
        if ex.state is ExchangeState.CONNECTED:
            await self._hand_off(peer_id, ex)

    async def _on_peer_state(self, peer_id: str, state: str) -> None:
        ex = self._exchanges.get(peer_id)
        if ex is None:
            return
        logger.info("rtc pair peer_id=%s pc_state=%s exchange=%s", peer_id, state, ex.state.value)
        if state == "connected":
            if ex.state not in (ExchangeState.ANSWER_SENT, ExchangeState.ANSWER_RECEIVED):
                return
            ex.advance(ExchangeState.CONNECTED)
            self._cancel_timer(peer_id)
            await self._notify_state(peer_id, ex.state)
            if ex.remote_track is not None:
                await self._hand_off(peer_id, ex)
        elif state == "failed":
            self._cancel_timer(peer_id)
            await self._connection_failed(peer_id, ex)
        elif state == "closed":
            await self.close_pair(peer_id)

    async def _hand_off(self, peer_id: str, ex: SignalingExchange) -> None:
        track, ex.remote_track = ex.remote_track, None
        if track is None or not self._callbacks.on_remote_stream:
            return
        logger.info("rtc exposing inbound audio peer_id=%s", peer_id)
        await self._callbacks.on_remote_stream(peer_id, track)

    # ----------------------
    # Channel handlers
    # ----------------------
    async def _on_offer(self, payload: Dict[str, Any]) -> None:
        await self._guarded(payload, self.handle_offer)

    async def _on_answer(self, payload: Dict[str, Any]) -> None:
        await self._guarded(payload, self.handle_answer)

    async def _on_ice(self, payload: Dict[str, Any]) -> None:
        await self._guarded(payload, self.handle_ice)

    async def _on_start_stream_to(self, payload: Dict[str, Any]) -> None:
        if payload.get("fromUserId") != self._self.user_id or self.role is not Role.GUEST:
            return
        to_user = payload.get("toUserId")
        if not isinstance(to_user, str) or not to_user:
            logger.warning("rtc start-stream-to without target")
            return
        try:
            await self.stream_to(to_user)
        except (SignalingError, ProtocolError) as e:
            await self._pair_error(to_user, e)
        except ChannelError as e:
            logger.warning("rtc start-stream-to to=%s failed: %s", to_user, e)
        except Exception:
            logger.exception("rtc start-stream-to crashed to=%s", to_user)
            await self._reset_pair(to_user, "offer setup crashed")

    async def _guarded(self, payload: Dict[str, Any], handler: Callable[[str, Dict[str, Any]], Awaitable[None]]) -> None:
        from_peer = payload.get("from")
        if not isinstance(from_peer, str) or not from_peer:
            logger.warning("rtc signaling message without sender dropped")
            return
        session_id = payload.get("sessionId")
        if session_id is not None and session_id != self._session_id:
            logger.debug("rtc message for other session=%s dropped", session_id)
            return
        try:
            await handler(from_peer, payload)
        except (SignalingError, ProtocolError) as e:
            await self._pair_error(from_peer, e)
        except ChannelError as e:
            # The pair cannot finish without the channel; start over once it is back.
            logger.warning("rtc channel failure peer_id=%s: %s", from_peer, e)
            await self._reset_pair(from_peer, "channel failure")
        except Exception:
            logger.exception("rtc signaling handler crashed peer_id=%s", from_peer)
            await self._reset_pair(from_peer, "handler crashed")

    async def _pair_error(self, peer_id: str, exc: Exception) -> None:
        if isinstance(exc, OfferRejected):
            logger.warning("rtc %s", exc)
            return
        err = exc if isinstance(exc, SignalingError) else SignalingError(peer_id, str(exc))
        logger.warning("rtc signaling error: %s", err)
        await self._reset_pair(peer_id, "signaling error")
