"""Small in-memory stand-ins shared by the test modules."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

from harmony.errors import PlayerAPIError
from harmony.net import protocol
from harmony.net.channel_client import Subscription
from harmony.player.rate_limiter import Category, PlaybackRateLimiter


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.002)


class FakeClock:
    """Monotonic clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ManualTimer:
    """Sleep replacement whose sleepers only wake when fired."""

    def __init__(self) -> None:
        self.pending: List[Tuple[float, asyncio.Event]] = []

    async def sleep(self, seconds: float) -> None:
        event = asyncio.Event()
        self.pending.append((seconds, event))
        await event.wait()

    def fire(self) -> float:
        seconds, event = self.pending.pop(0)
        event.set()
        return seconds


class FakeChannel:
    """Records sends and lets tests deliver server events to subscribers."""

    def __init__(self, connected: bool = True) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.handlers: Dict[str, List[Any]] = {}
        self.connected = connected
        self.session: Optional[Tuple[str, Dict[str, Any]]] = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    def on(self, event: str, handler: Any) -> Subscription:
        handlers = self.handlers.setdefault(event, [])
        handlers.append(handler)
        return Subscription(lambda: handlers.remove(handler))

    async def send(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.sent.append((event, dict(payload or {})))

    async def join_session(self, session_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        body = dict(payload or {})
        body["sessionId"] = session_id
        self.session = (session_id, body)
        if self.connected:
            await self.send(protocol.JOIN_SESSION, body)

    async def leave_session(self) -> None:
        session, self.session = self.session, None
        if session and self.connected:
            await self.send(protocol.LEAVE_SESSION, {"sessionId": session[0]})

    async def deliver(self, event: str, payload: Dict[str, Any]) -> None:
        for handler in list(self.handlers.get(event, ())):
            await handler(payload)

    def sent_of(self, event: str) -> List[Dict[str, Any]]:
        return [p for e, p in self.sent if e == event]


class FakePlayer:
    """Spotify stand-in keeping an external queue of URIs."""

    source = "spotify"

    def __init__(self, clock: FakeClock, external: Optional[List[str]] = None) -> None:
        self.clock = clock
        self.limiter = PlaybackRateLimiter(clock=clock.time, sleep=clock.sleep)
        self.external: List[str] = list(external or [])
        self.calls: List[Tuple[Any, ...]] = []
        self.fail_uris: set = set()
        self.get_queue_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.get_queue_times: List[float] = []
        self.closed = False
        self.credentials: Any = None

    async def get_queue(self) -> List[str]:
        self.limiter.acquire(Category.GENERAL)
        self.calls.append(("get_queue",))
        self.get_queue_times.append(self.clock.now)
        if self.gate is not None:
            await self.gate.wait()
        if self.get_queue_error is not None:
            raise self.get_queue_error
        return list(self.external)

    async def skip_next(self) -> None:
        self.limiter.acquire(Category.PLAYER_CONTROL)
        self.calls.append(("skip",))
        if self.external:
            self.external.pop(0)

    async def ensure_active_device(self) -> str:
        self.calls.append(("device",))
        return "dev-1"

    async def enqueue(self, uri: str, *, device_id: Optional[str] = None) -> None:
        self.limiter.acquire(Category.QUEUE_CONTROL)
        self.calls.append(("enqueue", uri))
        if uri in self.fail_uris:
            raise PlayerAPIError(f"enqueue failed {uri}", status_code=502, uri=uri)
        self.external.append(uri)

    async def set_playing(self, playing: bool, *, device_id: Optional[str] = None) -> None:
        self.calls.append(("play" if playing else "pause", device_id))

    async def set_volume(self, percent: int, *, device_id: Optional[str] = None) -> None:
        self.calls.append(("volume", percent, device_id))

    async def aclose(self) -> None:
        self.closed = True

    def enqueued(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "enqueue"]


class FakePeer:
    """Peer connection stand-in that records the handshake steps."""

    def __init__(self, peer_id: str, callbacks: Any, track: Any) -> None:
        self.peer_id = peer_id
        self.callbacks = callbacks
        self.track = track
        self.log: List[Any] = []
        self.closed = False

    async def create_offer(self) -> str:
        self.log.append("create_offer")
        return f"offer-sdp-{self.peer_id}"

    async def apply_offer(self, sdp: str) -> None:
        self.log.append(("apply_offer", sdp))

    async def create_answer(self) -> str:
        self.log.append("create_answer")
        return f"answer-sdp-{self.peer_id}"

    async def apply_answer(self, sdp: str) -> None:
        self.log.append(("apply_answer", sdp))

    async def add_ice_candidate(self, candidate: Any) -> None:
        self.log.append(("ice", candidate))

    async def close(self) -> None:
        self.closed = True

    async def set_state(self, state: str) -> None:
        await self.callbacks.on_connection_state(self.peer_id, state)

    async def deliver_track(self, track: Any) -> None:
        await self.callbacks.on_track(self.peer_id, track)


class PeerRecorder:
    """Peer factory that keeps every created FakePeer."""

    def __init__(self) -> None:
        self.peers: List[FakePeer] = []

    def __call__(self, peer_id: str, callbacks: Any, track: Any) -> FakePeer:
        peer = FakePeer(peer_id, callbacks, track)
        self.peers.append(peer)
        return peer

    def for_peer(self, peer_id: str) -> List[FakePeer]:
        return [p for p in self.peers if p.peer_id == peer_id]


class FakeSocket:
    """Client-side websocket double fed by the test."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(raw))

    def push(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.incoming.put_nowait(protocol.encode(event, payload))

    def push_raw(self, raw: str) -> None:
        self.incoming.put_nowait(raw)

    def server_close(self) -> None:
        self.incoming.put_nowait(None)

    def drop(self, exc: Exception) -> None:
        self.incoming.put_nowait(exc)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def sent_types(self) -> List[str]:
        return [m["type"] for m in self.sent]


class FakeConnector:
    """Stands in for ``websockets.connect``; yields scripted outcomes."""

    def __init__(self, outcomes: Optional[List[Any]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def __call__(self, url: str, **options: Any) -> Any:
        self.calls.append((url, options))
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)
