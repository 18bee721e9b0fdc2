"""Resilient WebSocket channel to the coordination server.

This is intentionally unaware of queues, rosters and aiortc. It only speaks the
JSON envelope implemented by `harmony/server/app.py`, keeps the connection
alive and re-joins the last session after a reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import websockets

from ..errors import ChannelError
from . import protocol


logger = logging.getLogger(__name__)


AsyncHandler = Callable[[Dict[str, Any]], Awaitable[None]]
Connector = Callable[..., Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[None]]


class Transport(str, Enum):
	WEBSOCKET = "websocket"
	# Lower-capability mode for networks that break compression or keepalives.
	WEBSOCKET_COMPAT = "websocket-compat"


_TRANSPORT_OPTIONS: Dict[Transport, Dict[str, Any]] = {
	Transport.WEBSOCKET: {
		"compression": "deflate",
		"open_timeout": 10,
		"ping_interval": 20,
		"ping_timeout": 20,
	},
	Transport.WEBSOCKET_COMPAT: {
		"compression": None,
		"open_timeout": 30,
		"ping_interval": None,
	},
}


class ChannelState(str, Enum):
	IDLE = "idle"
	CONNECTING = "connecting"
	CONNECTED = "connected"
	RECONNECTING = "reconnecting"
	CLOSED = "closed"
	FAILED = "failed"


@dataclass(frozen=True)
class ReconnectPolicy:
	"""Backoff schedule for one channel.

	``max_attempts`` is the failure budget per transport; ``None`` retries
	forever. Delays are in seconds.
	"""

	initial_delay: float = 1.0
	max_delay: float = 5.0
	multiplier: float = 2.0
	max_attempts: Optional[int] = 5
	transports: Tuple[Transport, ...] = (Transport.WEBSOCKET, Transport.WEBSOCKET_COMPAT)
	server_disconnect_delay: float = 5.0

	def delay_for(self, attempt: int) -> float:
		exp = max(0, attempt - 1)
		return min(self.initial_delay * (self.multiplier ** exp), self.max_delay)


DEFAULT_POLICY = ReconnectPolicy()
# Losing queue sync is worse than a slow reconnect.
QUEUE_CHANNEL_POLICY = ReconnectPolicy(max_delay=30.0, max_attempts=None, transports=(Transport.WEBSOCKET,))


class Subscription:
	"""Handle returned by `RealtimeChannel.on`; release it on teardown."""

	def __init__(self, release: Callable[[], None]):
		self._release: Optional[Callable[[], None]] = release

	@property
	def active(self) -> bool:
		return self._release is not None

	def unsubscribe(self) -> None:
		release, self._release = self._release, None
		if release is not None:
			release()

	def __enter__(self) -> "Subscription":
		return self

	def __exit__(self, *exc_info: object) -> None:
		self.unsubscribe()


class RealtimeChannel:
	def __init__(
		self,
		url: Optional[str] = None,
		*,
		name: str = "primary",
		policy: ReconnectPolicy = DEFAULT_POLICY,
		connector: Optional[Connector] = None,
		sleep: Optional[SleepFn] = None,
	):
		self.url = url
		self.name = name
		self.policy = policy
		self.failures = 0
		self.connection_id: Optional[str] = None

		self._connector: Connector = connector or websockets.connect
		self._sleep: SleepFn = sleep or asyncio.sleep
		self._handlers: Dict[str, List[AsyncHandler]] = {}
		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._reconnect_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._state = ChannelState.IDLE
		self._closing = False
		self._transport_index = 0
		self._session: Optional[Tuple[str, Dict[str, Any]]] = None

	@property
	def state(self) -> ChannelState:
		return self._state

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._state == ChannelState.CONNECTED

	@property
	def transport(self) -> Transport:
		return self.policy.transports[self._transport_index]

	@property
	def session_id(self) -> Optional[str]:
		return self._session[0] if self._session else None

	def on(self, event: str, handler: AsyncHandler) -> Subscription:
		handlers = self._handlers.setdefault(event, [])
		handlers.append(handler)

		def _release() -> None:
			try:
				handlers.remove(handler)
			except ValueError:
				pass

		return Subscription(_release)

	async def connect(self, endpoint: Optional[str] = None) -> None:
		if endpoint:
			self.url = endpoint
		if not self.url:
			raise ChannelError("no endpoint configured")
		if self.is_connected or (self._reconnect_task and not self._reconnect_task.done()):
			return

		self._closing = False
		self._state = ChannelState.CONNECTING
		logger.info("channel[%s] connect url=%s transport=%s", self.name, self.url, self.transport.value)
		try:
			await self._open()
		except Exception as e:
			self.failures += 1
			logger.warning("channel[%s] connect failed url=%s failures=%s: %s", self.name, self.url, self.failures, e)
			await self._emit(protocol.ERROR, {"error": ChannelError(f"connect-failed: {e}")})
			self._start_reconnect()

	async def disconnect(self) -> None:
		logger.info("channel[%s] disconnect", self.name)
		self._closing = True
		was_connected = self.is_connected

		task = self._reconnect_task
		self._reconnect_task = None
		if task and task is not asyncio.current_task():
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass

		if was_connected and self._session:
			try:
				await self.send(protocol.LEAVE_SESSION, protocol.make_leave_session(self._session[0]))
			except ChannelError:
				logger.debug("channel[%s] leave-session not delivered", self.name)
		self._session = None

		# The recv loop forgets the socket when cancelled; take it first.
		ws, self._ws = self._ws, None
		recv = self._recv_task
		self._recv_task = None
		if recv and recv is not asyncio.current_task():
			recv.cancel()
			try:
				await recv
			except asyncio.CancelledError:
				pass

		if ws is not None:
			try:
				await ws.close()
			except Exception:
				logger.debug("channel[%s] close raised", self.name, exc_info=True)

		self.connection_id = None
		self._state = ChannelState.CLOSED
		if was_connected:
			await self._emit(protocol.DISCONNECTED, {"reason": "client"})

	async def send(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
		ws = self._ws
		if ws is None or self._state != ChannelState.CONNECTED:
			raise ChannelError(f"channel[{self.name}] not connected")
		if event in (protocol.WEBRTC_OFFER, protocol.WEBRTC_ANSWER):
			logger.info("channel[%s] send type=%s to=%s", self.name, event, (payload or {}).get("to"))
		else:
			logger.debug("channel[%s] send type=%s", self.name, event)
		raw = protocol.encode(event, payload)
		async with self._send_lock:
			try:
				await ws.send(raw)
			except Exception as e:
				raise ChannelError(f"send-failed type={event}: {e}") from e

	async def join_session(self, session_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
		"""Join a session now (if connected) and after every reconnect."""
		body = dict(payload or {})
		body["sessionId"] = session_id
		self._session = (session_id, body)
		if self.is_connected:
			await self.send(protocol.JOIN_SESSION, body)

	async def leave_session(self) -> None:
		session, self._session = self._session, None
		if session and self.is_connected:
			await self.send(protocol.LEAVE_SESSION, protocol.make_leave_session(session[0]))

	async def _open(self) -> None:
		assert self.url is not None
		transport = self.transport
		ws = await self._connector(self.url, **_TRANSPORT_OPTIONS[transport])
		self._ws = ws
		self._state = ChannelState.CONNECTED
		self.failures = 0
		self._recv_task = asyncio.create_task(self._recv_loop(ws), name=f"channel-{self.name}-recv")
		logger.info("channel[%s] connected transport=%s", self.name, transport.value)
		if self._session:
			logger.info("channel[%s] re-joining session=%s", self.name, self._session[0])
			try:
				await self.send(protocol.JOIN_SESSION, self._session[1])
			except ChannelError as e:
				# The recv loop notices the drop and schedules the next attempt.
				logger.warning("channel[%s] re-join failed: %s", self.name, e)
		await self._emit(protocol.CONNECTED, {"transport": transport.value, "rejoined": self.session_id})

	def _start_reconnect(self, first_delay: Optional[float] = None) -> None:
		if self._closing:
			return
		if self._reconnect_task and not self._reconnect_task.done():
			return
		self._reconnect_task = asyncio.create_task(
			self._reconnect_loop(first_delay), name=f"channel-{self.name}-reconnect"
		)

	async def _reconnect_loop(self, first_delay: Optional[float]) -> None:
		try:
			while not self._closing:
				attempt = self.failures + 1
				delay = first_delay if first_delay is not None else self.policy.delay_for(attempt)
				first_delay = None
				self._state = ChannelState.RECONNECTING
				logger.info(
					"channel[%s] reconnecting attempt=%s delay=%.1fs transport=%s",
					self.name,
					attempt,
					delay,
					self.transport.value,
				)
				await self._emit(
					protocol.RECONNECTING,
					{"attempt": attempt, "delay": delay, "transport": self.transport.value},
				)
				await self._sleep(delay)
				if self._closing:
					return

				try:
					await self._open()
					if self.is_connected or self._closing:
						return
					# Dropped again while handshaking; the recv loop could not restart us.
					continue
				except Exception as e:
					self.failures += 1
					logger.warning("channel[%s] reconnect failed attempt=%s: %s", self.name, attempt, e)
					await self._emit(protocol.ERROR, {"error": ChannelError(f"reconnect-failed: {e}")})

				cap = self.policy.max_attempts
				if cap is None or self.failures < cap:
					continue
				if self._transport_index + 1 < len(self.policy.transports):
					self._transport_index += 1
					self.failures = 0
					logger.warning("channel[%s] downgrading transport to %s", self.name, self.transport.value)
					continue

				self._state = ChannelState.FAILED
				logger.error("channel[%s] reconnect attempts exhausted failures=%s", self.name, self.failures)
				await self._emit(
					protocol.ERROR,
					{"error": ChannelError("reconnect attempts exhausted", terminal=True)},
				)
				return
		except asyncio.CancelledError:
			pass
		except Exception:
			logger.exception("channel[%s] reconnect loop crashed", self.name)

	async def _recv_loop(self, ws: Any) -> None:
		logger.debug("channel[%s] recv loop started", self.name)
		server_closed = False
		lost: Optional[BaseException] = None
		try:
			async for raw in ws:
				try:
					event, payload = protocol.decode(raw)
				except protocol.ProtocolError as e:
					logger.warning("channel[%s] dropped frame: %s", self.name, e.message)
					await self._emit(protocol.ERROR, {"error": ChannelError(e.message)})
					continue

				if event == protocol.WELCOME:
					self.connection_id = str(payload.get("connectionId", "")) or None
					logger.info("channel[%s] welcome connection_id=%s", self.name, self.connection_id)

				await self._dispatch(event, payload)
			server_closed = True
		except asyncio.CancelledError:
			return
		except Exception as e:
			lost = e
			logger.warning("channel[%s] connection lost: %s", self.name, e)
		finally:
			logger.debug("channel[%s] recv loop stopped", self.name)
			if self._ws is ws:
				self._ws = None

		try:
			await ws.close()
		except Exception:
			logger.debug("channel[%s] close raised", self.name, exc_info=True)

		if self._closing:
			return
		self.connection_id = None
		self._state = ChannelState.RECONNECTING
		reason = "server" if server_closed else f"lost: {lost}"
		await self._emit(protocol.DISCONNECTED, {"reason": reason})
		if server_closed:
			self._start_reconnect(first_delay=self.policy.server_disconnect_delay)
		else:
			self._start_reconnect()

	async def _dispatch(self, event: str, payload: Dict[str, Any]) -> None:
		for handler in list(self._handlers.get(event, ())):
			try:
				await handler(payload)
			except Exception:
				logger.exception("channel[%s] handler failed type=%s", self.name, event)

	async def _emit(self, event: str, payload: Dict[str, Any]) -> None:
		await self._dispatch(event, payload)
