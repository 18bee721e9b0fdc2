"""Coordination relay server.

Holds one authoritative queue per session, broadcasts rosters and forwards
WebRTC signaling between the host and its guests. Clients talk to it through
`harmony.net.channel_client.RealtimeChannel`.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import websockets

from ..config import env_int
from ..logging_config import setup_logging
from ..net import protocol
from ..net.protocol import ProtocolError
from ..session.membership import Participant, Role
from ..session.queue_model import QueueEntry, SessionQueue


logger = logging.getLogger(__name__)


_FORWARDED = (protocol.WEBRTC_OFFER, protocol.WEBRTC_ANSWER, protocol.WEBRTC_ICE_CANDIDATE)


@dataclass
class Connection:
	id: str
	ws: Any
	session_id: Optional[str] = None
	user_id: Optional[str] = None


@dataclass
class RelaySession:
	id: str
	created_at: float = field(default_factory=time.time)
	connections: Set[str] = field(default_factory=set)
	# userId -> (participant, id of the connection that announced it)
	participants: Dict[str, Tuple[Participant, str]] = field(default_factory=dict)
	queue: SessionQueue = field(default_factory=SessionQueue)

	@property
	def host_id(self) -> Optional[str]:
		for p, _ in self.participants.values():
			if p.role is Role.HOST:
				return p.user_id
		return None

	def roster(self) -> List[Dict[str, Any]]:
		return [p.to_json() for p, _ in self.participants.values()]


class RelayServer:
	def __init__(self) -> None:
		self._connections: Dict[str, Connection] = {}
		self._sessions: Dict[str, RelaySession] = {}

	def session(self, session_id: str) -> Optional[RelaySession]:
		return self._sessions.get(session_id)

	async def register(self, ws: Any) -> Connection:
		conn = Connection(id=uuid.uuid4().hex, ws=ws)
		self._connections[conn.id] = conn
		logger.info("relay connection open id=%s", conn.id)
		await self._send(conn, protocol.WELCOME, protocol.make_welcome(conn.id))
		return conn

	async def handler(self, ws: Any) -> None:
		conn = await self.register(ws)
		try:
			async for raw in ws:
				try:
					event, payload = protocol.decode(raw)
				except ProtocolError as e:
					logger.warning("relay dropped frame conn=%s: %s", conn.id, e.message)
					continue
				try:
					await self.handle_message(conn, event, payload)
				except ProtocolError as e:
					logger.warning("relay bad %s conn=%s: %s", event, conn.id, e.message)
				except Exception:
					logger.exception("relay handler crashed type=%s conn=%s", event, conn.id)
		except websockets.exceptions.ConnectionClosed as e:
			logger.debug("relay connection closed id=%s: %s", conn.id, e)
		finally:
			await self.drop(conn)

	async def handle_message(self, conn: Connection, event: str, payload: Dict[str, Any]) -> None:
		logger.debug("relay recv type=%s conn=%s", event, conn.id)
		if event == protocol.JOIN_SESSION:
			await self._join(conn, protocol.require_str(payload, "sessionId"), payload.get("userId"))
		elif event == protocol.LEAVE_SESSION:
			await self._leave(conn)
		elif event == protocol.DEVICE_CAPABILITIES:
			await self._capabilities(conn, payload)
		elif event == protocol.ADD_TO_QUEUE:
			await self._add_to_queue(conn, payload)
		elif event == protocol.REMOVE_FROM_QUEUE:
			await self._remove_from_queue(conn, payload)
		elif event == protocol.GET_QUEUE:
			session = self._require_session(conn, payload)
			if session is not None:
				await self._send(conn, protocol.QUEUE_UPDATE, protocol.make_queue_update(session.queue.to_json()))
		elif event in _FORWARDED:
			await self._forward(conn, event, payload)
		elif event == protocol.START_STREAM_TO:
			await self._start_stream_to(conn, payload)
		else:
			logger.info("relay unknown message type=%s conn=%s", event, conn.id)

	async def drop(self, conn: Connection) -> None:
		if self._connections.pop(conn.id, None) is None:
			return
		await self._leave(conn)
		logger.info("relay connection gone id=%s", conn.id)

	# ----------------------
	# Membership
	# ----------------------
	async def _join(self, conn: Connection, session_id: str, user_id: Any) -> None:
		if conn.session_id and conn.session_id != session_id:
			await self._leave(conn)
		session = self._sessions.get(session_id)
		if session is None:
			session = RelaySession(id=session_id)
			self._sessions[session_id] = session
			logger.info("relay session created id=%s", session_id)

		conn.session_id = session_id
		if isinstance(user_id, str) and user_id:
			conn.user_id = user_id
		session.connections.add(conn.id)
		logger.info("relay join session=%s user=%s conn=%s", session_id, conn.user_id, conn.id)

		await self._send(conn, protocol.QUEUE_UPDATE, protocol.make_queue_update(session.queue.to_json()))
		await self._send(conn, protocol.DEVICE_LIST, protocol.make_device_list(session.roster()))

	async def _leave(self, conn: Connection) -> None:
		session_id, conn.session_id = conn.session_id, None
		session = self._sessions.get(session_id) if session_id else None
		if session is None:
			return
		session.connections.discard(conn.id)

		roster_changed = False
		for user_id, (_, conn_id) in list(session.participants.items()):
			if conn_id == conn.id:
				del session.participants[user_id]
				roster_changed = True
		logger.info("relay leave session=%s user=%s conn=%s", session.id, conn.user_id, conn.id)

		if not session.connections:
			del self._sessions[session.id]
			logger.info("relay session closed id=%s", session.id)
			return
		if roster_changed:
			await self._broadcast(session, protocol.DEVICE_LIST, protocol.make_device_list(session.roster()))

	async def _capabilities(self, conn: Connection, payload: Dict[str, Any]) -> None:
		session = self._require_session(conn, payload)
		if session is None:
			return
		try:
			participant = Participant.from_json(payload)
		except ValueError as e:
			raise ProtocolError(str(e)) from e

		existing = session.participants.get(participant.user_id)
		if existing is not None and existing[0].role is not participant.role:
			# A role is fixed once claimed.
			logger.warning(
				"relay role change refused session=%s user=%s %s -> %s",
				session.id,
				participant.user_id,
				existing[0].role.value,
				participant.role.value,
			)
			participant = Participant(
				user_id=participant.user_id,
				role=existing[0].role,
				supports_service_a=participant.supports_service_a,
				supports_service_b=participant.supports_service_b,
			)
		host = session.host_id
		if participant.role is Role.HOST and host is not None and host != participant.user_id:
			logger.warning("relay second host session=%s user=%s current=%s", session.id, participant.user_id, host)

		conn.user_id = participant.user_id
		session.participants[participant.user_id] = (participant, conn.id)
		await self._broadcast(session, protocol.DEVICE_LIST, protocol.make_device_list(session.roster()))

	# ----------------------
	# Queue
	# ----------------------
	async def _add_to_queue(self, conn: Connection, payload: Dict[str, Any]) -> None:
		session = self._require_session(conn, payload)
		if session is None:
			return
		try:
			entry = QueueEntry.from_json(payload.get("entry"))
		except ValueError as e:
			await self._send(conn, protocol.QUEUE_ERROR, protocol.make_queue_error(f"invalid entry: {e}"))
			return

		stored = session.queue.add(entry)
		if stored is None:
			logger.info("relay queue duplicate session=%s uri=%s", session.id, entry.uri)
			await self._send(conn, protocol.QUEUE_UPDATE, protocol.make_queue_update(session.queue.to_json()))
			return
		logger.info("relay queue add session=%s uri=%s seq=%s", session.id, stored.uri, stored.seq)
		await self._broadcast(session, protocol.QUEUE_UPDATE, protocol.make_queue_update(session.queue.to_json()))

	async def _remove_from_queue(self, conn: Connection, payload: Dict[str, Any]) -> None:
		session = self._require_session(conn, payload)
		if session is None:
			return
		ref = payload.get("entryRef")
		if not isinstance(ref, str) or not ref:
			await self._send(conn, protocol.QUEUE_ERROR, protocol.make_queue_error("missing entryRef"))
			return
		removed = session.queue.remove(ref)
		if removed is None:
			await self._send(conn, protocol.QUEUE_ERROR, protocol.make_queue_error(f"no queued entry {ref}"))
			return
		logger.info("relay queue remove session=%s uri=%s", session.id, removed.uri)
		await self._broadcast(session, protocol.QUEUE_UPDATE, protocol.make_queue_update(session.queue.to_json()))

	# ----------------------
	# Signaling
	# ----------------------
	async def _forward(self, conn: Connection, event: str, payload: Dict[str, Any]) -> None:
		session = self._require_session(conn, payload)
		if session is None or not conn.user_id:
			return
		to_user = protocol.require_str(payload, "to")
		target = self._participant_connection(session, to_user)
		if target is None:
			logger.info("relay %s to unknown user=%s session=%s dropped", event, to_user, session.id)
			return
		body = dict(payload)
		body["from"] = conn.user_id
		logger.debug("relay forward type=%s from=%s to=%s", event, conn.user_id, to_user)
		await self._send(target, event, body)

	async def _start_stream_to(self, conn: Connection, payload: Dict[str, Any]) -> None:
		session = self._sessions.get(conn.session_id) if conn.session_id else None
		if session is None:
			return
		guest = protocol.require_str(payload, "fromUserId")
		protocol.require_str(payload, "toUserId")
		target = self._participant_connection(session, guest)
		if target is None:
			logger.info("relay start-stream-to unknown user=%s session=%s", guest, session.id)
			return
		await self._send(target, protocol.START_STREAM_TO, dict(payload))

	# ----------------------
	# Helpers
	# ----------------------
	def _require_session(self, conn: Connection, payload: Dict[str, Any]) -> Optional[RelaySession]:
		session_id = payload.get("sessionId")
		if not conn.session_id or (session_id is not None and session_id != conn.session_id):
			logger.info("relay message for session=%s from conn=%s not in it", session_id, conn.id)
			return None
		return self._sessions.get(conn.session_id)

	def _participant_connection(self, session: RelaySession, user_id: str) -> Optional[Connection]:
		entry = session.participants.get(user_id)
		if entry is None:
			return None
		return self._connections.get(entry[1])

	async def _send(self, conn: Connection, event: str, payload: Dict[str, Any]) -> bool:
		try:
			await conn.ws.send(protocol.encode(event, payload))
			return True
		except websockets.exceptions.ConnectionClosed:
			logger.debug("relay send to closed conn=%s type=%s", conn.id, event)
			return False

	async def _broadcast(self, session: RelaySession, event: str, payload: Dict[str, Any]) -> None:
		for conn_id in list(session.connections):
			conn = self._connections.get(conn_id)
			if conn is not None:
				await self._send(conn, event, payload)


async def serve(host: str, port: int) -> None:
	relay = RelayServer()
	async with websockets.serve(relay.handler, host, port, max_size=1_048_576):
		logger.info("relay listening on ws://%s:%s", host, port)
		await asyncio.Future()


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="harmony coordination relay")
	parser.add_argument("--host", default=os.environ.get("HARMONY_RELAY_HOST", "127.0.0.1"))
	parser.add_argument("--port", type=int, default=env_int("HARMONY_RELAY_PORT", 8765))
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use HARMONY_LOG_LEVEL.",
	)
	args = parser.parse_args(argv)

	setup_logging(args.log_level)
	try:
		asyncio.run(serve(args.host, args.port))
	except KeyboardInterrupt:
		logger.info("relay stopped")
	return 0


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
