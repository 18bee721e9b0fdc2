"""Realtime channel protocol helpers.

The coordination server expects JSON objects on a WebSocket, one per text
frame: ``{"type": <event>, "payload": {...}}``.
See `harmony/server/app.py` for authoritative behavior.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple, TypedDict


# Session membership
JOIN_SESSION = "join-session"
LEAVE_SESSION = "leave-session"
DEVICE_CAPABILITIES = "device-capabilities"
DEVICE_LIST = "device-list"
WELCOME = "welcome"

# Shared queue
ADD_TO_QUEUE = "add-to-queue"
REMOVE_FROM_QUEUE = "remove-from-queue"
GET_QUEUE = "get-queue"
QUEUE_UPDATE = "queue-update"
QUEUE_ERROR = "queue-error"

# WebRTC signaling
WEBRTC_OFFER = "webrtc-offer"
WEBRTC_ANSWER = "webrtc-answer"
WEBRTC_ICE_CANDIDATE = "webrtc-ice-candidate"
START_STREAM_TO = "start-stream-to"

# Channel lifecycle (local only, never sent on the wire)
CONNECTED = "connected"
DISCONNECTED = "disconnected"
RECONNECTING = "reconnecting"
ERROR = "error"


class ProtocolError(ValueError):
	"""A frame or payload that does not follow the channel protocol."""

	def __init__(self, message: str):
		super().__init__(message)
		self.message = message


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


def encode(event: str, payload: Optional[Dict[str, Any]] = None) -> str:
	return json.dumps({"type": event, "payload": payload or {}}, separators=(",", ":"), ensure_ascii=False)


def decode(raw: Any) -> Tuple[str, Dict[str, Any]]:
	"""Parse one frame into ``(event, payload)``; raise ProtocolError otherwise."""
	if isinstance(raw, bytes):
		raw = raw.decode("utf-8", errors="replace")
	try:
		msg = json.loads(raw)
	except (TypeError, json.JSONDecodeError) as e:
		raise ProtocolError(f"invalid-json: {e}") from e

	if not isinstance(msg, dict):
		raise ProtocolError("invalid-message")

	mtype = msg.get("type")
	if not isinstance(mtype, str) or not mtype:
		raise ProtocolError("missing-type")

	payload = msg.get("payload", {})
	if payload is None:
		payload = {}
	if not isinstance(payload, dict):
		raise ProtocolError(f"invalid-payload type={mtype}")
	return mtype, payload


def make_join_session(session_id: str, user_id: str) -> Dict[str, Any]:
	return {"sessionId": session_id, "userId": user_id}


def make_leave_session(session_id: str) -> Dict[str, Any]:
	return {"sessionId": session_id}


def make_device_capabilities(session_id: str, user_id: str, role: str, flags: Dict[str, bool]) -> Dict[str, Any]:
	return {"sessionId": session_id, "userId": user_id, "role": role, "flags": dict(flags)}


def make_add_to_queue(session_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
	return {"sessionId": session_id, "entry": entry}


def make_remove_from_queue(session_id: str, entry_ref: str) -> Dict[str, Any]:
	return {"sessionId": session_id, "entryRef": entry_ref}


def make_get_queue(session_id: str) -> Dict[str, Any]:
	return {"sessionId": session_id}


def make_offer(session_id: str, to_peer: str, sdp: str) -> Dict[str, Any]:
	return {"sessionId": session_id, "to": to_peer, "offer": {"type": "offer", "sdp": sdp}}


def make_answer(session_id: str, to_peer: str, sdp: str) -> Dict[str, Any]:
	return {"sessionId": session_id, "to": to_peer, "answer": {"type": "answer", "sdp": sdp}}


def make_ice(session_id: str, to_peer: str, candidate: IceCandidateDict) -> Dict[str, Any]:
	return {"sessionId": session_id, "to": to_peer, "candidate": dict(candidate)}


def make_start_stream_to(from_user_id: str, to_user_id: str) -> Dict[str, Any]:
	return {"fromUserId": from_user_id, "toUserId": to_user_id}


def make_welcome(connection_id: str) -> Dict[str, Any]:
	return {"connectionId": connection_id}


def make_device_list(participants: List[Dict[str, Any]]) -> Dict[str, Any]:
	return {"participants": list(participants)}


def make_queue_update(queue: List[Dict[str, Any]]) -> Dict[str, Any]:
	return {"queue": list(queue)}


def make_queue_error(message: str) -> Dict[str, Any]:
	return {"message": message}


def require_str(payload: Dict[str, Any], key: str) -> str:
	value = payload.get(key)
	if not isinstance(value, str) or not value:
		raise ProtocolError(f"missing-{key}")
	return value


def description_sdp(payload: Dict[str, Any], key: str, expected_type: str) -> str:
	"""Extract the SDP of an ``offer``/``answer`` description."""
	desc = payload.get(key)
	if isinstance(desc, str) and desc:
		return desc
	if not isinstance(desc, dict):
		raise ProtocolError(f"missing-{key}")
	dtype = desc.get("type", expected_type)
	if dtype != expected_type:
		raise ProtocolError(f"unexpected-description-type {dtype!r} != {expected_type!r}")
	sdp = desc.get("sdp")
	if not isinstance(sdp, str) or not sdp:
		raise ProtocolError(f"missing-{key}-sdp")
	return sdp
