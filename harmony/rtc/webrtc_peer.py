"""One WebRTC connection to one peer (guest -> host audio)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net.protocol import IceCandidateDict, ProtocolError


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]


def build_rtc_configuration(ice_servers: Optional[Iterable[Dict[str, Any]]]) -> Optional[RTCConfiguration]:
    """Turn ``{url|urls, username?, credential?}`` descriptors into aiortc config."""

    servers: List[RTCIceServer] = []
    for desc in ice_servers or []:
        if not isinstance(desc, dict):
            continue
        urls = desc.get("urls") or desc.get("url")
        if not urls:
            logger.warning("rtc ice server without url ignored")
            continue
        servers.append(
            RTCIceServer(
                urls=urls,
                username=desc.get("username"),
                credential=desc.get("credential"),
            )
        )
    if not servers:
        return None
    return RTCConfiguration(iceServers=servers)


def _candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
    return {
        "candidate": candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def _candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ProtocolError("missing candidate")
    # Browsers prefix the attribute name; aiortc parses the bare value.
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    try:
        cand = candidate_from_sdp(cand_sdp)
    except (AssertionError, ValueError, IndexError) as e:
        raise ProtocolError(f"unparseable candidate: {e}") from e
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


@dataclass
class PeerCallbacks:
    on_connection_state: Optional[AsyncPeerCallback] = None  # (peer_id: str, state: str)
    on_local_ice: Optional[AsyncPeerCallback] = None  # (peer_id: str, candidate: dict)
    on_track: Optional[AsyncPeerCallback] = None  # (peer_id: str, track: MediaStreamTrack)


class WebRTCPeer:
    def __init__(
        self,
        peer_id: str,
        local_audio_track: Optional[MediaStreamTrack] = None,
        callbacks: Optional[PeerCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
    ):
        self.peer_id = peer_id
        self._callbacks = callbacks or PeerCallbacks()
        self._pc = RTCPeerConnection(configuration=rtc_config)
        self._closed = False

        if local_audio_track is not None:
            # Attached before any offer is created.
            self._pc.addTrack(local_audio_track)

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            if event is None or event.candidate is None:
                return
            if self._callbacks.on_local_ice:
                await self._callbacks.on_local_ice(self.peer_id, _candidate_to_json(event.candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.debug("rtc pc[%s] connectionState=%s", self.peer_id, state)
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(self.peer_id, state)

        @self._pc.on("track")
        async def on_track(track) -> None:
            logger.info("rtc pc[%s] remote track kind=%s", self.peer_id, track.kind)
            if track.kind == "audio" and self._callbacks.on_track:
                await self._callbacks.on_track(self.peer_id, track)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()

    async def create_offer(self) -> str:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def apply_answer(self, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    async def apply_offer(self, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))

    async def create_answer(self) -> str:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def add_ice_candidate(self, candidate_obj: Any) -> None:
        if not candidate_obj:
            # End-of-candidates marker.
            return
        if not isinstance(candidate_obj, dict):
            raise ProtocolError("candidate must be an object")
        await self._pc.addIceCandidate(_candidate_from_json(candidate_obj))
