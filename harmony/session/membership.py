"""Session roster and capability tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..net import protocol
from ..net.channel_client import RealtimeChannel, Subscription


logger = logging.getLogger(__name__)


class Role(str, Enum):
    HOST = "host"
    GUEST = "guest"


@dataclass(frozen=True)
class Participant:
    """One device in a session. The role is claimed once, at creation."""

    user_id: str
    role: Role
    supports_service_a: bool = False  # Spotify
    supports_service_b: bool = False  # Apple Music

    @property
    def is_host(self) -> bool:
        return self.role is Role.HOST

    def flags(self) -> Dict[str, bool]:
        return {
            "supportsServiceA": self.supports_service_a,
            "supportsServiceB": self.supports_service_b,
        }

    def to_json(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "role": self.role.value, "flags": self.flags()}

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "Participant":
        user_id = obj.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("participant without userId")
        try:
            role = Role(obj.get("role", Role.GUEST.value))
        except ValueError as e:
            raise ValueError(f"participant {user_id} has unknown role") from e
        flags = obj.get("flags") or {}
        return cls(
            user_id=user_id,
            role=role,
            supports_service_a=bool(flags.get("supportsServiceA")),
            supports_service_b=bool(flags.get("supportsServiceB")),
        )


RosterHandler = Callable[[List[Participant]], Awaitable[None]]


class MembershipRegistry:
    def __init__(self, channel: RealtimeChannel):
        self._channel = channel
        self._session_id: Optional[str] = None
        self._participant: Optional[Participant] = None
        self._host_id: Optional[str] = None
        self._others: Dict[str, Participant] = {}
        self._handlers: List[RosterHandler] = []
        self._subscriptions: List[Subscription] = []

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def participant(self) -> Optional[Participant]:
        return self._participant

    @property
    def host_id(self) -> Optional[str]:
        return self._host_id

    async def join(self, session_id: str, participant: Participant) -> None:
        if self._participant is not None:
            raise RuntimeError(f"already joined session {self._session_id}")

        self._session_id = session_id
        self._participant = participant
        if participant.is_host:
            self._host_id = participant.user_id
        logger.info("membership join session=%s user=%s role=%s", session_id, participant.user_id, participant.role.value)

        self._subscriptions = [
            self._channel.on(protocol.DEVICE_LIST, self._on_device_list),
            self._channel.on(protocol.CONNECTED, self._on_connected),
        ]
        await self._channel.join_session(session_id, protocol.make_join_session(session_id, participant.user_id))
        await self._announce()

    async def leave(self) -> None:
        if self._participant is None:
            return
        logger.info("membership leave session=%s", self._session_id)
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        await self._channel.leave_session()
        self._session_id = None
        self._participant = None
        self._host_id = None
        self._others.clear()

    def on_roster_update(self, handler: RosterHandler) -> Subscription:
        self._handlers.append(handler)

        def _release() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return Subscription(_release)

    def current_roster(self) -> List[Participant]:
        """Guests visible to this device, excluding itself."""

        return [p for p in self._others.values() if p.role is Role.GUEST]

    def participants(self) -> List[Participant]:
        return list(self._others.values())

    async def _announce(self) -> None:
        if not self._channel.is_connected or self._participant is None or self._session_id is None:
            return
        p = self._participant
        await self._channel.send(
            protocol.DEVICE_CAPABILITIES,
            protocol.make_device_capabilities(self._session_id, p.user_id, p.role.value, p.flags()),
        )

    async def _on_connected(self, payload: Dict[str, Any]) -> None:
        # The channel has already re-joined; tell the new connection who we are.
        await self._announce()

    async def _on_device_list(self, payload: Dict[str, Any]) -> None:
        me = self._participant
        if me is None:
            return

        others: Dict[str, Participant] = {}
        for item in payload.get("participants") or []:
            try:
                p = Participant.from_json(item)
            except (ValueError, AttributeError) as e:
                logger.warning("membership roster entry dropped: %s", e)
                continue
            if p.user_id == me.user_id:
                if p.role is not me.role:
                    logger.warning(
                        "membership ignoring roster role=%s for self (claimed %s)", p.role.value, me.role.value
                    )
                continue
            others[p.user_id] = p

        self._others = others
        if not me.is_host:
            hosts = [p.user_id for p in others.values() if p.is_host]
            self._host_id = hosts[0] if hosts else None
        roster = self.current_roster()
        logger.info("membership roster session=%s guests=%s host=%s", self._session_id, len(roster), self._host_id)
        for handler in list(self._handlers):
            try:
                await handler(roster)
            except Exception:
                logger.exception("membership roster handler failed")
