from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .player.spotify import SPOTIFY_API
from .session.membership import Role


logger = logging.getLogger(__name__)


DEFAULT_SERVER_URL = "ws://127.0.0.1:8765/ws"


def env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        logger.warning("config %s=%r is not an integer, using %s", name, v, default)
        return default


def env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        logger.warning("config %s=%r is not a number, using %s", name, v, default)
        return default


def parse_ice_servers(raw: Optional[str]) -> List[Dict[str, Any]]:
    """Parse a JSON list of ``{url|urls, username?, credential?}`` objects.

    A single object and a bare comma-separated list of URLs are accepted too.
    """

    if not raw or not raw.strip():
        return []
    raw = raw.strip()
    if not raw.startswith(("[", "{")):
        return [{"urls": u.strip()} for u in raw.split(",") if u.strip()]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("config HARMONY_ICE_SERVERS is not valid JSON: %s", e)
        return []
    if isinstance(data, dict):
        data = [data]
    return [d for d in data if isinstance(d, dict)] if isinstance(data, list) else []


@dataclass
class ClientConfig:
    server_url: str = DEFAULT_SERVER_URL
    queue_url: Optional[str] = None  # defaults to server_url
    session_id: str = "default"
    role: Role = Role.GUEST
    user_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    ice_servers: List[Dict[str, Any]] = field(default_factory=list)
    spotify_api: str = SPOTIFY_API
    reconcile_interval_sec: float = 3.0
    peer_timeout_sec: float = 10.0
    supports_spotify: bool = True
    supports_apple_music: bool = False

    @property
    def effective_queue_url(self) -> str:
        return self.queue_url or self.server_url

    @classmethod
    def from_env(cls) -> "ClientConfig":
        defaults = cls()
        role_raw = os.environ.get("HARMONY_ROLE", Role.GUEST.value).strip().lower()
        try:
            role = Role(role_raw)
        except ValueError:
            logger.warning("config HARMONY_ROLE=%r unknown, using guest", role_raw)
            role = Role.GUEST
        return cls(
            server_url=os.environ.get("HARMONY_SERVER_URL", DEFAULT_SERVER_URL),
            queue_url=os.environ.get("HARMONY_QUEUE_URL") or None,
            session_id=os.environ.get("HARMONY_SESSION", defaults.session_id),
            role=role,
            user_id=os.environ.get("HARMONY_USER_ID") or defaults.user_id,
            ice_servers=parse_ice_servers(os.environ.get("HARMONY_ICE_SERVERS")),
            spotify_api=os.environ.get("HARMONY_SPOTIFY_API", SPOTIFY_API),
            reconcile_interval_sec=env_float("HARMONY_RECONCILE_INTERVAL_SEC", defaults.reconcile_interval_sec),
            peer_timeout_sec=env_float("HARMONY_PEER_TIMEOUT_SEC", defaults.peer_timeout_sec),
        )
