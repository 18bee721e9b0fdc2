"""Spotify Web API player surface used by the host.

Every call is bearer-authenticated and passes through the session's
`PlaybackRateLimiter`. A 401 becomes `AuthExpired`; any other failure becomes
`PlayerAPIError` so callers can skip a single entry and continue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..errors import AuthExpired, PlayerAPIError
from .credentials import CredentialStore
from .rate_limiter import Category, PlaybackRateLimiter


logger = logging.getLogger(__name__)


SPOTIFY_API = "https://api.spotify.com/v1"


@dataclass(frozen=True)
class PlayerDevice:
    id: str
    name: str
    is_active: bool = False
    volume_percent: Optional[int] = None

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "PlayerDevice":
        volume = obj.get("volume_percent")
        return cls(
            id=str(obj.get("id") or ""),
            name=str(obj.get("name") or ""),
            is_active=bool(obj.get("is_active")),
            volume_percent=int(volume) if isinstance(volume, (int, float)) else None,
        )


class SpotifyPlayer:
    source = "spotify"

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[PlaybackRateLimiter] = None,
        base_url: str = SPOTIFY_API,
        settle_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._credentials = credentials
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10)
        self._limiter = limiter or PlaybackRateLimiter()
        self._base_url = base_url.rstrip("/")
        self._settle_delay = settle_delay
        self._sleep = sleep

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @credentials.setter
    def credentials(self, credentials: CredentialStore) -> None:
        self._credentials = credentials

    @property
    def limiter(self) -> PlaybackRateLimiter:
        return self._limiter

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_queue(self) -> List[str]:
        """URIs of the tracks queued after the current one, in play order."""

        resp = await self._request(Category.GENERAL, "GET", "/me/player/queue")
        if resp.status_code == 204 or not resp.content:
            return []
        data = resp.json()
        items = data.get("queue") if isinstance(data, dict) else None
        uris: List[str] = []
        for item in items or []:
            uri = item.get("uri") if isinstance(item, dict) else None
            if isinstance(uri, str) and uri:
                uris.append(uri)
        return uris

    async def enqueue(self, uri: str, *, device_id: Optional[str] = None) -> None:
        params = {"uri": uri}
        if device_id:
            params["device_id"] = device_id
        await self._request(Category.QUEUE_CONTROL, "POST", "/me/player/queue", params=params, uri=uri)

    async def skip_next(self) -> None:
        await self._request(Category.PLAYER_CONTROL, "POST", "/me/player/next")

    async def list_devices(self) -> List[PlayerDevice]:
        resp = await self._request(Category.GENERAL, "GET", "/me/player/devices")
        data = resp.json() if resp.content else {}
        devices = data.get("devices") if isinstance(data, dict) else None
        return [PlayerDevice.from_json(d) for d in devices or [] if isinstance(d, dict)]

    async def transfer_playback(self, device_id: str, *, play: bool = False) -> None:
        body = {"device_ids": [device_id], "play": play}
        await self._request(Category.DEVICE_CONTROL, "PUT", "/me/player", json=body)

    async def set_playing(self, playing: bool, *, device_id: Optional[str] = None) -> None:
        path = "/me/player/play" if playing else "/me/player/pause"
        params = {"device_id": device_id} if device_id else None
        await self._request(Category.PLAYER_CONTROL, "PUT", path, params=params)

    async def set_volume(self, percent: int, *, device_id: Optional[str] = None) -> None:
        params: Dict[str, Any] = {"volume_percent": max(0, min(100, int(percent)))}
        if device_id:
            params["device_id"] = device_id
        await self._request(Category.VOLUME_CONTROL, "PUT", "/me/player/volume", params=params)

    async def ensure_active_device(self) -> str:
        """Return the active device id, activating the first device if none is.

        Queue operations fail on Spotify without an active device.
        """

        devices = await self.list_devices()
        if not devices:
            raise PlayerAPIError(
                "No available Spotify devices found. Open Spotify on any device.",
                status_code=404,
            )
        for device in devices:
            if device.is_active:
                return device.id

        target = devices[0]
        logger.info("player no active device, transferring to id=%s name=%s", target.id, target.name)
        await self._limiter.wait(Category.DEVICE_CONTROL)
        await self.transfer_playback(target.id, play=False)
        if self._settle_delay > 0:
            await self._sleep(self._settle_delay)
        return target.id

    async def _request(
        self,
        category: Category,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        uri: Optional[str] = None,
    ) -> httpx.Response:
        token = self._credentials.access_token()
        if not token:
            raise AuthExpired("no Spotify access token")
        headers = {"Authorization": f"Bearer {token}"}
        url = f"{self._base_url}{path}"

        async def _send() -> httpx.Response:
            return await self._client.request(method, url, params=params, json=json, headers=headers)

        logger.debug("player request method=%s path=%s category=%s", method, path, category.value)
        try:
            resp = await self._limiter.call(category, _send)
        except httpx.HTTPError as e:
            raise PlayerAPIError(f"{method} {path} failed: {e}", status_code=0, uri=uri) from e

        if resp.status_code == 401:
            raise AuthExpired(f"{method} {path} rejected the access token")
        if resp.status_code >= 400:
            raise PlayerAPIError(
                f"{method} {path} status={resp.status_code} body={resp.text[:200]}",
                status_code=resp.status_code,
                uri=uri,
            )
        return resp
