"""Per-session wiring of channel, roster, queue, player and signaling.

A `SessionContext` is built when a device joins a session and torn down when it
leaves; nothing here is module-global.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack

from ..config import ClientConfig
from ..errors import AuthExpired, ChannelError, HarmonyError
from ..net import protocol
from ..net.channel_client import QUEUE_CHANNEL_POLICY, Connector, RealtimeChannel, SleepFn, Subscription
from ..player.credentials import CredentialStore, StaticCredentials
from ..player.rate_limiter import PlaybackRateLimiter
from ..player.spotify import SpotifyPlayer
from ..rtc.audio import AudioConfig, LocalAudio, SinkRegistry
from ..rtc.signaling import CoordinatorCallbacks, PeerFactory, SignalingCoordinator
from .membership import MembershipRegistry, Participant
from .queue_model import QueueEntry
from .queue_sync import QueueSynchronizer


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class SessionCallbacks:
    on_terminal_failure: Optional[AsyncCallback] = None  # (error: HarmonyError)
    on_queue_changed: Optional[AsyncCallback] = None  # (queue: list[QueueEntry])
    on_roster: Optional[AsyncCallback] = None  # (guests: list[Participant])
    on_error: Optional[AsyncCallback] = None  # (error: HarmonyError)


class SessionContext:
    def __init__(
        self,
        config: ClientConfig,
        *,
        credentials: Optional[CredentialStore] = None,
        callbacks: Optional[SessionCallbacks] = None,
        connector: Optional[Connector] = None,
        sleep: Optional[SleepFn] = None,
        player: Optional[SpotifyPlayer] = None,
        peer_factory: Optional[PeerFactory] = None,
        audio: Optional[AudioConfig] = None,
        sinks: Optional[SinkRegistry] = None,
        local_track_factory: Optional[Callable[[], Optional[MediaStreamTrack]]] = None,
    ):
        self.config = config
        self.session_id = config.session_id
        self.participant = Participant(
            user_id=config.user_id,
            role=config.role,
            supports_service_a=config.supports_spotify,
            supports_service_b=config.supports_apple_music,
        )
        self.callbacks = callbacks or SessionCallbacks()
        self.credentials: CredentialStore = credentials or StaticCredentials.from_env()
        self._audio_config = audio or AudioConfig.from_env()
        self._local_audio: Optional[LocalAudio] = None
        self.sinks = sinks or SinkRegistry(output=self._audio_config.output_device)

        self.channel = RealtimeChannel(config.server_url, name="primary", connector=connector, sleep=sleep)
        self.queue_channel = RealtimeChannel(
            config.effective_queue_url,
            name="queue",
            policy=QUEUE_CHANNEL_POLICY,
            connector=connector,
            sleep=sleep,
        )
        self.membership = MembershipRegistry(self.channel)

        # Only the host drives the external player.
        self.player: Optional[SpotifyPlayer] = None
        if self.participant.is_host:
            self.player = player or SpotifyPlayer(
                self.credentials,
                limiter=PlaybackRateLimiter(),
                base_url=config.spotify_api,
            )

        self.queue = QueueSynchronizer(
            self.queue_channel,
            self.session_id,
            player=self.player,
            min_interval=config.reconcile_interval_sec,
            on_auth_expired=self._on_auth_expired,
        )
        self.signaling = SignalingCoordinator(
            self.channel,
            self.session_id,
            self.participant,
            ice_servers=config.ice_servers,
            local_track_factory=None if self.participant.is_host else (local_track_factory or self._local_track),
            peer_factory=peer_factory,
            callbacks=CoordinatorCallbacks(
                on_remote_stream=self._on_remote_stream,
                on_pair_closed=self._on_pair_closed,
            ),
            connect_timeout=config.peer_timeout_sec,
        )

        self._subscriptions: List[Subscription] = []
        self._requested: Set[str] = set()
        self._started = False
        self._failed = False

    @property
    def is_host(self) -> bool:
        return self.participant.is_host

    @property
    def failed(self) -> bool:
        return self._failed

    async def __aenter__(self) -> "SessionContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info(
            "session start id=%s user=%s role=%s", self.session_id, self.participant.user_id, self.participant.role.value
        )

        self._subscriptions = [
            self.channel.on(protocol.ERROR, self._on_channel_error),
            self.queue_channel.on(protocol.ERROR, self._on_channel_error),
            self.membership.on_roster_update(self._on_roster),
            self.queue.on_queue_changed(self._on_queue_changed),
            self.queue.on_error(self._on_queue_error),
        ]
        self.signaling.start()
        self.queue.start()

        await self.channel.connect()
        await self.queue_channel.connect()
        # Joining registers the session on each channel, also for later reconnects.
        await self.membership.join(self.session_id, self.participant)
        await self.queue_channel.join_session(
            self.session_id, protocol.make_join_session(self.session_id, self.participant.user_id)
        )

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        logger.info("session close id=%s", self.session_id)

        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

        await self.signaling.close()
        await self.queue.stop()
        try:
            await self.membership.leave()
        except ChannelError as e:
            logger.debug("session leave not delivered: %s", e)
        await self.channel.disconnect()
        await self.queue_channel.disconnect()

        await self.sinks.close()
        if self._local_audio is not None:
            self._local_audio.close()
            self._local_audio = None
        if self.player is not None:
            await self.player.aclose()
        self._requested.clear()

    # ----------------------
    # Queue operations
    # ----------------------
    def get_queue(self) -> List[QueueEntry]:
        return self.queue.get_queue()

    async def add_to_queue(self, entry: QueueEntry) -> bool:
        return await self.queue.add_to_queue(entry)

    async def remove_from_queue(self, entry_ref: Any) -> None:
        await self.queue.remove_from_queue(entry_ref)

    # ----------------------
    # Host playback
    # ----------------------
    def restore_credentials(self, credentials: CredentialStore) -> None:
        """Swap in fresh credentials after an auth expiry and resume reconciliation."""

        self.credentials = credentials
        if self.player is not None:
            self.player.credentials = credentials
        self._failed = False
        logger.info("session credentials restored id=%s", self.session_id)
        self.queue.resume()

    async def set_playing(self, playing: bool) -> None:
        player = self._host_player("set_playing")
        await player.set_playing(playing, device_id=await player.ensure_active_device())

    async def set_volume(self, percent: int) -> None:
        player = self._host_player("set_volume")
        await player.set_volume(percent, device_id=await player.ensure_active_device())

    def _host_player(self, op: str) -> SpotifyPlayer:
        if self.player is None:
            raise HarmonyError(f"{op} needs the host's player; this device joined as a guest")
        return self.player

    # ----------------------
    # Internal handlers
    # ----------------------
    def _local_track(self) -> Optional[MediaStreamTrack]:
        # Each offer gets a fresh capture; the previous attempt's pc is gone.
        if self._local_audio is not None:
            self._local_audio.close()
        self._local_audio = LocalAudio.create(self._audio_config)
        return self._local_audio.track

    async def _on_remote_stream(self, peer_id: str, track: MediaStreamTrack) -> None:
        sink = await self.sinks.attach(peer_id, track)
        logger.info("session rendering guest=%s sink=%s", peer_id, sink.sink)

    async def _on_pair_closed(self, peer_id: str) -> None:
        self._requested.discard(peer_id)
        await self.sinks.detach(peer_id)

    async def _on_roster(self, guests: List[Participant]) -> None:
        if self.is_host:
            present = {g.user_id for g in guests}
            for peer_id in list(self._requested - present):
                # Guest left; drop its pair so a rejoin starts clean.
                await self.signaling.close_pair(peer_id)
                self._requested.discard(peer_id)
            for guest in guests:
                if guest.user_id in self._requested:
                    continue
                await self._request_stream(guest.user_id)
        if self.callbacks.on_roster:
            await self.callbacks.on_roster(guests)

    async def _request_stream(self, guest_id: str) -> None:
        try:
            await self.channel.send(
                protocol.START_STREAM_TO,
                protocol.make_start_stream_to(guest_id, self.participant.user_id),
            )
        except ChannelError as e:
            logger.warning("session start-stream-to guest=%s not delivered: %s", guest_id, e)
            return
        self._requested.add(guest_id)

    async def _on_queue_changed(self, queue: List[QueueEntry]) -> None:
        if self.callbacks.on_queue_changed:
            await self.callbacks.on_queue_changed(queue)

    async def _on_queue_error(self, exc: HarmonyError) -> None:
        if isinstance(exc, AuthExpired):
            # Reported through _on_auth_expired already.
            return
        if self.callbacks.on_error:
            await self.callbacks.on_error(exc)

    async def _on_auth_expired(self, exc: AuthExpired) -> None:
        self.credentials.invalidate()
        try:
            await self.queue.request_queue()
        except ChannelError as e:
            logger.warning("session queue reload not sent: %s", e)
        await self._terminal(exc)

    async def _on_channel_error(self, payload: Dict[str, Any]) -> None:
        err = payload.get("error")
        if isinstance(err, ChannelError) and err.terminal:
            await self._terminal(err)
        elif isinstance(err, HarmonyError) and self.callbacks.on_error:
            await self.callbacks.on_error(err)

    async def _terminal(self, exc: HarmonyError) -> None:
        logger.error("session terminal failure id=%s: %s", self.session_id, exc)
        self._failed = True
        if isinstance(exc, ChannelError):
            await self.signaling.close()
            self._requested.clear()
        if self.callbacks.on_terminal_failure:
            await self.callbacks.on_terminal_failure(exc)
