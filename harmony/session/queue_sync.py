"""Shared queue replica and reconciliation against the external player.

Every device keeps a replica of the session queue broadcast by the server and
proposes changes through the queue channel. Only the host, which holds a
player client, reconciles: it pushes the replica's entries into the external
player's own queue.

Reconciliation rules:
- membership only: URIs present locally but absent externally are enqueued in
  local insertion order; external positions are never corrected.
- a lone first entry drains the external queue (bounded by its observed
  length) so it plays next instead of behind stale tracks.
- at most one pass per ``min_interval`` and at most one pass in flight; bursts
  collapse into one trailing pass over the freshest snapshot.
- a pass checks every skip and enqueue against the freshest snapshot: the
  drain continues only while its entry still leads, an enqueue only while the
  entry is still queued. The follow-up pass handles the rest.
- a failed read of the external queue or device is reported and retried on
  the pacing schedule, at most MAX_READ_RETRIES times in a row.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Tuple, Union

from ..errors import AuthExpired, HarmonyError, RateLimitExceeded, ReconciliationError
from ..net import protocol
from ..net.channel_client import RealtimeChannel, Subscription
from ..player.rate_limiter import Category
from ..player.spotify import SpotifyPlayer
from .queue_model import QueueEntry, parse_snapshot


logger = logging.getLogger(__name__)


QueueHandler = Callable[[List[QueueEntry]], Awaitable[None]]
ErrorHandler = Callable[[HarmonyError], Awaitable[None]]

DEFAULT_MIN_INTERVAL = 3.0
# Paced retries after the external queue or device could not be read.
MAX_READ_RETRIES = 3


class ReconcileSupervisor:
    """Holds at most one in-flight reconciliation task plus a superseded marker."""

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task[None]] = None
        self.superseded = False

    @property
    def task(self) -> Optional[asyncio.Task[None]]:
        return self._task

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        if self.busy:
            coro.close()
            raise RuntimeError("reconciliation already in flight")
        self.superseded = False
        self._task = asyncio.create_task(coro, name="queue-reconcile")
        return self._task

    def mark_superseded(self) -> None:
        self.superseded = True

    def release(self) -> bool:
        """Free the slot; return whether a newer snapshot is waiting."""
        pending = self.superseded
        self.superseded = False
        self._task = None
        return pending

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class QueueSynchronizer:
    def __init__(
        self,
        channel: RealtimeChannel,
        session_id: str,
        *,
        player: Optional[SpotifyPlayer] = None,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_auth_expired: Optional[Callable[[AuthExpired], Awaitable[None]]] = None,
    ):
        self._channel = channel
        self._session_id = session_id
        self._player = player
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._on_auth_expired = on_auth_expired

        self._replica: List[QueueEntry] = []
        self._update_seq = 0
        self._last_pass_at: Optional[float] = None
        self._last_committed: Optional[Tuple[str, ...]] = None
        self._supervisor = ReconcileSupervisor()
        self._deferred: Optional[asyncio.Task[None]] = None
        self._halted = False
        self._read_failures = 0

        self._queue_handlers: List[QueueHandler] = []
        self._error_handlers: List[ErrorHandler] = []
        self._subscriptions: List[Subscription] = []
        self.passes = 0

    @property
    def reconciles(self) -> bool:
        return self._player is not None

    @property
    def update_seq(self) -> int:
        return self._update_seq

    def start(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self._channel.on(protocol.QUEUE_UPDATE, self._on_queue_update),
            self._channel.on(protocol.QUEUE_ERROR, self._on_queue_error),
        ]

    async def stop(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        deferred, self._deferred = self._deferred, None
        if deferred and not deferred.done():
            deferred.cancel()
            try:
                await deferred
            except asyncio.CancelledError:
                pass
        await self._supervisor.cancel()

    def on_queue_changed(self, handler: QueueHandler) -> Subscription:
        return _subscribe(self._queue_handlers, handler)

    def on_error(self, handler: ErrorHandler) -> Subscription:
        return _subscribe(self._error_handlers, handler)

    # ----------------------
    # Queue operations
    # ----------------------
    def get_queue(self) -> List[QueueEntry]:
        return list(self._replica)

    async def add_to_queue(self, entry: QueueEntry) -> bool:
        if any(e.key == entry.key for e in self._replica):
            logger.info("queue add skipped, already queued source=%s uri=%s", entry.source, entry.uri)
            return False
        logger.info("queue add session=%s source=%s uri=%s", self._session_id, entry.source, entry.uri)
        await self._channel.send(protocol.ADD_TO_QUEUE, protocol.make_add_to_queue(self._session_id, entry.to_json()))
        return True

    async def remove_from_queue(self, entry_ref: Union[str, QueueEntry]) -> None:
        ref = entry_ref.id if isinstance(entry_ref, QueueEntry) else entry_ref
        logger.info("queue remove session=%s ref=%s", self._session_id, ref)
        await self._channel.send(protocol.REMOVE_FROM_QUEUE, protocol.make_remove_from_queue(self._session_id, ref))

    async def request_queue(self) -> None:
        await self._channel.send(protocol.GET_QUEUE, protocol.make_get_queue(self._session_id))

    async def on_remote_queue_update(self, queue: List[QueueEntry]) -> None:
        self._update_seq += 1
        self._replica = list(queue)
        logger.debug("queue update seq=%s entries=%s", self._update_seq, len(queue))

        for handler in list(self._queue_handlers):
            try:
                await handler(self.get_queue())
            except Exception:
                logger.exception("queue change handler failed")

        if self._player is None or self._halted:
            return
        if self._supervisor.busy:
            self._supervisor.mark_superseded()
            logger.debug("queue reconcile in flight, seq=%s marked superseding", self._update_seq)
            return
        self._schedule()

    def resume(self) -> None:
        """Allow reconciliation again after credentials were restored."""
        self._halted = False
        self._last_committed = None
        if self._player is not None and not self._supervisor.busy:
            self._schedule()

    async def wait_idle(self) -> None:
        """Wait until no pass is in flight or planned."""
        while True:
            tasks = [t for t in (self._deferred, self._supervisor.task) if t is not None and not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ----------------------
    # Pacing and supervision
    # ----------------------
    def _schedule(self) -> None:
        if self._deferred is not None and not self._deferred.done():
            # The trailing pass reads the freshest snapshot when it fires.
            return

        wait = 0.0
        if self._last_pass_at is not None:
            wait = self._min_interval - (self._clock() - self._last_pass_at)
        if wait > 0:
            logger.debug("queue reconcile deferred %.3fs", wait)
            self._deferred = asyncio.create_task(self._deferred_pass(wait), name="queue-reconcile-deferred")
            return
        self._start_pass()

    async def _deferred_pass(self, wait: float) -> None:
        await self._sleep(wait)
        self._deferred = None
        if self._halted:
            return
        if self._supervisor.busy:
            self._supervisor.mark_superseded()
            return
        self._start_pass()

    def _start_pass(self) -> None:
        seq = self._update_seq
        snapshot = list(self._replica)
        self._last_pass_at = self._clock()
        self.passes += 1
        self._supervisor.start(self._run_pass(seq, snapshot))

    async def _run_pass(self, seq: int, snapshot: List[QueueEntry]) -> None:
        retry = False
        try:
            retry = await self._reconcile(seq, snapshot)
        except AuthExpired as e:
            await self._handle_auth_expired(e)
        except Exception:
            logger.exception("queue reconcile pass crashed seq=%s", seq)

        if retry:
            self._read_failures += 1
            if self._read_failures > MAX_READ_RETRIES:
                logger.error("queue reconcile giving up after %s failed reads", self._read_failures)
                self._read_failures = 0
                retry = False
        else:
            self._read_failures = 0

        pending = self._supervisor.release() or self._update_seq != seq or retry
        if pending and not self._halted:
            logger.debug("queue reconcile re-evaluating seq=%s -> %s retry=%s", seq, self._update_seq, retry)
            self._schedule()

    # ----------------------
    # Reconciliation
    # ----------------------
    def _current_uris(self, source: str) -> List[str]:
        return [e.uri for e in self._replica if e.source == source]

    def _still_leads(self, seq: int, source: str, uri: str) -> bool:
        """Whether ``uri`` is still the first player entry of the freshest snapshot."""
        if self._update_seq == seq:
            return True
        current = self._current_uris(source)
        if current and current[0] == uri:
            return True
        logger.info("queue reconcile seq=%s: %s no longer leads seq=%s, drain stopped", seq, uri, self._update_seq)
        return False

    def _still_wanted(self, seq: int, source: str, uri: str) -> bool:
        if self._update_seq == seq or uri in self._current_uris(source):
            return True
        logger.info("queue reconcile seq=%s: %s removed by seq=%s, not enqueued", seq, uri, self._update_seq)
        return False

    async def _reconcile(self, seq: int, snapshot: List[QueueEntry]) -> bool:
        """Run one pass; return True when the external state could not be read."""
        player = self._player
        assert player is not None
        source = player.source

        wanted = [e for e in snapshot if e.source == source]
        uris = tuple(e.uri for e in wanted)
        if uris == self._last_committed:
            logger.debug("queue reconcile seq=%s no changes since last pass", seq)
            return False
        if not wanted:
            self._last_committed = uris
            return False

        await player.limiter.wait(Category.GENERAL)
        try:
            external = await player.get_queue()
        except (ReconciliationError, RateLimitExceeded) as e:
            logger.warning("queue reconcile could not read external queue: %s", e)
            await self._notify_error(e)
            return True
        complete = True

        if len(wanted) == 1 and external:
            first = wanted[0].uri
            logger.info("queue reconcile draining external queue count=%s", len(external))
            for _ in range(len(external)):
                if not self._still_leads(seq, source, first):
                    return False
                await player.limiter.wait(Category.PLAYER_CONTROL)
                try:
                    await player.skip_next()
                except (ReconciliationError, RateLimitExceeded) as e:
                    complete = False
                    logger.warning("queue reconcile skip failed: %s", e)
            external = []

        present = set(external)
        missing = [e for e in wanted if e.uri not in present]
        logger.info(
            "queue reconcile seq=%s local=%s external=%s missing=%s", seq, len(wanted), len(present), len(missing)
        )

        if missing:
            await player.limiter.wait(Category.GENERAL)
            try:
                device_id: Optional[str] = await player.ensure_active_device()
            except (ReconciliationError, RateLimitExceeded) as e:
                logger.warning("queue reconcile has no playback device: %s", e)
                await self._notify_error(e)
                return True

            for entry in missing:
                if not self._still_wanted(seq, source, entry.uri):
                    complete = False
                    continue
                await player.limiter.wait(Category.QUEUE_CONTROL)
                try:
                    await player.enqueue(entry.uri, device_id=device_id)
                except (ReconciliationError, RateLimitExceeded) as e:
                    complete = False
                    logger.warning("queue reconcile enqueue failed uri=%s: %s", entry.uri, e)
                    err = e if isinstance(e, ReconciliationError) else ReconciliationError(str(e), uri=entry.uri)
                    await self._notify_error(err)
                    continue
                logger.debug("queue reconcile enqueued uri=%s", entry.uri)

        if complete and self._update_seq == seq:
            self._last_committed = uris
        return False

    async def _handle_auth_expired(self, exc: AuthExpired) -> None:
        logger.error("queue reconcile aborted, credentials rejected: %s", exc)
        self._halted = True
        self._last_committed = None
        if self._on_auth_expired is not None:
            try:
                await self._on_auth_expired(exc)
            except Exception:
                logger.exception("auth-expired handler failed")
        await self._notify_error(exc)

    async def _notify_error(self, exc: HarmonyError) -> None:
        for handler in list(self._error_handlers):
            try:
                await handler(exc)
            except Exception:
                logger.exception("queue error handler failed")

    # ----------------------
    # Channel handlers
    # ----------------------
    async def _on_queue_update(self, payload: Dict[str, Any]) -> None:
        await self.on_remote_queue_update(parse_snapshot(payload.get("queue")))

    async def _on_queue_error(self, payload: Dict[str, Any]) -> None:
        message = str(payload.get("message") or "queue error")
        logger.warning("queue error from server: %s", message)
        await self._notify_error(ReconciliationError(message))


def _subscribe(handlers: List[Any], handler: Any) -> Subscription:
    handlers.append(handler)

    def _release() -> None:
        if handler in handlers:
            handlers.remove(handler)

    return Subscription(_release)
