"""Per-category gate for outbound player API calls."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Mapping, Optional

import httpx

from ..errors import RateLimitExceeded


logger = logging.getLogger(__name__)


class Category(str, Enum):
    PLAYER_CONTROL = "player-control"
    DEVICE_CONTROL = "device-control"
    VOLUME_CONTROL = "volume-control"
    QUEUE_CONTROL = "queue-control"
    GENERAL = "general"


# Minimum spacing between two calls of the same category, in seconds.
MIN_INTERVALS: Dict[Category, float] = {
    Category.PLAYER_CONTROL: 0.020,
    Category.DEVICE_CONTROL: 0.050,
    Category.VOLUME_CONTROL: 0.050,
    Category.QUEUE_CONTROL: 0.050,
    Category.GENERAL: 0.050,
}

# Used when a 429 arrives without a usable Retry-After header.
DEFAULT_RETRY_AFTER = 5.0


@dataclass
class RateLimitWindow:
    category: Category
    last_call: Optional[float] = None


def retry_after_seconds(response: httpx.Response) -> Optional[float]:
    """Return the server-requested pause for a throttled response, else None."""

    if response.status_code not in (429, 503):
        return None
    raw = response.headers.get("Retry-After")
    if raw is None:
        return DEFAULT_RETRY_AFTER if response.status_code == 429 else None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return DEFAULT_RETRY_AFTER


class PlaybackRateLimiter:
    """Fail-fast spacing per category, plus one transparent Retry-After retry.

    One instance belongs to one player session; nothing is shared globally.
    """

    def __init__(
        self,
        intervals: Optional[Mapping[Category, float]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._intervals = dict(MIN_INTERVALS)
        if intervals:
            self._intervals.update(intervals)
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[Category, RateLimitWindow] = {c: RateLimitWindow(c) for c in Category}

    def window(self, category: Category) -> RateLimitWindow:
        return self._windows[category]

    def remaining(self, category: Category) -> float:
        """Seconds until ``category`` may be called again (0 when open)."""

        window = self._windows[category]
        if window.last_call is None:
            return 0.0
        elapsed = self._clock() - window.last_call
        remaining = self._intervals[category] - elapsed
        # Float noise after sleeping exactly the remaining time.
        return remaining if remaining > 1e-9 else 0.0

    def check(self, category: Category) -> None:
        remaining = self.remaining(category)
        if remaining > 0:
            raise RateLimitExceeded(category.value, remaining)

    async def wait(self, category: Category) -> None:
        """Sleep until the window is open; for batch callers that pace themselves."""

        remaining = self.remaining(category)
        if remaining > 0:
            await self._sleep(remaining)

    def acquire(self, category: Category) -> None:
        self.check(category)
        self._windows[category].last_call = self._clock()

    async def call(
        self,
        category: Category,
        request: Callable[[], Awaitable[httpx.Response]],
    ) -> httpx.Response:
        self.acquire(category)
        response = await request()

        retry_after = retry_after_seconds(response)
        if retry_after is None:
            return response

        logger.warning(
            "player throttled category=%s status=%s retry_after=%.3fs",
            category.value,
            response.status_code,
            retry_after,
        )
        await self._sleep(retry_after)
        # The server's instruction overrides the local window.
        self._windows[category].last_call = self._clock()
        return await request()
