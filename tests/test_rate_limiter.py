from __future__ import annotations

import httpx
import pytest

from fakes import FakeClock
from harmony.errors import RateLimitExceeded
from harmony.player.rate_limiter import (
    DEFAULT_RETRY_AFTER,
    Category,
    PlaybackRateLimiter,
    retry_after_seconds,
)


class ScriptedRequest:
    def __init__(self, clock: FakeClock, responses: list[httpx.Response]) -> None:
        self.clock = clock
        self.responses = list(responses)
        self.sent_at: list[float] = []

    async def __call__(self) -> httpx.Response:
        self.sent_at.append(self.clock.now)
        return self.responses.pop(0)


@pytest.mark.asyncio
async def test_call_inside_window_fails_fast():
    clock = FakeClock()
    limiter = PlaybackRateLimiter(clock=clock.time, sleep=clock.sleep)
    request = ScriptedRequest(clock, [httpx.Response(204), httpx.Response(204)])

    await limiter.call(Category.PLAYER_CONTROL, request)
    clock.advance(0.010)
    with pytest.raises(RateLimitExceeded) as exc:
        await limiter.call(Category.PLAYER_CONTROL, request)

    assert exc.value.category == "player-control"
    assert exc.value.retry_after == pytest.approx(0.010)
    assert len(request.sent_at) == 1
    assert clock.sleeps == []

    clock.advance(0.010)
    await limiter.call(Category.PLAYER_CONTROL, request)
    assert len(request.sent_at) == 2


@pytest.mark.asyncio
async def test_categories_have_separate_windows():
    clock = FakeClock()
    limiter = PlaybackRateLimiter(clock=clock.time, sleep=clock.sleep)

    limiter.acquire(Category.QUEUE_CONTROL)
    limiter.acquire(Category.PLAYER_CONTROL)
    limiter.acquire(Category.GENERAL)

    clock.advance(0.030)
    limiter.check(Category.PLAYER_CONTROL)
    with pytest.raises(RateLimitExceeded):
        limiter.check(Category.QUEUE_CONTROL)
    assert limiter.remaining(Category.QUEUE_CONTROL) == pytest.approx(0.020)
    assert limiter.remaining(Category.VOLUME_CONTROL) == 0.0


@pytest.mark.asyncio
async def test_wait_sleeps_until_window_opens():
    clock = FakeClock()
    limiter = PlaybackRateLimiter(clock=clock.time, sleep=clock.sleep)

    limiter.acquire(Category.DEVICE_CONTROL)
    await limiter.wait(Category.DEVICE_CONTROL)
    limiter.acquire(Category.DEVICE_CONTROL)

    assert clock.sleeps == [pytest.approx(0.050)]


@pytest.mark.asyncio
async def test_retry_after_sleeps_then_retries_once():
    clock = FakeClock()
    limiter = PlaybackRateLimiter(clock=clock.time, sleep=clock.sleep)
    request = ScriptedRequest(
        clock,
        [httpx.Response(429, headers={"Retry-After": "2"}), httpx.Response(200, json={"ok": True})],
    )

    resp = await limiter.call(Category.QUEUE_CONTROL, request)

    assert resp.status_code == 200
    assert clock.sleeps == [2.0]
    assert len(request.sent_at) == 2
    assert request.sent_at[1] - request.sent_at[0] >= 2.0


@pytest.mark.asyncio
async def test_second_throttle_is_returned_not_retried():
    clock = FakeClock()
    limiter = PlaybackRateLimiter(clock=clock.time, sleep=clock.sleep)
    request = ScriptedRequest(
        clock,
        [
            httpx.Response(429, headers={"Retry-After": "1"}),
            httpx.Response(429, headers={"Retry-After": "1"}),
            httpx.Response(200),
        ],
    )

    resp = await limiter.call(Category.GENERAL, request)

    assert resp.status_code == 429
    assert len(request.sent_at) == 2
    assert clock.sleeps == [1.0]


@pytest.mark.parametrize(
    "status, headers, expected",
    [
        (200, {}, None),
        (429, {"Retry-After": "3"}, 3.0),
        (429, {}, DEFAULT_RETRY_AFTER),
        (429, {"Retry-After": "soon"}, DEFAULT_RETRY_AFTER),
        (503, {}, None),
        (503, {"Retry-After": "0.5"}, 0.5),
    ],
)
def test_retry_after_parsing(status, headers, expected):
    assert retry_after_seconds(httpx.Response(status, headers=headers)) == expected
