"""Tests for the cancellation token and fixed-rate ticker."""

import asyncio
import time

import pytest

from services.cancellation import CancellationToken, Ticker


@pytest.mark.asyncio
class TestCancellationToken:
    async def test_sleep_completes_when_not_cancelled(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is True

    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, "manual")

        started = time.monotonic()
        assert await token.sleep(5) is False
        assert time.monotonic() - started < 1
        assert token.reason == "manual"

    async def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("deadline")
        token.cancel("manual")
        assert token.reason == "deadline"

    async def test_guard_returns_result(self):
        token = CancellationToken()

        async def work():
            return 42

        assert await token.guard(work()) == (True, 42)

    async def test_guard_cancels_blocked_work(self):
        token = CancellationToken()
        cancelled = asyncio.Event()

        async def blocked():
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.02, token.cancel)
        finished, result = await token.guard(blocked())

        assert finished is False
        assert result is None
        assert cancelled.is_set()

    async def test_guard_propagates_errors(self):
        token = CancellationToken()

        async def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await token.guard(broken())


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
class TestTicker:
    async def test_overdue_ticks_do_not_sleep(self):
        clock = FakeClock()
        ticker = Ticker(0.5, CancellationToken(), clock=clock)
        clock.now = 10.0

        started = time.monotonic()
        for _ in range(5):
            assert await ticker.wait_next() is True
        assert time.monotonic() - started < 1
        assert ticker.ticks == 5

    async def test_zero_interval_runs_back_to_back(self):
        token = CancellationToken()
        ticker = Ticker(0, token)
        assert await ticker.wait_next() is True
        token.cancel()
        assert await ticker.wait_next() is False

    async def test_cancel_interrupts_wait(self):
        token = CancellationToken()
        ticker = Ticker(10, token)
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        assert await ticker.wait_next() is False

    async def test_holds_rate(self):
        ticker = Ticker(0.01, CancellationToken())
        started = time.monotonic()
        for _ in range(20):
            await ticker.wait_next()
        elapsed = time.monotonic() - started
        assert 0.15 <= elapsed < 1.0
