"""Cancellation token and fixed-rate ticker for work loops.

Every stop trigger (manual stop, duration deadline, count/end limit) ends up
cancelling the same token, so loops only ever check one thing.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Tuple


class CancellationToken:
    """One-shot cancellation flag that sleeping loops can wait on."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until cancelled. Returns False if ``timeout`` elapsed first."""
        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first. Returns True if the full sleep elapsed."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self.cancelled
        return not await self.wait(timeout=seconds)

    async def guard(self, awaitable: Awaitable) -> Tuple[bool, Any]:
        """Run ``awaitable`` until it finishes or the token is cancelled.

        Returns ``(True, result)`` when it finished, ``(False, None)`` when it
        was cancelled because of the token.
        """
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if work.done():
            return True, work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        return False, None


class Ticker:
    """Fixed-rate schedule: tick ``n`` is due at ``start + n * interval``.

    Sleeping toward an absolute due time keeps the long-run rate on target
    even when individual ticks take a while. An interval of 0 means run
    back-to-back, yielding to the event loop between ticks.
    """

    def __init__(
        self,
        interval: float,
        token: CancellationToken,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = max(0.0, interval)
        self.token = token
        self._clock = clock
        self._started = clock()
        self.ticks = 0

    async def wait_next(self) -> bool:
        """Wait for the next tick. False means the token was cancelled."""
        self.ticks += 1
        if self.interval == 0:
            await asyncio.sleep(0)
            return not self.token.cancelled
        due = self._started + self.ticks * self.interval
        delay = due - self._clock()
        if delay <= 0:
            await asyncio.sleep(0)
            return not self.token.cancelled
        return await self.token.sleep(delay)
