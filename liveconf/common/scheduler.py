"""
Jittered Scheduler for Cloud Polling

Provides JitteredLoop, which fires a callback after a randomized delay
in [interval/2, interval*1.5). Many clients polling the same endpoint
therefore spread out instead of hitting it in lockstep.

Unlike a fixed-rate scheduler, the next delay starts only after the
previous callback has finished, so runs never overlap. Each run is
bounded by a timeout so a stalled callback costs at most one cycle.

Usage:
    async def poll():
        ...

    loop = JitteredLoop(60.0, poll, name="cloud-poll")
    await loop.start()

    # Later:
    await loop.stop()
"""

import asyncio
import random
import time
from typing import Awaitable, Callable

from liveconf.common.logging_setup import get_service_logger

logger = get_service_logger("scheduler")


def poll_delay(interval_seconds: float, rng: random.Random | None = None) -> float:
    """
    Randomized delay in [interval/2, interval*1.5).

    Args:
        interval_seconds: Base interval
        rng: Random source (module-level random when None)
    """
    rand = rng.random() if rng is not None else random.random()
    return interval_seconds / 2 + rand * interval_seconds


class JitteredLoop:
    """
    Sleep-then-run loop with jitter and a per-run timeout.

    Attributes:
        interval: Base interval in seconds
        callback: Async function to call each cycle
        timeout: Upper bound for one callback run (defaults to interval)
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        name: str = "unnamed",
        timeout_seconds: float | None = None,
        rng: random.Random | None = None,
    ):
        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.timeout = timeout_seconds or interval_seconds
        self._rng = rng

        self._running = False
        self._task: asyncio.Task | None = None

        # Observability metrics
        self._execution_count: int = 0
        self._timeout_count: int = 0
        self._error_count: int = 0
        self._last_delay: float = 0
        self._last_execution_time: float = 0

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._task is not None and not self._task.done():
            return

        self._task = asyncio.create_task(self.run(), name=f"jittered-{self.name}")

    async def stop(self) -> None:
        """Stop the loop and wait for the task to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def next_delay(self) -> float:
        return poll_delay(self.interval, self._rng)

    async def run_once(self) -> None:
        """Run the callback once, bounded by the timeout; never raises."""
        start = time.monotonic()
        try:
            await asyncio.wait_for(self.callback(), timeout=self.timeout)
            self._execution_count += 1
        except asyncio.TimeoutError:
            self._timeout_count += 1
            logger.warning(
                f"Scheduled callback '{self.name}' timed out after {self.timeout:.0f}s, skipping cycle"
            )
        except Exception as e:
            self._error_count += 1
            logger.error(f"Scheduled callback '{self.name}' error: {e}")
        finally:
            self._last_execution_time = time.monotonic() - start

    async def run(self) -> None:
        """Run the loop in the current task until stopped or cancelled."""
        self._running = True
        while self._running:
            self._last_delay = self.next_delay()
            await asyncio.sleep(self._last_delay)

            if not self._running:
                break

            await self.run_once()

    @property
    def execution_count(self) -> int:
        return self._execution_count

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "execution_count": self._execution_count,
            "timeout_count": self._timeout_count,
            "error_count": self._error_count,
            "last_delay_s": round(self._last_delay, 3),
            "last_execution_s": round(self._last_execution_time, 3),
        }
