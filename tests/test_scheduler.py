import asyncio
import random

import pytest

from liveconf.common.scheduler import JitteredLoop, poll_delay


class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__()
        self.value = value

    def random(self):
        return self.value


def test_poll_delay_bounds_for_one_minute():
    assert poll_delay(60, FixedRandom(0.0)) == 30
    assert poll_delay(60, FixedRandom(0.5)) == 60
    assert poll_delay(60, FixedRandom(0.999999)) < 90


def test_poll_delay_stays_in_range():
    rng = random.Random(42)
    delays = [poll_delay(60, rng) for _ in range(1000)]

    assert all(30 <= d < 90 for d in delays)
    assert max(delays) - min(delays) > 30


@pytest.mark.asyncio
async def test_run_once_counts_timeouts():
    async def stall():
        await asyncio.sleep(1)

    loop = JitteredLoop(60, stall, name="stall", timeout_seconds=0.05)
    await loop.run_once()

    stats = loop.get_stats()
    assert stats["timeout_count"] == 1
    assert stats["execution_count"] == 0


@pytest.mark.asyncio
async def test_run_once_counts_errors():
    async def boom():
        raise RuntimeError("boom")

    loop = JitteredLoop(60, boom, name="boom")
    await loop.run_once()

    assert loop.get_stats()["error_count"] == 1


@pytest.mark.asyncio
async def test_runs_never_overlap(eventually):
    active = 0
    peak = 0

    async def slow():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.03)
        active -= 1

    loop = JitteredLoop(0.02, slow, name="slow", timeout_seconds=1.0)
    await loop.start()
    await eventually(lambda: loop.execution_count >= 3)
    await loop.stop()

    assert peak == 1


@pytest.mark.asyncio
async def test_run_in_current_task_until_cancelled(eventually):
    calls = []

    async def tick():
        calls.append(1)

    loop = JitteredLoop(0.02, tick, name="tick")
    task = asyncio.create_task(loop.run())
    await eventually(lambda: len(calls) >= 2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert loop.execution_count >= 2
