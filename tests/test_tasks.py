"""
Tests for the periodic background task runner
"""

import asyncio

import pytest

from vpnfleet.core.tasks import PeriodicTask


@pytest.mark.asyncio
async def test_stop_waits_for_running_iteration(clock):
    finished = []

    async def slow_tick(now):
        await asyncio.sleep(0.2)
        finished.append(now)

    task = PeriodicTask("slow", interval=60, callback=slow_tick, clock=clock)
    await task.start()
    await asyncio.sleep(0.05)
    await task.stop()

    assert finished == [clock.now()]
    assert task.running is False


@pytest.mark.asyncio
async def test_stop_cancels_after_timeout(clock):
    started = asyncio.Event()

    async def stuck_tick(now):
        started.set()
        await asyncio.sleep(60)

    task = PeriodicTask("stuck", interval=60, callback=stuck_tick, clock=clock, stop_timeout=0.05)
    await task.start()
    await started.wait()
    await task.stop()

    assert task.running is False


@pytest.mark.asyncio
async def test_shared_stop_event_ends_loop_between_ticks(clock):
    stop_event = asyncio.Event()
    ticks = []

    async def tick(now):
        ticks.append(now)

    task = PeriodicTask("quick", interval=0.01, callback=tick, clock=clock, stop_event=stop_event)
    await task.start()
    await asyncio.sleep(0.05)
    stop_event.set()
    await task.stop()

    assert len(ticks) >= 1
    assert task.running is False


@pytest.mark.asyncio
async def test_failing_iteration_does_not_end_loop(clock):
    calls = []

    async def flaky(now):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("transient")

    task = PeriodicTask("flaky", interval=0.01, callback=flaky, clock=clock)
    await task.start()
    await asyncio.sleep(0.1)
    await task.stop()

    assert len(calls) >= 2
