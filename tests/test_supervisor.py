from __future__ import annotations

import asyncio

import pytest

from device_relay.supervisor import SupervisedTask


@pytest.mark.asyncio
async def test_failures_are_retried_at_fixed_interval() -> None:
    calls = 0
    done = asyncio.Event()

    async def step() -> None:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionError("broker down")
        done.set()
        await asyncio.Event().wait()

    task = SupervisedTask("test", step, interval=0.01)
    task.start()
    await asyncio.wait_for(done.wait(), timeout=1.0)

    assert task.failures == 2
    assert task.attempts == 3
    assert task.running
    await task.stop()
    assert not task.running


@pytest.mark.asyncio
async def test_stop_and_restart() -> None:
    started = 0

    async def step() -> None:
        nonlocal started
        started += 1
        await asyncio.sleep(10)

    task = SupervisedTask("test", step, interval=0.01)
    await task.stop()  # stopping a task that never ran is harmless

    task.start()
    task.start()
    await asyncio.sleep(0)
    assert started == 1

    await task.restart()
    await asyncio.sleep(0)
    assert started == 2
    assert task.running

    await task.stop()
    await task.stop()
    assert not task.running
