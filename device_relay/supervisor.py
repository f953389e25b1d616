"""Restartable background task that reruns a step on a fixed interval."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

log = logging.getLogger("supervisor")


class SupervisedTask:
    """Run ``step`` forever: after each return or failure, wait ``interval`` seconds and run it again.

    Attempts are unbounded. Failures are logged and never escape the task.
    ``stop()`` cancels the task and waits for it; ``restart()`` is stop then start.
    """

    def __init__(self, name: str, step: Callable[[], Awaitable[None]], interval: float) -> None:
        self.name = name
        self.interval = interval
        self._step = step
        self._task: asyncio.Task | None = None
        self.attempts = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def restart(self) -> None:
        await self.stop()
        self.start()

    async def _run(self) -> None:
        while True:
            self.attempts += 1
            try:
                await self._step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                log.warning("[%s] attempt %d failed: %s; retrying in %.1fs", self.name, self.attempts, e, self.interval)
            await asyncio.sleep(self.interval)
