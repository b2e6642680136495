"""
Periodic background task runner
"""

import asyncio
from typing import Awaitable, Callable, Optional
from datetime import datetime

from .clock import Clock, system_clock
from .logging import fleet_context, get_logger


logger = get_logger(__name__)


class PeriodicTask:
    """Runs an async callback at a fixed interval until the stop event is set"""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[datetime], Awaitable[object]],
        clock: Clock = system_clock,
        stop_event: Optional[asyncio.Event] = None,
        stop_timeout: float = 30.0,
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.clock = clock
        self.stop_event = stop_event or asyncio.Event()
        self.stop_timeout = stop_timeout
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the loop"""
        if self.running:
            return
        logger.info(f"Starting {self.name} (every {self.interval}s)")
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self):
        """Signal the loop to stop and wait for the running iteration to finish"""
        self.stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self.name} did not stop within {self.stop_timeout}s, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        logger.info(f"{self.name} stopped")

    async def _loop(self):
        with fleet_context(task=self.name):
            await self._run_until_stopped()

    async def _run_until_stopped(self):
        while not self.stop_event.is_set():
            try:
                await self.callback(self.clock.now())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self.name} iteration failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
