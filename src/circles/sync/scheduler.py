"""Background timers for the push drain and the pull reconciliation.

Each PeriodicTask is a plain asyncio loop: sleep for the interval, check
connectivity, run the task. A failing run is logged and the loop continues;
only cancellation stops it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

ConnectivityProbe = Callable[[], Awaitable[bool]]


async def always_online() -> bool:
    return True


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds while the device is online.

    Args:
        name: Task name used in logs and as the asyncio task name.
        fn: Async callable invoked once per tick.
        interval: Seconds between runs.
        is_online: Connectivity probe; ticks are skipped while it returns False.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        interval: float,
        is_online: ConnectivityProbe = always_online,
    ) -> None:
        self.name = name
        self._fn = fn
        self._interval = interval
        self._is_online = is_online
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"circles_{self.name}")
        logger.info("scheduler.task_started", task=self.name, interval=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("scheduler.task_stopped", task=self.name)

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                if not await self._is_online():
                    logger.debug("scheduler.tick_skipped_offline", task=self.name)
                    continue
                await self._fn()
            except asyncio.CancelledError:
                logger.info("scheduler.task_cancelled", task=self.name)
                raise
            except Exception:
                logger.warning("scheduler.task_loop_error", task=self.name, exc_info=True)
