"""
Background interval loop shared by the backup, health and cache refresh timers.
"""

import asyncio
import contextlib
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """
    Runs an async callable every ``interval_seconds`` until stopped.

    Errors raised by the callable are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        operation: Callable[[], Awaitable[Any]],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.operation = operation
        self.run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self.iterations = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.is_running:
            logger.warning("periodic_task_already_running", task=self.name)
            return False
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("periodic_task_started", task=self.name, interval_seconds=self.interval_seconds)
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("periodic_task_stopped", task=self.name)

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            try:
                await self.operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                logger.error("periodic_task_failed", task=self.name, error=str(e), exc_info=True)
            self.iterations += 1
            await asyncio.sleep(self.interval_seconds)
