"""Background task that periodically runs a cleanup callback."""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger("tracker_sync.sweeper")


class PeriodicSweeper:
    """Runs ``callback`` every ``interval_seconds`` on the event loop.

    The callback is synchronous; it runs between suspension points and so
    never interleaves with other map mutations.
    """

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], int]):
        self._name = name
        self._interval = interval_seconds
        self._callback = callback
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self._name} sweeper started (interval={self._interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                removed = self._callback()
                if removed:
                    logger.debug(f"{self._name} sweeper removed {removed} entries")
            except Exception:
                logger.exception(f"Error in {self._name} sweeper")
