import asyncio
import time
from typing import Callable, Optional

from loguru import logger


STOP_TIMEOUT = "timeout"
STOP_STALLED = "stalled"


class CrawlWatchdog:
    """
    Two independent guards around a running traversal task: a hard wall-clock
    ceiling and a stall timer reset by ``touch()``. Whichever fires first
    cancels the task and records why, so the owner can write the terminal
    state itself.
    """

    def __init__(
        self,
        *,
        max_runtime: float,
        stall_timeout: float,
        check_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_runtime = max_runtime
        self.stall_timeout = stall_timeout
        self.check_interval = check_interval
        self.clock = clock

        self.reason: Optional[str] = None
        self.message: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._stall_monitor: Optional[asyncio.Task] = None
        self._last_activity = 0.0

    @property
    def tripped(self) -> bool:
        return self.reason is not None

    def arm(self, task: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        self._task = task
        self._last_activity = self.clock()

        minutes = self.max_runtime / 60
        self._timeout_handle = loop.call_later(
            self.max_runtime,
            self._trip,
            STOP_TIMEOUT,
            f"Crawl exceeded maximum runtime of {minutes:g} minutes",
        )
        self._stall_monitor = asyncio.create_task(self._watch_stall())

    def touch(self) -> None:
        self._last_activity = self.clock()

    def disarm(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        if self._stall_monitor is not None:
            self._stall_monitor.cancel()
            self._stall_monitor = None

    async def _watch_stall(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.sleep(self.check_interval)
            idle = self.clock() - self._last_activity
            if idle > self.stall_timeout:
                self._trip(
                    STOP_STALLED,
                    f"Crawl stalled - no activity for {round(idle)} seconds",
                )
                return

    def _trip(self, reason: str, message: str) -> None:
        if self.tripped or self._task is None or self._task.done():
            return

        self.reason = reason
        self.message = message
        logger.error(f"[WATCHDOG] {message}; cancelling crawl")
        self._task.cancel()

        if reason == STOP_TIMEOUT and self._stall_monitor is not None:
            self._stall_monitor.cancel()
        elif reason == STOP_STALLED and self._timeout_handle is not None:
            self._timeout_handle.cancel()
