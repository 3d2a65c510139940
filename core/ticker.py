"""
PeriodicTicker — runs one coroutine on a fixed interval as a background task.

Ticks never overlap: the next tick is only scheduled once the previous one
has returned, and a tick that overruns its interval simply delays the next.
An exception inside a tick is logged and the loop keeps going.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class PeriodicTicker:

    def __init__(
        self,
        name: str,
        interval_s: float,
        tick: Callable[[], Awaitable[Any]],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval_s = interval_s
        self._tick = tick
        self._run_immediately = run_immediately
        self._running = False
        self._in_tick = False
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"ticker-{self.name}")
        logger.info("ticker_started", ticker=self.name, interval_s=self.interval_s)

    async def stop(self) -> None:
        """Stop the loop; a tick in progress is cancelled."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("ticker_stopped", ticker=self.name, ticks=self.ticks)

    async def run_once(self) -> Any:
        """Run a single tick now, unless one is already in progress."""
        if self._in_tick:
            logger.debug("ticker_tick_skipped", ticker=self.name)
            return None
        self._in_tick = True
        try:
            return await self._tick()
        finally:
            self._in_tick = False
            self.ticks += 1

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval_s)
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("ticker_tick_error", ticker=self.name, error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_s)
