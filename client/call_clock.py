from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from shared.protocol import EndReason

logger = logging.getLogger(__name__)

TickCallback = Callable[[int], Awaitable[None] | None]
ExpireCallback = Callable[[EndReason], Awaitable[None] | None]
SleepFunction = Callable[[float], Awaitable[None]]


class CallClock:
    """Counts call seconds and ends the call once the limit is reached.

    ``start`` while the clock is already running is a no-op; the running
    countdown keeps its original limit. ``stop`` cancels the countdown and
    zeroes the elapsed counter, and is safe to call from the expiry callback.
    """

    def __init__(
        self,
        on_expire: ExpireCallback,
        *,
        on_tick: Optional[TickCallback] = None,
        tick_interval: float = 1.0,
        sleep: SleepFunction = asyncio.sleep,
    ) -> None:
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._tick_interval = tick_interval
        self._sleep = sleep
        self._elapsed = 0
        self._max_seconds: Optional[int] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed

    @property
    def max_seconds(self) -> Optional[int]:
        return self._max_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def remaining_seconds(self) -> Optional[int]:
        if self._max_seconds is None:
            return None
        return max(0, self._max_seconds - self._elapsed)

    def start(self, max_seconds: int) -> None:
        if max_seconds <= 0:
            raise ValueError("max_seconds must be positive")
        if self.running:
            logger.debug("Call clock already running; ignoring start(%s)", max_seconds)
            return
        self._elapsed = 0
        self._max_seconds = max_seconds
        self._task = asyncio.get_running_loop().create_task(self._run(max_seconds))
        logger.debug("Call clock started with a %ss limit", max_seconds)

    def stop(self) -> None:
        task = self._task
        self._task = None
        self._elapsed = 0
        self._max_seconds = None
        if task is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current and not task.done():
            task.cancel()

    def reset(self) -> None:
        self._elapsed = 0

    async def _run(self, max_seconds: int) -> None:
        try:
            while True:
                await self._sleep(self._tick_interval)
                self._elapsed += 1
                await self._notify_tick()
                if self._elapsed >= max_seconds:
                    break
        except asyncio.CancelledError:
            return
        logger.info("Call time limit of %ss reached", max_seconds)
        self._task = None
        try:
            result = self._on_expire(EndReason.TIMEOUT)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Call clock expiry callback failed")

    async def _notify_tick(self) -> None:
        if self._on_tick is None:
            return
        try:
            result = self._on_tick(self._elapsed)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Call clock tick callback failed")
