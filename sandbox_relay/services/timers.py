"""
Relay Timers
============

Grace timer (tolerates a dropped client while the agent keeps running) and
the process-wide idle watchdog.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class GraceTimer:
    """One-shot timer armed after a disconnect; cancelled by reconnect or agent exit."""

    def __init__(self, delay: float, on_expire: Callable[[], Awaitable[None]]):
        self.delay = delay
        self._on_expire = on_expire
        self._task: asyncio.Task | None = None

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        # Detach before firing so the expiry handler sees the timer as disarmed
        self._task = None
        try:
            await self._on_expire()
        except Exception as e:
            logger.exception(f"[grace] Expiry handler failed: {e}")


class IdleWatchdog:
    """
    Advisory idle timer for the whole relay process.

    When it fires it calls ``on_idle`` if ``is_idle()`` holds, otherwise it
    reschedules itself for the same interval. A busy container is never
    stopped, it just keeps deferring.
    """

    def __init__(
        self,
        interval: float,
        is_idle: Callable[[], bool],
        on_idle: Callable[[], None],
        on_tick: Callable[[], Awaitable[None]] | None = None,
    ):
        self.interval = interval
        self._is_idle = is_idle
        self._on_idle = on_idle
        self._on_tick = on_tick
        self._task: asyncio.Task | None = None

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        """(Re)start the countdown from a full interval."""
        self.cancel()
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._on_tick is not None:
                try:
                    await self._on_tick()
                except Exception as e:
                    logger.warning(f"[idle] Tick handler failed: {e}")
            if self._is_idle():
                logger.info(f"[idle] No clients and no agent for {self.interval:.0f}s, exiting")
                self._task = None
                self._on_idle()
                return
            logger.debug("[idle] Relay busy, rescheduling watchdog")
