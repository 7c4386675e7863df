"""
Timer Unit Tests
================

Tests for the grace timer and the idle watchdog including:
- Expiry and cancellation
- Deterministic cancellation just before the deadline
- Watchdog exit versus reschedule
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from sandbox_relay.services.timers import GraceTimer, IdleWatchdog


class TestGraceTimer:
    """Tests for the post-disconnect grace timer."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fires_after_delay(self):
        on_expire = AsyncMock()
        timer = GraceTimer(0.05, on_expire)

        timer.arm()
        assert timer.armed is True
        await asyncio.sleep(0.15)

        on_expire.assert_awaited_once()
        assert timer.armed is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_just_before_deadline_prevents_firing(self):
        on_expire = AsyncMock()
        timer = GraceTimer(0.2, on_expire)

        timer.arm()
        await asyncio.sleep(0.15)
        timer.cancel()
        await asyncio.sleep(0.2)

        on_expire.assert_not_awaited()
        assert timer.armed is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rearm_restarts_countdown(self):
        on_expire = AsyncMock()
        timer = GraceTimer(0.3, on_expire)

        timer.arm()
        await asyncio.sleep(0.2)
        timer.arm()
        await asyncio.sleep(0.2)
        on_expire.assert_not_awaited()

        await asyncio.sleep(0.3)
        on_expire.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self):
        timer = GraceTimer(0.01, AsyncMock(side_effect=RuntimeError("boom")))

        timer.arm()
        await asyncio.sleep(0.05)

        assert timer.armed is False

    @pytest.mark.unit
    def test_cancel_unarmed_is_noop(self):
        timer = GraceTimer(1.0, AsyncMock())

        timer.cancel()

        assert timer.armed is False


class TestIdleWatchdog:
    """Tests for the process-wide idle watchdog."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exits_when_idle(self):
        on_idle = MagicMock()
        watchdog = IdleWatchdog(0.05, is_idle=lambda: True, on_idle=on_idle)

        watchdog.arm()
        await asyncio.sleep(0.15)

        on_idle.assert_called_once()
        assert watchdog.armed is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reschedules_while_busy(self):
        on_idle = MagicMock()
        checks = iter([False, False, True])
        watchdog = IdleWatchdog(0.03, is_idle=lambda: next(checks), on_idle=on_idle)

        watchdog.arm()
        await asyncio.sleep(0.05)
        on_idle.assert_not_called()
        assert watchdog.armed is True

        await asyncio.sleep(0.2)
        on_idle.assert_called_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_never_exits_while_busy(self):
        on_idle = MagicMock()
        watchdog = IdleWatchdog(0.01, is_idle=lambda: False, on_idle=on_idle)

        watchdog.arm()
        await asyncio.sleep(0.1)
        watchdog.cancel()

        on_idle.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_stops_countdown(self):
        on_idle = MagicMock()
        watchdog = IdleWatchdog(0.05, is_idle=lambda: True, on_idle=on_idle)

        watchdog.arm()
        watchdog.cancel()
        await asyncio.sleep(0.1)

        on_idle.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tick_runs_each_interval(self):
        on_tick = AsyncMock()
        watchdog = IdleWatchdog(0.02, is_idle=lambda: False, on_idle=MagicMock(), on_tick=on_tick)

        watchdog.arm()
        await asyncio.sleep(0.1)
        watchdog.cancel()

        assert on_tick.await_count >= 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tick_failure_does_not_stop_watchdog(self):
        on_idle = MagicMock()
        watchdog = IdleWatchdog(
            0.02,
            is_idle=lambda: True,
            on_idle=on_idle,
            on_tick=AsyncMock(side_effect=OSError("disk")),
        )

        watchdog.arm()
        await asyncio.sleep(0.1)

        on_idle.assert_called_once()
