"""Cron-driven re-scan for VDIMedic watch mode."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable

from croniter import croniter
from loguru import logger
import pytz


class ScanScheduler:
    """Runs a discovery + remediation pass on a cron schedule.

    Only one pass runs at a time; a trigger that fires while a pass is still
    running is skipped. Each pass starts from a fresh discovery, so records
    never carry over between passes.
    """

    def __init__(
        self,
        run_pass: Callable[[], Awaitable[object]],
        schedule: str,
        timezone: str = "UTC",
        tick: float = 1.0,
    ):
        """Initialize the scan scheduler.

        Args:
            run_pass: Coroutine function running one pass.
            schedule: Cron expression.
            timezone: Timezone the cron expression is evaluated in.
            tick: Seconds between schedule checks.
        """
        self._run_pass = run_pass
        self._schedule = schedule
        self._tz = pytz.timezone(timezone)
        self._tick = tick
        self._next_run: datetime | None = None
        self._current: asyncio.Task | None = None
        self._running = False
        self.passes = 0
        self.skipped = 0

    def calculate_next_run(self, now: datetime | None = None) -> datetime:
        """Calculate the next run time after ``now``."""
        now = now or datetime.now(self._tz)
        cron = croniter(self._schedule, now)
        self._next_run = cron.get_next(datetime)
        return self._next_run

    @property
    def next_run(self) -> datetime | None:
        return self._next_run

    async def run(self, run_immediately: bool = False) -> None:
        """Run the scheduler loop until stopped."""
        self._running = True
        self.calculate_next_run()
        logger.info(f"Scan scheduler started ({self._schedule}), next run: {self._next_run}")

        if run_immediately:
            self._trigger()

        while self._running:
            await self.check_schedule()
            await asyncio.sleep(self._tick)

        if self._current and not self._current.done():
            logger.info("Waiting for the running pass to finish")
            await self._current

        logger.info("Scan scheduler stopped")

    async def check_schedule(self, now: datetime | None = None) -> bool:
        """Trigger a pass if one is due.

        Returns:
            True if a pass was started.
        """
        now = now or datetime.now(self._tz)
        if self._next_run is None or now < self._next_run:
            return False

        self.calculate_next_run(now)
        return self._trigger()

    def _trigger(self) -> bool:
        if self._current and not self._current.done():
            self.skipped += 1
            logger.info("Previous pass still running, skipping this trigger")
            return False

        self.passes += 1
        self._current = asyncio.create_task(self._guarded_pass())
        return True

    async def _guarded_pass(self) -> None:
        try:
            await self._run_pass()
        except Exception as e:
            logger.exception(f"Scan pass failed: {e}")

    def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is running."""
        return self._running
