"""Lease Automation -- Scheduler.

A polling loop that runs all due automations and drains the delivery
queue once per calendar day, at the trigger hour.

    stopped --start()--> running --stop()--> stopped
    running: idle --tick--> checking --> idle

The daily gate compares the current hour with the trigger hour and today's
ISO date with the stored last-run date.  The stamp is persisted in the
local state store so a restart later the same day does not re-run the
pass.  Clock changes (DST, manual adjustment) can skip or repeat a day.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .automation_engine import AutomationEngine
from .config import MIN_CHECK_INTERVAL_MS
from .local_state import SCHEDULER, LocalStateStore

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL_MS = 60_000
DEFAULT_TRIGGER_HOUR = 9


class AutomationScheduler:
    """Daily automation runner with an explicit start/stop lifecycle."""

    def __init__(
        self,
        engine: AutomationEngine,
        owner_id: str = "",
        *,
        state: Optional[LocalStateStore] = None,
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
        trigger_hour: int = DEFAULT_TRIGGER_HOUR,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.engine = engine
        self.owner_id = owner_id
        self.state = state
        self.check_interval_ms = max(int(check_interval_ms), MIN_CHECK_INTERVAL_MS)
        self.trigger_hour = trigger_hour
        self._clock = clock

        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._last_run_date: str | None = self._load_last_run_date()

    # ------------------------------------------------------------------
    # Last run stamp
    # ------------------------------------------------------------------

    def _load_last_run_date(self) -> str | None:
        if self.state is None:
            return None
        data = self.state.load(SCHEDULER, {})
        return data.get("last_run_date") if isinstance(data, dict) else None

    def _stamp(self, run_date: str) -> None:
        self._last_run_date = run_date
        if self.state is not None:
            self.state.save(SCHEDULER, {"last_run_date": run_date})

    @property
    def last_run_date(self) -> str | None:
        return self._last_run_date

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Check once right away, then keep checking every interval."""
        if self.is_running:
            return
        logger.info("Starting scheduler (interval %d ms, trigger hour %d)",
                    self.check_interval_ms, self.trigger_hour)
        # Reserve the slot before the first await so a concurrent start() is a no-op.
        self._task = asyncio.create_task(self._run_loop(), name="automation-scheduler")
        await self._tick()

    def stop(self) -> None:
        """Cancel future ticks.  A pass already in progress runs to completion."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.info("Scheduler stopped")

    async def set_check_interval(self, interval_ms: int) -> None:
        self.check_interval_ms = max(int(interval_ms), MIN_CHECK_INTERVAL_MS)
        if self.is_running:
            self.stop()
            await self.start()

    async def _tick(self) -> None:
        try:
            # Shielded: cancelling the caller never interrupts a started pass.
            await asyncio.shield(self.check())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error in scheduler tick")

    async def _run_loop(self) -> None:
        # start() performs the first check itself.
        while True:
            await asyncio.sleep(self.check_interval_ms / 1000)
            await self._tick()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check(self) -> bool:
        """Run the daily pass if it is due.  Returns True when a pass ran."""
        now = self._clock()
        today = now.date().isoformat()
        if now.hour != self.trigger_hour or today == self._last_run_date:
            return False

        async with self._lock:
            if today == self._last_run_date:
                return False
            logger.info("Daily automation pass for %s", today)
            await self._run_pass()
            self._stamp(today)
        return True

    async def force_check(self) -> int:
        """Run the pass now, regardless of the gate.  Returns automations executed."""
        async with self._lock:
            executed = await self._run_pass()
            self._stamp(self._clock().date().isoformat())
        return executed

    async def _run_pass(self) -> int:
        executed = await self.engine.execute_all_due_automations(self.owner_id)
        await self.engine.process_email_queue()
        return executed

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "check_interval_ms": self.check_interval_ms,
            "trigger_hour": self.trigger_hour,
            "last_run_date": self._last_run_date,
        }
