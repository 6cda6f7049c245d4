"""
Maintenance Scheduler — cron tick loop and catalog-wide sweeps.

Binds every enabled catalog entry to its cron expression, evaluated in one
fixed time zone for the whole process. An asyncio tick loop fires due tasks
as independent asyncio tasks; the loop never waits for a task to finish.
Overlapping firings of the same task are rejected by the executor's
per-task lock and logged.

``run_all_tasks()`` runs every enabled task sequentially in catalog order.
Only one sweep may be active at a time; a concurrent request fails
immediately with ALREADY_RUNNING.

Public API:
    MaintenanceScheduler(catalog, executor, timezone, tick_interval_s)
    await start() / await stop() / await restart()
    await tick(now)        → list[str] of fired task ids
    await run_all_tasks()  → list[TaskRunOutcome]
    next_run(task_id)      → datetime | None
    reschedule(task_id) / restart_job(task_id)
    job_status()           → dict
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set
from zoneinfo import ZoneInfo

from croniter import croniter

from src.core.maintenance.catalog import TaskCatalog
from src.core.maintenance.executor import TaskExecutor, TaskRunOutcome
from src.core.maintenance.schema import ErrorCode, MaintenanceError

logger = logging.getLogger(__name__)

_MIN_SLEEP_S = 0.05


def compute_next_run(expression: str, base: datetime, tz: ZoneInfo) -> Optional[datetime]:
    """Next firing strictly after ``base``, evaluated in ``tz``."""
    if base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)
    try:
        return croniter(expression, base.astimezone(tz)).get_next(datetime)
    except (ValueError, KeyError) as exc:
        logger.error("Invalid cron expression '%s': %s", expression, exc)
        return None


class MaintenanceScheduler:
    """Fires catalog tasks on their cron schedules."""

    def __init__(
        self,
        catalog: TaskCatalog,
        executor: TaskExecutor,
        timezone_name: str = "UTC",
        tick_interval_s: float = 60.0,
    ):
        self._catalog = catalog
        self._executor = executor
        self._tz = ZoneInfo(timezone_name)
        self._tick_interval_s = tick_interval_s
        self._next_runs: Dict[str, Optional[datetime]] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._sweep_lock = threading.Lock()
        self._last_tick: Optional[datetime] = None

    @property
    def timezone(self) -> str:
        return self._tz.key

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_sweep_running(self) -> bool:
        return self._sweep_lock.locked()

    @property
    def last_tick_at(self) -> Optional[datetime]:
        return self._last_tick

    # ------------------------------------------------------------------
    # Trigger bookkeeping
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _schedule_next(self, task_id: str, base: datetime) -> Optional[datetime]:
        task = self._catalog.get_task(task_id)
        nxt = None
        if task is not None and task.enabled:
            nxt = compute_next_run(task.schedule, base, self._tz)
        self._next_runs[task_id] = nxt
        self._catalog.set_next_run(task_id, nxt)
        return nxt

    def refresh_triggers(self, now: Optional[datetime] = None) -> None:
        """(Re)bind every task to its next firing time."""
        now = now or self._now()
        for task in self._catalog.list_tasks():
            self._schedule_next(task.id, now)

    def reschedule(self, task_id: str, now: Optional[datetime] = None) -> Optional[datetime]:
        """Rebind a single task from ``now``, leaving every other trigger alone."""
        return self._schedule_next(task_id, now or self._now())

    def restart_job(self, task_id: str) -> bool:
        """Drop a task's pending trigger and bind it afresh. False if unknown."""
        if task_id not in self._catalog:
            return False
        nxt = self.reschedule(task_id)
        logger.info("job_restarted: %s (next run %s)", task_id, nxt)
        return True

    def next_run(self, task_id: str) -> Optional[datetime]:
        return self._next_runs.get(task_id)

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background tick loop on the running event loop."""
        if self.is_running:
            logger.warning("Maintenance scheduler already running")
            return
        self.refresh_triggers()
        self._loop_task = asyncio.create_task(
            self._tick_loop(), name="maintenance-scheduler",
        )
        logger.info(
            "Maintenance scheduler started (tz=%s, tick=%ss, %d tasks enabled)",
            self._tz.key, self._tick_interval_s, len(self._catalog.enabled_tasks()),
        )

    async def stop(self, wait_for_tasks: bool = True) -> None:
        """Stop firing. In-flight runs are allowed to finish by default."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._in_flight:
            if wait_for_tasks:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            else:
                for t in list(self._in_flight):
                    t.cancel()
        logger.info("Maintenance scheduler stopped")

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    async def _tick_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Maintenance scheduler tick error")
            await asyncio.sleep(self._sleep_interval())

    def _sleep_interval(self) -> float:
        now = self._now()
        upcoming = [n for n in self._next_runs.values() if n is not None]
        if not upcoming:
            return self._tick_interval_s
        until_next = (min(upcoming) - now).total_seconds()
        return max(_MIN_SLEEP_S, min(self._tick_interval_s, until_next))

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Single tick: fire every enabled task whose trigger time has passed."""
        now = now or self._now()
        self._last_tick = now
        fired: List[str] = []

        for task in self._catalog.list_tasks():
            if not task.enabled:
                if self._next_runs.get(task.id) is not None:
                    self._schedule_next(task.id, now)
                continue

            nxt = self._next_runs.get(task.id)
            if nxt is None:
                # Newly enabled: bind for future firings only.
                self._schedule_next(task.id, now)
                continue
            if now < nxt:
                continue

            self._schedule_next(task.id, now)
            self._fire(task.id)
            fired.append(task.id)

        if fired:
            logger.info("Maintenance tick: fired %d task(s): %s", len(fired), fired)
        return fired

    def _fire(self, task_id: str) -> asyncio.Task:
        t = asyncio.create_task(self._run_firing(task_id), name=f"maintenance:{task_id}")
        self._in_flight.add(t)
        t.add_done_callback(self._in_flight.discard)
        return t

    async def _run_firing(self, task_id: str) -> Optional[TaskRunOutcome]:
        try:
            outcome = await self._executor.run_task(task_id)
        except Exception:
            logger.exception("Scheduled run of '%s' raised", task_id)
            return None
        if outcome.error_code == ErrorCode.ALREADY_RUNNING:
            logger.warning(
                "overlapping_firing_rejected: %s still running from a previous firing",
                task_id,
            )
        return outcome

    async def wait_idle(self) -> None:
        """Wait for every fired run to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def run_all_tasks(self) -> List[TaskRunOutcome]:
        """Run every enabled task once, sequentially, in catalog order.

        Raises:
            MaintenanceError(ALREADY_RUNNING) if a sweep is already active.
        """
        if not self._sweep_lock.acquire(blocking=False):
            raise MaintenanceError(ErrorCode.ALREADY_RUNNING, "Maintenance is already running")
        logger.info("sweep_started")
        outcomes: List[TaskRunOutcome] = []
        try:
            for task in self._catalog.list_tasks():
                current = self._catalog.get_task(task.id)
                if current is None or not current.enabled:
                    continue
                try:
                    outcomes.append(await self._executor.run_task(task.id))
                except Exception:
                    logger.exception("Sweep run of '%s' raised", task.id)
        finally:
            self._sweep_lock.release()
        failed = sum(1 for o in outcomes if not o.success)
        logger.info("sweep_finished: %d run, %d failed", len(outcomes), failed)
        return outcomes

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def job_status(self) -> Dict[str, Dict[str, Any]]:
        status: Dict[str, Dict[str, Any]] = {}
        for task in self._catalog.list_tasks():
            state = self._catalog.get_state(task.id)
            nxt = self._next_runs.get(task.id)
            status[task.id] = {
                "running": self._executor.is_running(task.id),
                "status": state.status.value if state else None,
                "last_run": state.last_run.isoformat() if state and state.last_run else None,
                "next_run": nxt.isoformat() if nxt else None,
            }
        return status
