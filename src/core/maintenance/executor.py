"""
Task Executor — runs one maintenance task to completion.

Pre-flight order:
1. Task exists (else NOT_FOUND, no result recorded)
2. Task is enabled (else DISABLED, no result recorded)
3. No run of the same task in flight (else ALREADY_RUNNING, no result)
4. Every catalogued dependency has status ``completed`` (else DEPENDENCY_UNMET,
   recorded as a failed TaskResult without invoking the operation)

Then the operation is dispatched and timed. Whatever happens, exactly one
TaskResult is appended to the ledger and ``last_run`` is updated. Critical
tasks that fail notify the alert dispatcher; alert problems are logged and
never reach the caller.

Public API:
    TaskExecutor(catalog, ledger, operations, alerts, task_timeout_s)
    await run_task(task_id) → TaskRunOutcome
    is_running(task_id)     → bool
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.core.maintenance.alerts import AlertDispatcher, AlertOutcome
from src.core.maintenance.catalog import TaskCatalog
from src.core.maintenance.ledger import HistoryLedger
from src.core.maintenance.operations import OperationContext, OperationRegistry
from src.core.maintenance.schema import (
    ErrorCode,
    TaskDefinition,
    TaskPriority,
    TaskResult,
    TaskStatus,
)

logger = logging.getLogger(__name__)

ALERT_TIMEOUT_S = 15.0


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class TaskRunOutcome:
    """Outcome of a run attempt: either a pre-flight rejection or a result."""
    task_id: str
    executed: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None
    success: bool = False
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    result: Optional[TaskResult] = None
    alert: Optional[AlertOutcome] = None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class TaskExecutor:
    """Executes catalog tasks through their registered operations."""

    def __init__(
        self,
        catalog: TaskCatalog,
        ledger: HistoryLedger,
        operations: OperationRegistry,
        alerts: Optional[AlertDispatcher] = None,
        task_timeout_s: Optional[float] = None,
    ):
        self._catalog = catalog
        self._ledger = ledger
        self._operations = operations
        self._alerts = alerts
        self._task_timeout_s = task_timeout_s
        self._task_locks: Dict[str, threading.Lock] = {}
        self._task_locks_guard = threading.Lock()

    def _get_task_lock(self, task_id: str) -> threading.Lock:
        """Get or create the per-task lock that prevents self-overlap."""
        with self._task_locks_guard:
            if task_id not in self._task_locks:
                self._task_locks[task_id] = threading.Lock()
            return self._task_locks[task_id]

    def is_running(self, task_id: str) -> bool:
        with self._task_locks_guard:
            lock = self._task_locks.get(task_id)
        return lock is not None and lock.locked()

    def running_tasks(self) -> List[str]:
        with self._task_locks_guard:
            return [tid for tid, lock in self._task_locks.items() if lock.locked()]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_task(self, task_id: str) -> TaskRunOutcome:
        task = self._catalog.get_task(task_id)
        if task is None:
            return TaskRunOutcome(
                task_id=task_id,
                skipped=True,
                skip_reason=f"Task '{task_id}' not found",
                error_code=ErrorCode.NOT_FOUND,
            )

        if not task.enabled:
            logger.info("task_skipped: %s (disabled)", task_id)
            return TaskRunOutcome(
                task_id=task_id,
                skipped=True,
                skip_reason=f"Task '{task_id}' is disabled",
                error_code=ErrorCode.DISABLED,
            )

        lock = self._get_task_lock(task_id)
        if not lock.acquire(blocking=False):
            logger.info("Task '%s' already running, skipping", task_id)
            return TaskRunOutcome(
                task_id=task_id,
                skipped=True,
                skip_reason=f"Task '{task_id}' is already running",
                error_code=ErrorCode.ALREADY_RUNNING,
            )
        try:
            outcome = await self._run_locked(task)
        finally:
            lock.release()

        if not outcome.success and task.priority == TaskPriority.CRITICAL:
            outcome.alert = await self._send_alert(task_id, outcome.result.message)
        return outcome

    async def _run_locked(self, task: TaskDefinition) -> TaskRunOutcome:
        """Inner execution logic (called with the per-task lock held)."""
        unmet = self._unmet_dependency(task)
        if unmet is not None:
            reason = f"Dependency {unmet} not satisfied"
            logger.warning("task_dependency_unmet: %s needs %s", task.id, unmet)
            result = TaskResult(
                task_id=task.id,
                success=False,
                message=f"Task {task.name} failed: {reason}",
                logs=[f"Starting task: {task.name}", f"Task failed: {reason}"],
                errors=[reason],
            )
            self._finish(task, TaskStatus.FAILED, result)
            return TaskRunOutcome(
                task_id=task.id,
                executed=False,
                success=False,
                error_code=ErrorCode.DEPENDENCY_UNMET,
                error=reason,
                result=result,
            )

        ctx = OperationContext(task=task)
        ctx.log(f"Starting task: {task.name}")
        self._catalog.set_status(task.id, TaskStatus.RUNNING)
        logger.info("task_started: %s", task.id)

        start = time.monotonic()
        try:
            data = await self._dispatch(task, ctx)
        except asyncio.CancelledError:
            duration_ms = (time.monotonic() - start) * 1000
            ctx.error("Task cancelled")
            self._finish(task, TaskStatus.FAILED, self._failure(task, ctx, "Task cancelled", duration_ms))
            raise
        except Exception as exc:
            duration_ms = (time.monotonic() - start) * 1000
            message = str(exc) or type(exc).__name__
            if message not in ctx.errors:
                ctx.error(message)
            ctx.log(f"Task failed: {message}")
            result = self._failure(task, ctx, message, duration_ms)
            self._finish(task, TaskStatus.FAILED, result)
            logger.warning("task_failed: %s (%s)", task.id, message)
            return TaskRunOutcome(
                task_id=task.id,
                executed=True,
                success=False,
                error_code=ErrorCode.EXECUTION_FAILURE,
                error=message,
                duration_ms=duration_ms,
                result=result,
            )

        duration_ms = (time.monotonic() - start) * 1000
        ctx.log(f"Task completed in {duration_ms:.0f}ms")
        result = TaskResult(
            task_id=task.id,
            success=True,
            message=f"Task {task.name} completed successfully",
            duration_ms=duration_ms,
            logs=list(ctx.logs),
            errors=list(ctx.errors),
            warnings=list(ctx.warnings),
            data=data,
        )
        self._finish(task, TaskStatus.COMPLETED, result)
        logger.info("task_completed: %s (%.0fms)", task.id, duration_ms)
        return TaskRunOutcome(
            task_id=task.id,
            executed=True,
            success=True,
            duration_ms=duration_ms,
            result=result,
        )

    async def _dispatch(self, task: TaskDefinition, ctx: OperationContext) -> Any:
        operation = self._operations.get(task.id)
        if operation is None:
            raise LookupError(f"No operation registered for task '{task.id}'")
        if self._task_timeout_s is None:
            return await operation(ctx)
        try:
            return await asyncio.wait_for(operation(ctx), timeout=self._task_timeout_s)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(
                f"Task timed out after {self._task_timeout_s:g}s"
            ) from exc

    def _unmet_dependency(self, task: TaskDefinition) -> Optional[str]:
        for dep in task.dependencies:
            state = self._catalog.get_state(dep)
            # Ids outside the catalog were reported at seed time; they never block.
            if state is not None and state.status != TaskStatus.COMPLETED:
                return dep
        return None

    def _failure(
        self,
        task: TaskDefinition,
        ctx: OperationContext,
        message: str,
        duration_ms: float,
    ) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            success=False,
            message=f"Task {task.name} failed: {message}",
            duration_ms=duration_ms,
            logs=list(ctx.logs),
            errors=list(ctx.errors),
            warnings=list(ctx.warnings),
        )

    def _finish(self, task: TaskDefinition, status: TaskStatus, result: TaskResult) -> None:
        self._ledger.add_result(task.id, result)
        self._catalog.set_status(task.id, status, last_run=datetime.now(timezone.utc))

    async def _send_alert(self, task_id: str, message: str) -> Optional[AlertOutcome]:
        if self._alerts is None:
            return None
        try:
            return await asyncio.wait_for(
                self._alerts.notify_task_failure(task_id, message),
                timeout=ALERT_TIMEOUT_S,
            )
        except Exception as exc:
            logger.warning("alert_dispatch_error: %s (%s)", task_id, exc)
            return AlertOutcome(
                kind="task_failure", subject=task_id, delivered=False, error=str(exc),
            )
