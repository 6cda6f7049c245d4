"""
Task Catalog — the fixed set of maintenance tasks and their runtime state.

The catalog is seeded once at process start from DEFAULT_TASKS (optionally
adjusted by per-deployment overrides) and is never extended at runtime.

Public API:
    TaskCatalog(tasks, overrides)
    list_tasks()                 → list[TaskDefinition]
    get_task(task_id)            → TaskDefinition | None
    get_state(task_id)           → TaskRuntimeState | None
    toggle_task(task_id, enabled) → bool
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from src.core.maintenance.schema import (
    TaskDefinition,
    TaskOverride,
    TaskRuntimeState,
    TaskStatus,
)

logger = logging.getLogger(__name__)


def _task(**kwargs) -> TaskDefinition:
    return TaskDefinition(**kwargs)


DEFAULT_TASKS: List[TaskDefinition] = [
    # Cleanup
    _task(id="temp-cleanup", name="Temporary Files Cleanup",
          description="Remove temporary files and caches",
          category="cleanup", priority="medium", schedule="0 */6 * * *",
          estimated_duration=5, auto_fix=True),
    _task(id="log-rotation", name="Log Rotation",
          description="Rotate and compress log files",
          category="cleanup", priority="medium", schedule="0 1 * * 0",
          estimated_duration=10, auto_fix=True),
    _task(id="old-backup-cleanup", name="Old Backup Cleanup",
          description="Remove old backup files",
          category="cleanup", priority="low", schedule="0 8 * * 0",
          estimated_duration=15, auto_fix=True),
    _task(id="package-cache-cleanup", name="Package Cache Cleanup",
          description="Clean package manager caches",
          category="cleanup", priority="low", schedule="0 2 * * *",
          estimated_duration=5, auto_fix=True),
    # Updates
    _task(id="system-updates", name="System Updates",
          description="Check and apply system updates",
          category="update", priority="high", schedule="0 3 * * 0",
          estimated_duration=30, auto_fix=True, rollback_supported=True),
    _task(id="security-updates", name="Security Updates",
          description="Apply critical security updates",
          category="update", priority="critical", schedule="0 4 * * *",
          estimated_duration=15, auto_fix=True, rollback_supported=True),
    _task(id="package-updates", name="Package Updates",
          description="Update installed packages",
          category="update", priority="medium", schedule="0 5 * * 0",
          estimated_duration=20, auto_fix=True, rollback_supported=True),
    # Optimization
    _task(id="database-optimization", name="Database Optimization",
          description="Optimize database tables and indexes",
          category="optimization", priority="medium", schedule="0 6 * * 0",
          estimated_duration=45, auto_fix=True),
    _task(id="filesystem-optimization", name="Filesystem Optimization",
          description="Sync filesystem and drop page cache",
          category="optimization", priority="low", schedule="0 7 * * 0",
          estimated_duration=60, auto_fix=True),
    _task(id="memory-optimization", name="Memory Optimization",
          description="Clear caches and optimize memory usage",
          category="optimization", priority="medium", schedule="0 */4 * * *",
          estimated_duration=10, auto_fix=True),
    # Security
    _task(id="security-scan", name="Security Scan",
          description="Scan for failed logins and suspicious processes",
          category="security", priority="high", schedule="0 8 * * *",
          estimated_duration=30),
    _task(id="firewall-check", name="Firewall Check",
          description="Verify firewall rules and configuration",
          category="security", priority="high", schedule="0 9 * * *",
          estimated_duration=10, auto_fix=True, rollback_supported=True),
    _task(id="ssl-certificate-check", name="SSL Certificate Check",
          description="Check SSL certificate expiration",
          category="security", priority="high", schedule="0 10 * * *",
          estimated_duration=5, auto_fix=True),
    # Backup
    _task(id="system-backup", name="System Backup",
          description="Create system configuration backup",
          category="backup", priority="high", schedule="0 11 * * *",
          estimated_duration=20, auto_fix=True),
    _task(id="database-backup", name="Database Backup",
          description="Backup all databases",
          category="backup", priority="high", schedule="0 12 * * *",
          estimated_duration=30, auto_fix=True),
    # Monitoring
    _task(id="health-check", name="System Health Check",
          description="Comprehensive system health check",
          category="monitoring", priority="critical", schedule="*/15 * * * *",
          estimated_duration=5),
    _task(id="performance-monitoring", name="Performance Monitoring",
          description="Monitor system performance metrics",
          category="monitoring", priority="medium", schedule="*/5 * * * *",
          estimated_duration=2),
    _task(id="service-monitoring", name="Service Monitoring",
          description="Check web server and database services, restart any that are down",
          category="monitoring", priority="high", schedule="*/2 * * * *",
          estimated_duration=1, auto_fix=True),
]


class TaskCatalog:
    """Holds task definitions in stable order plus one runtime state each."""

    def __init__(
        self,
        tasks: Optional[Iterable[TaskDefinition]] = None,
        overrides: Optional[Dict[str, TaskOverride]] = None,
    ):
        self._lock = threading.Lock()
        self._tasks: Dict[str, TaskDefinition] = {}
        self._states: Dict[str, TaskRuntimeState] = {}

        source = DEFAULT_TASKS if tasks is None else tasks
        for task in source:
            if task.id in self._tasks:
                raise ValueError(f"Duplicate task id '{task.id}'")
            # Copy so the module-level defaults are never mutated.
            self._tasks[task.id] = task.model_copy(deep=True)

        for task_id, override in (overrides or {}).items():
            self._apply_override(task_id, override)

        for task_id, task in self._tasks.items():
            self._states[task_id] = TaskRuntimeState(
                status=TaskStatus.PENDING if task.enabled else TaskStatus.DISABLED,
            )

        for task in self._tasks.values():
            unknown = [d for d in task.dependencies if d not in self._tasks]
            if unknown:
                logger.warning(
                    "Task '%s' declares unknown dependencies (ignored): %s",
                    task.id, unknown,
                )

        logger.info("Task catalog seeded with %d tasks", len(self._tasks))

    def _apply_override(self, task_id: str, override: TaskOverride) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Ignoring override for unknown task '%s'", task_id)
            return
        updates = {}
        if override.enabled is not None:
            updates["enabled"] = override.enabled
        if override.schedule is not None:
            updates["schedule"] = override.schedule
        if updates:
            self._tasks[task_id] = task.model_copy(update=updates)
            logger.debug("Applied override to '%s': %s", task_id, updates)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def list_tasks(self) -> List[TaskDefinition]:
        """All task definitions in catalog order."""
        with self._lock:
            return list(self._tasks.values())

    def get_task(self, task_id: str) -> Optional[TaskDefinition]:
        with self._lock:
            return self._tasks.get(task_id)

    def get_state(self, task_id: str) -> Optional[TaskRuntimeState]:
        """Return a copy of the runtime state for a task."""
        with self._lock:
            state = self._states.get(task_id)
            return state.model_copy() if state is not None else None

    def enabled_tasks(self) -> List[TaskDefinition]:
        with self._lock:
            return [t for t in self._tasks.values() if t.enabled]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def toggle_task(self, task_id: str, enabled: bool) -> bool:
        """Enable or disable a task.

        Returns False (and changes nothing) if the task is unknown. A task
        disabled while running keeps its ``running`` status until the run
        finishes; the executor then settles it to ``disabled``.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            self._tasks[task_id] = task.model_copy(update={"enabled": enabled})
            state = self._states[task_id]
            if state.status != TaskStatus.RUNNING:
                state.status = TaskStatus.PENDING if enabled else TaskStatus.DISABLED
        logger.info("task_%s: %s", "enabled" if enabled else "disabled", task_id)
        return True

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        last_run: Optional[datetime] = None,
    ) -> None:
        """Record a status transition made by the executor."""
        with self._lock:
            state = self._states[task_id]
            task = self._tasks[task_id]
            # A task disabled mid-run settles to disabled once it finishes.
            if status != TaskStatus.RUNNING and not task.enabled:
                status = TaskStatus.DISABLED
            state.status = status
            if last_run is not None:
                state.last_run = last_run

    def set_next_run(self, task_id: str, next_run: Optional[datetime]) -> None:
        with self._lock:
            state = self._states.get(task_id)
            if state is not None:
                state.next_run = next_run
