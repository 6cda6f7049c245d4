"""
Maintenance Engine — the orchestration object behind the maintenance API.

Constructed once at process start and handed to the API layer. Owns the
catalog, history ledger, executor, scheduler, health aggregator and alert
dispatcher; there are no module-level singletons.

Every public method returns an EngineResponse: plain JSON-ready data plus
an error code, so failures never cross the boundary as exceptions.

Public API:
    MaintenanceEngine(config, probe, alert_backend, operations, tasks)
    MaintenanceEngine.from_config_dir(config_dir)
    await start() / await stop()
    list_tasks() / get_task(id) / toggle_task(id, enabled) / restart_job(id)
    await run_task(id) / await run_all_tasks()
    get_task_results(id) / get_all_results()
    await get_system_health()
    get_status()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from src.core import feature_flags
from src.core.maintenance.alerts import (
    AlertBackend,
    AlertDispatcher,
    LogAlertBackend,
    WebhookAlertBackend,
)
from src.core.maintenance.catalog import TaskCatalog
from src.core.maintenance.executor import TaskExecutor, TaskRunOutcome
from src.core.maintenance.health import (
    HealthAggregator,
    HealthTier,
    MetricProbe,
    MetricReadings,
    PsutilProbe,
    SystemHealthSnapshot,
)
from src.core.maintenance.ledger import HistoryLedger, JsonlResultSink
from src.core.maintenance.operations import (
    CommandRunner,
    Operation,
    OperationRegistry,
    default_registry,
    health_check_operation,
    performance_operation,
)
from src.core.maintenance.scheduler import MaintenanceScheduler
from src.core.maintenance.schema import (
    ErrorCode,
    MaintenanceConfig,
    MaintenanceError,
    TaskDefinition,
    load_maintenance_config,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_TASK = "health-check"
PERFORMANCE_TASK = "performance-monitoring"
SECURITY_FINDING_TASKS = ("security-scan", "firewall-check", "ssl-certificate-check")


class EngineResponse(BaseModel):
    """Tagged result returned to the API layer."""
    ok: bool
    error: Optional[ErrorCode] = None
    message: str = ""
    data: Any = None


def _ok(data: Any = None, message: str = "") -> EngineResponse:
    return EngineResponse(ok=True, data=data, message=message)


def _fail(code: ErrorCode, message: str, data: Any = None) -> EngineResponse:
    return EngineResponse(ok=False, error=code, message=message, data=data)


def _outcome_dict(outcome: TaskRunOutcome) -> Dict[str, Any]:
    return {
        "task_id": outcome.task_id,
        "executed": outcome.executed,
        "success": outcome.success,
        "error_code": outcome.error_code.value if outcome.error_code else None,
        "error": outcome.error,
        "duration_ms": round(outcome.duration_ms, 2),
        "result": outcome.result.model_dump(mode="json") if outcome.result else None,
        "alert_sent": bool(outcome.alert and outcome.alert.delivered),
    }


class MaintenanceEngine:
    """Owns maintenance state and exposes it as plain data."""

    def __init__(
        self,
        config: Optional[MaintenanceConfig] = None,
        probe: Optional[MetricProbe] = None,
        alert_backend: Optional[AlertBackend] = None,
        operations: Optional[OperationRegistry] = None,
        tasks: Optional[Iterable[TaskDefinition]] = None,
        command_runner: Optional[CommandRunner] = None,
    ):
        self.config = config or MaintenanceConfig()
        self.catalog = TaskCatalog(tasks, overrides=self.config.tasks)

        sinks = []
        if self.config.history_file:
            sinks.append(JsonlResultSink(
                self.config.history_file, keep_per_task=self.config.history_limit,
            ))
        self.ledger = HistoryLedger(limit=self.config.history_limit, sinks=sinks)
        for sink in sinks:
            restored = self.ledger.restore(
                r for r in sink.compact() if r.task_id in self.catalog
            )
            if restored:
                logger.info("Restored %d results from %s", restored, sink.path)

        self.probe = probe or PsutilProbe()
        self.aggregator = HealthAggregator(self.config.thresholds, self.config.services)
        if alert_backend is None:
            if self.config.alerts.webhook_url:
                alert_backend = WebhookAlertBackend(
                    self.config.alerts.webhook_url, timeout_s=self.config.alerts.timeout_s,
                )
            else:
                alert_backend = LogAlertBackend()
        self.alerts = AlertDispatcher(alert_backend)

        if operations is None:
            operations = default_registry(
                runner=command_runner,
                health_check=self._health_check_run,
                collect_metrics=self._collect_metrics,
                services=self.config.services,
            )
        else:
            if HEALTH_CHECK_TASK not in operations:
                operations.register(HEALTH_CHECK_TASK, health_check_operation(self._health_check_run))
            if PERFORMANCE_TASK not in operations:
                operations.register(PERFORMANCE_TASK, performance_operation(self._collect_metrics))
        self.operations = operations

        missing = [t.id for t in self.catalog.list_tasks() if t.id not in self.operations]
        if missing:
            logger.warning("No operation registered for tasks: %s", missing)

        self.executor = TaskExecutor(
            self.catalog,
            self.ledger,
            self.operations,
            alerts=self.alerts,
            task_timeout_s=self.config.task_timeout_s,
        )
        self.scheduler = MaintenanceScheduler(
            self.catalog,
            self.executor,
            timezone_name=self.config.timezone,
            tick_interval_s=self.config.tick_interval_s,
        )
        self.scheduler.refresh_triggers()
        self._last_health: Optional[SystemHealthSnapshot] = None

    @classmethod
    def from_config_dir(cls, config_dir: str = "config", **kwargs: Any) -> "MaintenanceEngine":
        return cls(config=load_maintenance_config(config_dir), **kwargs)

    def register_operation(self, task_id: str, operation: Operation) -> None:
        self.operations.register(task_id, operation)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not feature_flags.FEATURE_MAINTENANCE_SCHEDULER:
            logger.info("Maintenance scheduler disabled by feature flag")
            return
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def _task_view(self, task: TaskDefinition) -> Dict[str, Any]:
        view = task.model_dump(mode="json")
        state = self.catalog.get_state(task.id)
        view["status"] = state.status.value
        view["last_run"] = state.last_run.isoformat() if state.last_run else None
        view["next_run"] = state.next_run.isoformat() if state.next_run else None
        return view

    def list_tasks(self) -> EngineResponse:
        return _ok([self._task_view(t) for t in self.catalog.list_tasks()])

    def get_task(self, task_id: str) -> EngineResponse:
        task = self.catalog.get_task(task_id)
        if task is None:
            return _fail(ErrorCode.NOT_FOUND, f"Task '{task_id}' not found")
        return _ok(self._task_view(task))

    def toggle_task(self, task_id: str, enabled: bool) -> EngineResponse:
        if not self.catalog.toggle_task(task_id, enabled):
            return _fail(ErrorCode.NOT_FOUND, f"Task '{task_id}' not found")
        self.scheduler.reschedule(task_id)
        return _ok(self._task_view(self.catalog.get_task(task_id)))

    def restart_job(self, task_id: str) -> EngineResponse:
        """Rebind one task's trigger without touching the rest of the schedule."""
        if not self.scheduler.restart_job(task_id):
            return _fail(ErrorCode.NOT_FOUND, f"Task '{task_id}' not found")
        return _ok(self._task_view(self.catalog.get_task(task_id)))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_task(self, task_id: str) -> EngineResponse:
        outcome = await self.executor.run_task(task_id)
        data = _outcome_dict(outcome)
        if outcome.skipped:
            return _fail(outcome.error_code, outcome.skip_reason or "", data)
        if not outcome.success:
            return _fail(outcome.error_code, outcome.result.message, data)
        return _ok(data, outcome.result.message)

    async def run_all_tasks(self) -> EngineResponse:
        try:
            outcomes = await self.scheduler.run_all_tasks()
        except MaintenanceError as exc:
            return _fail(exc.code, exc.message)
        failed = sum(1 for o in outcomes if not o.success)
        return _ok(
            [_outcome_dict(o) for o in outcomes],
            f"Sweep finished: {len(outcomes)} run, {failed} failed",
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_task_results(self, task_id: str) -> EngineResponse:
        if task_id not in self.catalog:
            return _fail(ErrorCode.NOT_FOUND, f"Task '{task_id}' not found")
        return _ok([r.model_dump(mode="json") for r in self.ledger.get_results(task_id)])

    def get_all_results(self) -> EngineResponse:
        return _ok({
            task_id: [r.model_dump(mode="json") for r in results]
            for task_id, results in self.ledger.get_all_results().items()
        })

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _security_findings(self) -> List[str]:
        findings: List[str] = []
        for task_id in SECURITY_FINDING_TASKS:
            latest = self.ledger.latest(task_id)
            if latest is not None and latest.success:
                findings.extend(latest.warnings)
        return findings

    async def _collect_metrics(self) -> MetricReadings:
        return await self.aggregator.collect(self.probe)

    async def compute_health(self) -> SystemHealthSnapshot:
        snapshot = await self.aggregator.snapshot(
            self.probe, security_issues=self._security_findings(),
        )
        self._last_health = snapshot
        return snapshot

    async def _health_check_run(self) -> SystemHealthSnapshot:
        """Body of the health-check task: evaluate and alert when critical."""
        snapshot = await self.compute_health()
        if (
            snapshot.overall == HealthTier.CRITICAL
            and self.config.alerts.alert_on_health_critical
            and feature_flags.FEATURE_MAINTENANCE_HEALTH_ALERTS
        ):
            await self.alerts.notify_health(snapshot)
        return snapshot

    async def get_system_health(self) -> EngineResponse:
        snapshot = await self.compute_health()
        return _ok(snapshot.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> EngineResponse:
        return _ok({
            "scheduler_running": self.scheduler.is_running,
            "sweep_running": self.scheduler.is_sweep_running,
            "timezone": self.scheduler.timezone,
            "last_tick_at": (
                self.scheduler.last_tick_at.isoformat() if self.scheduler.last_tick_at else None
            ),
            "running_tasks": self.executor.running_tasks(),
            "jobs": self.scheduler.job_status(),
            "last_health": (
                self._last_health.model_dump(mode="json") if self._last_health else None
            ),
        })
