"""
Health Aggregator — turns raw probe readings into a SystemHealthSnapshot.

The aggregator is pure given its readings: ``evaluate()`` never touches task
state, so it is safe to call from the health-check task, the API, or tests.
``snapshot()`` gathers readings from a MetricProbe first; probe failures
become unknown readings, which are treated as healthy.

Public API:
    HealthTier          — healthy | warning | critical
    MetricReadings      — point-in-time probe output
    ComponentHealth     — per-component breakdown entry
    SystemHealthSnapshot
    MetricProbe         — protocol for probe collaborators
    PsutilProbe         — default probe (psutil + systemctl)
    HealthAggregator(thresholds, services)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import shutil
import subprocess
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

import psutil
from pydantic import BaseModel, Field

from src.core.maintenance.schema import HealthThresholds

logger = logging.getLogger(__name__)

WARNING_PENALTY = 15
CRITICAL_PENALTY = 30
SERVICE_DOWN_PENALTY = 10

COMPONENTS = ("disk", "memory", "cpu", "network", "services", "security")

_RECOMMENDATIONS = {
    "disk": "Consider cleaning up disk space",
    "memory": "Consider optimizing memory usage",
    "cpu": "Consider optimizing CPU usage",
}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class HealthTier(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


_TIER_RANK = {HealthTier.HEALTHY: 0, HealthTier.WARNING: 1, HealthTier.CRITICAL: 2}


class MetricReadings(BaseModel):
    """Usage percentages and service liveness. None means unknown."""
    disk: Optional[float] = None
    memory: Optional[float] = None
    cpu: Optional[float] = None
    services: Dict[str, Optional[bool]] = Field(default_factory=dict)


class ComponentHealth(BaseModel):
    usage: Optional[float] = None
    status: HealthTier = HealthTier.HEALTHY
    issues: List[str] = Field(default_factory=list)


class SystemHealthSnapshot(BaseModel):
    """Aggregated system-wellness verdict."""
    overall: HealthTier = HealthTier.HEALTHY
    score: int = 100
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    last_checked: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    components: Dict[str, ComponentHealth] = Field(
        default_factory=lambda: {name: ComponentHealth() for name in COMPONENTS},
    )


# ---------------------------------------------------------------------------
# Probe protocol + default implementation
# ---------------------------------------------------------------------------

class MetricProbe(Protocol):
    """Point-in-time readers. Each may be sync or async."""

    def cpu_usage_percent(self) -> Any: ...

    def memory_usage_percent(self) -> Any: ...

    def disk_usage_percent(self) -> Any: ...

    def service_is_active(self, name: str) -> Any: ...


class PsutilProbe:
    """Reads the local host with psutil; service liveness via systemctl."""

    def __init__(self, disk_path: str = "/", cpu_interval_s: float = 0.5):
        self._disk_path = disk_path
        self._cpu_interval_s = cpu_interval_s

    def cpu_usage_percent(self) -> float:
        return float(psutil.cpu_percent(interval=self._cpu_interval_s))

    def memory_usage_percent(self) -> float:
        return float(psutil.virtual_memory().percent)

    def disk_usage_percent(self) -> float:
        return float(psutil.disk_usage(self._disk_path).percent)

    def service_is_active(self, name: str) -> Optional[bool]:
        if shutil.which("systemctl") is None:
            return None
        proc = subprocess.run(
            ["systemctl", "is-active", name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        return proc.stdout.strip() == "active"


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

async def _read(label: str, fn: Callable[..., Any], *args: Any) -> Any:
    """Call a probe reader, sync or async. Failures read as unknown."""
    try:
        if inspect.iscoroutinefunction(fn):
            return await fn(*args)
        value = await asyncio.to_thread(fn, *args)
        if inspect.isawaitable(value):
            value = await value
        return value
    except Exception as exc:
        logger.warning("Probe read %s failed: %s", label, exc)
        return None


def _as_percent(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class HealthAggregator:
    """Scores probe readings against configured thresholds."""

    def __init__(
        self,
        thresholds: Optional[HealthThresholds] = None,
        services: Optional[List[str]] = None,
    ):
        self.thresholds = thresholds or HealthThresholds()
        self.services = list(services or [])

    def classify(self, component: str, usage: Optional[float]) -> HealthTier:
        if usage is None:
            return HealthTier.HEALTHY
        warning = getattr(self.thresholds, f"{component}_warning")
        critical = getattr(self.thresholds, f"{component}_critical")
        if usage > critical:
            return HealthTier.CRITICAL
        if usage >= warning:
            return HealthTier.WARNING
        return HealthTier.HEALTHY

    def evaluate(
        self,
        readings: MetricReadings,
        security_issues: Optional[List[str]] = None,
    ) -> SystemHealthSnapshot:
        """Build a snapshot from readings. Pure: no I/O, no task state."""
        snapshot = SystemHealthSnapshot()
        score = 100

        for name in ("disk", "memory", "cpu"):
            usage = getattr(readings, name)
            tier = self.classify(name, usage)
            component = ComponentHealth(usage=usage, status=tier)
            label = "CPU" if name == "cpu" else name
            if tier == HealthTier.CRITICAL:
                component.issues.append(f"Critical {label} usage: {usage:.1f}%")
                score -= CRITICAL_PENALTY
            elif tier == HealthTier.WARNING:
                component.issues.append(f"High {label} usage: {usage:.1f}%")
                score -= WARNING_PENALTY
            if tier != HealthTier.HEALTHY:
                snapshot.recommendations.append(_RECOMMENDATIONS[name])
            snapshot.components[name] = component

        services = ComponentHealth()
        down = [svc for svc, active in readings.services.items() if active is False]
        for svc in down:
            services.issues.append(f"Service {svc} is inactive")
            score -= SERVICE_DOWN_PENALTY
        if down:
            services.status = HealthTier.WARNING
            snapshot.recommendations.append(
                "Restart inactive services: " + ", ".join(down)
            )
        snapshot.components["services"] = services

        security = ComponentHealth()
        if security_issues:
            security.status = HealthTier.WARNING
            security.issues.extend(security_issues)
            score -= WARNING_PENALTY
            snapshot.recommendations.append("Review security scan findings")
        snapshot.components["security"] = security

        worst = HealthTier.HEALTHY
        for component in snapshot.components.values():
            snapshot.issues.extend(component.issues)
            if _TIER_RANK[component.status] > _TIER_RANK[worst]:
                worst = component.status

        snapshot.overall = worst
        snapshot.score = max(0, score)
        return snapshot

    async def collect(self, probe: MetricProbe) -> MetricReadings:
        """Gather readings from the probe concurrently."""
        disk, memory, cpu = await asyncio.gather(
            _read("disk", probe.disk_usage_percent),
            _read("memory", probe.memory_usage_percent),
            _read("cpu", probe.cpu_usage_percent),
        )
        statuses = await asyncio.gather(
            *(_read(f"service:{svc}", probe.service_is_active, svc) for svc in self.services)
        )
        return MetricReadings(
            disk=_as_percent(disk),
            memory=_as_percent(memory),
            cpu=_as_percent(cpu),
            services={
                svc: (bool(active) if active is not None else None)
                for svc, active in zip(self.services, statuses)
            },
        )

    async def snapshot(
        self,
        probe: MetricProbe,
        security_issues: Optional[List[str]] = None,
    ) -> SystemHealthSnapshot:
        readings = await self.collect(probe)
        snapshot = self.evaluate(readings, security_issues=security_issues)
        logger.info(
            "health_evaluated: overall=%s score=%d issues=%d",
            snapshot.overall.value, snapshot.score, len(snapshot.issues),
        )
        return snapshot
