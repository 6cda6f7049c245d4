"""
Maintenance Schema — task models, result records and config loader.

Defines the task catalog entry, its runtime state, the immutable run
result, and loads maintenance.yaml configuration.

Public API:
    TaskCategory / TaskPriority / TaskStatus — enums
    TaskDefinition      — Pydantic model for a catalog entry
    TaskRuntimeState    — mutable per-task status
    TaskResult          — immutable record of one execution attempt
    HealthThresholds    — warning/critical usage percentages
    MaintenanceConfig   — top-level config
    ErrorCode / MaintenanceError / MaintenanceConfigError
    load_maintenance_config(config_dir) → MaintenanceConfig
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

_EXAMPLE_FILE = "maintenance.example.yaml"
_CONFIG_FILE = "maintenance.yaml"

DEFAULT_HISTORY_LIMIT = 50


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    DEPENDENCY_UNMET = "dependency_unmet"
    EXECUTION_FAILURE = "execution_failure"
    ALREADY_RUNNING = "already_running"


class MaintenanceError(Exception):
    """Raised for pre-flight rejections (unknown task, disabled task, busy)."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class MaintenanceConfigError(Exception):
    """Raised when maintenance config loading or validation fails."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskCategory(str, Enum):
    CLEANUP = "cleanup"
    UPDATE = "update"
    OPTIMIZATION = "optimization"
    SECURITY = "security"
    BACKUP = "backup"
    MONITORING = "monitoring"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DISABLED = "disabled"


def _validate_cron(v: str) -> str:
    parts = v.strip().split()
    if len(parts) != 5:
        raise ValueError(
            f"Cron expression must have 5 fields, got {len(parts)}: '{v}'"
        )
    if not croniter.is_valid(v.strip()):
        raise ValueError(f"Invalid cron expression: '{v}'")
    return v.strip()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Task models
# ---------------------------------------------------------------------------

class TaskDefinition(BaseModel):
    """A single maintenance task in the catalog."""
    id: str
    name: str
    description: str = ""
    category: TaskCategory
    priority: TaskPriority = TaskPriority.MEDIUM
    enabled: bool = True
    schedule: str
    estimated_duration: int = 5  # minutes, advisory only
    dependencies: List[str] = Field(default_factory=list)
    auto_fix: bool = False
    rollback_supported: bool = False

    @field_validator("id")
    @classmethod
    def id_must_be_valid(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Task id must not be empty")
        if not re.match(r"^[a-zA-Z][a-zA-Z0-9_-]*$", v):
            raise ValueError(
                f"Task id must be alphanumeric with dashes or underscores, got '{v}'"
            )
        return v

    @field_validator("schedule")
    @classmethod
    def schedule_must_be_valid_cron(cls, v: str) -> str:
        return _validate_cron(v)

    @field_validator("estimated_duration")
    @classmethod
    def duration_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("estimated_duration must be positive")
        return v


class TaskRuntimeState(BaseModel):
    """Mutable per-task status owned by the catalog."""
    status: TaskStatus = TaskStatus.PENDING
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


class TaskResult(BaseModel):
    """Immutable record of one execution attempt."""
    model_config = ConfigDict(frozen=True)

    task_id: str
    success: bool
    message: str
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=_utcnow)
    logs: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    data: Optional[Any] = None


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------

class HealthThresholds(BaseModel):
    """Usage percentages that classify a resource as warning or critical."""
    disk_warning: float = 80.0
    disk_critical: float = 90.0
    memory_warning: float = 80.0
    memory_critical: float = 90.0
    cpu_warning: float = 80.0
    cpu_critical: float = 90.0

    @model_validator(mode="after")
    def warning_below_critical(self) -> "HealthThresholds":
        for name in ("disk", "memory", "cpu"):
            warning = getattr(self, f"{name}_warning")
            critical = getattr(self, f"{name}_critical")
            if not 0 <= warning <= critical <= 100:
                raise ValueError(
                    f"{name} thresholds must satisfy 0 <= warning <= critical <= 100"
                )
        return self


class TaskOverride(BaseModel):
    """Per-deployment override for a catalog entry."""
    enabled: Optional[bool] = None
    schedule: Optional[str] = None

    @field_validator("schedule")
    @classmethod
    def schedule_must_be_valid_cron(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            return _validate_cron(v)
        return v


class AlertConfig(BaseModel):
    """Where alerts go. An empty webhook_url means log-only delivery."""
    webhook_url: str = ""
    timeout_s: float = 5.0
    alert_on_health_critical: bool = True


class MaintenanceConfig(BaseModel):
    """Top-level maintenance configuration."""
    timezone: str = "UTC"
    tick_interval_s: float = 60.0
    history_limit: int = DEFAULT_HISTORY_LIMIT
    task_timeout_s: Optional[float] = None
    history_file: Optional[str] = None
    thresholds: HealthThresholds = Field(default_factory=HealthThresholds)
    services: List[str] = Field(default_factory=list)
    tasks: Dict[str, TaskOverride] = Field(default_factory=dict)
    alerts: AlertConfig = Field(default_factory=AlertConfig)

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        from zoneinfo import ZoneInfo
        try:
            ZoneInfo(v)
        except Exception as exc:
            raise ValueError(f"Unknown timezone: '{v}'") from exc
        return v

    @field_validator("tick_interval_s")
    @classmethod
    def tick_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tick_interval_s must be positive")
        return v

    @field_validator("history_limit")
    @classmethod
    def history_limit_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("history_limit must be positive")
        return v

    @field_validator("task_timeout_s")
    @classmethod
    def timeout_must_be_positive(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("task_timeout_s must be positive")
        return v


# ---------------------------------------------------------------------------
# Config loader
# ---------------------------------------------------------------------------

def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Let deployment environment variables win over the YAML file."""
    tz = os.environ.get("MAINTENANCE_TIMEZONE")
    if tz:
        data["timezone"] = tz
    tick = os.environ.get("MAINTENANCE_TICK_INTERVAL_S")
    if tick:
        data["tick_interval_s"] = tick
    webhook = os.environ.get("MAINTENANCE_ALERT_WEBHOOK_URL")
    if webhook:
        alerts = dict(data.get("alerts") or {})
        alerts["webhook_url"] = webhook
        data["alerts"] = alerts
    return data


def load_maintenance_config(config_dir: str = "config") -> MaintenanceConfig:
    """Load maintenance.yaml, copying from example if needed.

    On first run, if maintenance.yaml doesn't exist, copies from
    maintenance.example.yaml. When neither exists the built-in defaults
    are used.

    Args:
        config_dir: Path to the config directory.

    Returns:
        Validated MaintenanceConfig.

    Raises:
        MaintenanceConfigError on invalid YAML or validation failure.
    """
    d = Path(config_dir)
    config_path = d / _CONFIG_FILE
    example_path = d / _EXAMPLE_FILE

    if not config_path.exists():
        if example_path.exists():
            shutil.copy2(str(example_path), str(config_path))
            logger.info("Created %s from example", config_path)
        else:
            logger.info("No %s in %s, using defaults", _CONFIG_FILE, d)
            data = _apply_env_overrides({})
            try:
                return MaintenanceConfig(**data)
            except ValidationError as exc:
                raise MaintenanceConfigError(
                    f"Maintenance config validation failed: {exc}"
                ) from exc

    try:
        text = config_path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise MaintenanceConfigError(
                f"Maintenance config is not a YAML mapping: {config_path}"
            )
    except yaml.YAMLError as exc:
        raise MaintenanceConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    data = _apply_env_overrides(data)
    try:
        return MaintenanceConfig(**data)
    except ValidationError as exc:
        raise MaintenanceConfigError(f"Maintenance config validation failed: {exc}") from exc
