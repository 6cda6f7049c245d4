"""
Maintenance API — control-panel endpoints for the maintenance engine.

Provides endpoints for listing, enabling/disabling, and running maintenance
tasks, reading run history, and reading system health.

Router prefix: /api/maintenance
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.core import feature_flags
from src.core.maintenance.engine import EngineResponse, MaintenanceEngine
from src.core.maintenance.schema import ErrorCode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/maintenance", tags=["maintenance"])

# Module-level reference, set during app startup
_engine: Optional[MaintenanceEngine] = None

# Pre-flight rejections map to HTTP errors. Recorded failures
# (dependency_unmet, execution_failure) are ordinary 200 responses.
_STATUS_CODES = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DISABLED: 409,
    ErrorCode.ALREADY_RUNNING: 409,
}


def init_maintenance_api(engine: Optional[MaintenanceEngine]) -> None:
    """Initialize API with the maintenance engine."""
    global _engine
    _engine = engine


def _unavailable() -> Optional[JSONResponse]:
    if not feature_flags.FEATURE_MAINTENANCE:
        return JSONResponse(
            status_code=503,
            content={"ok": False, "error": "disabled", "message": "Maintenance is disabled"},
        )
    if _engine is None:
        return JSONResponse(
            status_code=503,
            content={"ok": False, "error": None, "message": "Maintenance engine not initialized"},
        )
    return None


def _respond(resp: EngineResponse) -> JSONResponse:
    status = 200
    if not resp.ok and resp.error in _STATUS_CODES:
        status = _STATUS_CODES[resp.error]
    return JSONResponse(status_code=status, content=resp.model_dump(mode="json"))


# ── Endpoints ────────────────────────────────────────────────────


@router.get("/tasks")
def list_tasks():
    """List all maintenance tasks with their runtime status."""
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.list_tasks())


@router.get("/tasks/{task_id}")
def get_task(task_id: str):
    """Get a single maintenance task by ID."""
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.get_task(task_id))


@router.post("/tasks/{task_id}/enable")
def enable_task(task_id: str):
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.toggle_task(task_id, True))


@router.post("/tasks/{task_id}/disable")
def disable_task(task_id: str):
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.toggle_task(task_id, False))


@router.post("/tasks/{task_id}/restart-job")
def restart_job(task_id: str):
    """Rebind a task's cron trigger from now."""
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.restart_job(task_id))


@router.post("/tasks/{task_id}/run")
async def run_task(task_id: str):
    """Run a task now and return its result."""
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    try:
        return _respond(await _engine.run_task(task_id))
    except Exception as exc:
        logger.exception("Failed to run maintenance task %s", task_id)
        return JSONResponse(status_code=500, content={"ok": False, "message": str(exc)})


@router.post("/run-all")
async def run_all_tasks():
    """Run a full sweep over every enabled task."""
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    try:
        return _respond(await _engine.run_all_tasks())
    except Exception as exc:
        logger.exception("Maintenance sweep failed")
        return JSONResponse(status_code=500, content={"ok": False, "message": str(exc)})


@router.get("/tasks/{task_id}/results")
def get_task_results(task_id: str):
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.get_task_results(task_id))


@router.get("/results")
def get_all_results():
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.get_all_results())


@router.get("/health")
async def get_system_health():
    """Compute a fresh system health snapshot."""
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    try:
        return _respond(await _engine.get_system_health())
    except Exception:
        logger.exception("Health evaluation failed")
        return JSONResponse(
            status_code=500,
            content={"ok": False, "message": "Health evaluation failed"},
        )


@router.get("/status")
def get_status():
    """Scheduler state, in-flight tasks and next run times."""
    unavailable = _unavailable()
    if unavailable is not None:
        return unavailable
    return _respond(_engine.get_status())
