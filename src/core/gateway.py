"""
Maintenance Gateway — FastAPI application hosting the maintenance engine.

Run with:
    uvicorn src.core.gateway:create_app --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

from fastapi import FastAPI

from src.core import feature_flags
from src.core.maintenance.engine import MaintenanceEngine
from src.core.maintenance_api import init_maintenance_api, router as maintenance_router

# Configurable log level
LOG_LEVEL = os.getenv("MAINTENANCE_LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("hostpanel.gateway")

CONFIG_DIR = os.getenv("MAINTENANCE_CONFIG_DIR", "config")


def create_app(engine: Optional[MaintenanceEngine] = None) -> FastAPI:
    """Build the app. An engine is created from CONFIG_DIR unless supplied."""
    app = FastAPI(title="Hosting Panel Maintenance")
    app.include_router(maintenance_router)

    if engine is None and feature_flags.FEATURE_MAINTENANCE:
        engine = MaintenanceEngine.from_config_dir(CONFIG_DIR)
    init_maintenance_api(engine)
    app.state.engine = engine
    app.state.started_at = None

    @app.on_event("startup")
    async def startup_event():
        app.state.started_at = time.time()
        if engine is None:
            logger.warning("Maintenance disabled; serving API without an engine.")
            return
        await engine.start()
        logger.info("Maintenance gateway started.")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Maintenance gateway shutting down.")
        if engine is not None:
            try:
                await engine.stop()
            except Exception as e:
                logger.error("Shutdown error: %s", e)

    @app.get("/health/live")
    async def health_live():
        """Liveness probe: always 200 while the process is running."""
        uptime = time.time() - app.state.started_at if app.state.started_at else 0.0
        return {"status": "alive", "uptime_s": round(uptime, 1)}

    return app
