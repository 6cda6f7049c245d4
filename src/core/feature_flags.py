"""
Feature Flags — maintenance subsystem kill switches.

Each flag controls whether part of the maintenance engine is active. When
disabled, the panel boots without that part.

Environment variables:
    FEATURE_MAINTENANCE               — default: true (engine + API)
    FEATURE_MAINTENANCE_SCHEDULER     — default: true (cron tick loop)
    FEATURE_MAINTENANCE_HEALTH_ALERTS — default: true (alert on critical health)
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


def _env_bool(key: str, default: bool = True) -> bool:
    """Read a boolean from env, falling back to the hardcoded default."""
    val = os.environ.get(key, "").strip().lower()
    if not val:
        return default
    return val in ("true", "1", "yes")


FEATURE_MAINTENANCE: bool = _env_bool("FEATURE_MAINTENANCE")
FEATURE_MAINTENANCE_SCHEDULER: bool = _env_bool("FEATURE_MAINTENANCE_SCHEDULER")
FEATURE_MAINTENANCE_HEALTH_ALERTS: bool = _env_bool("FEATURE_MAINTENANCE_HEALTH_ALERTS")


def reload_flags() -> None:
    """Re-read feature flags from environment. Used in tests."""
    global FEATURE_MAINTENANCE, FEATURE_MAINTENANCE_SCHEDULER, FEATURE_MAINTENANCE_HEALTH_ALERTS
    FEATURE_MAINTENANCE = _env_bool("FEATURE_MAINTENANCE")
    FEATURE_MAINTENANCE_SCHEDULER = _env_bool("FEATURE_MAINTENANCE_SCHEDULER")
    FEATURE_MAINTENANCE_HEALTH_ALERTS = _env_bool("FEATURE_MAINTENANCE_HEALTH_ALERTS")
    logger.info(
        "Feature flags reloaded: MAINTENANCE=%s, SCHEDULER=%s, HEALTH_ALERTS=%s",
        FEATURE_MAINTENANCE, FEATURE_MAINTENANCE_SCHEDULER, FEATURE_MAINTENANCE_HEALTH_ALERTS,
    )
