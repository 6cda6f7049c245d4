"""
Alert Dispatcher — best-effort operator notification.

Thin façade over a delivery backend. Called when a critical-priority task
fails or a health snapshot comes back critical. Delivery failures are
logged and returned as an AlertOutcome; they never propagate to the
caller, so a broken notification channel cannot fail a task run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import requests

from src.core.maintenance.health import SystemHealthSnapshot

logger = logging.getLogger(__name__)


class AlertBackend(Protocol):
    """Delivery mechanism (email, webhook, chat)."""

    def send_task_failure(self, task_id: str, message: str) -> None: ...

    def send_health_alert(self, snapshot: SystemHealthSnapshot) -> None: ...


@dataclass
class AlertOutcome:
    """Result of one delivery attempt."""
    kind: str
    subject: str
    delivered: bool
    error: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )


class LogAlertBackend:
    """Default backend: writes alerts to the log."""

    def send_task_failure(self, task_id: str, message: str) -> None:
        logger.error("ALERT task_failure: %s: %s", task_id, message)

    def send_health_alert(self, snapshot: SystemHealthSnapshot) -> None:
        logger.error(
            "ALERT system_health: %s (score %d): %s",
            snapshot.overall.value, snapshot.score, "; ".join(snapshot.issues),
        )


class WebhookAlertBackend:
    """POSTs alerts as JSON to a webhook URL."""

    def __init__(self, url: str, timeout_s: float = 5.0, token: str = ""):
        self._url = url
        self._timeout_s = timeout_s
        self._token = token

    def _headers(self) -> Dict[str, str]:
        h: Dict[str, str] = {"Content-Type": "application/json"}
        if self._token:
            h["Authorization"] = f"Bearer {self._token}"
        return h

    def _post(self, payload: Dict[str, Any]) -> None:
        resp = requests.post(
            self._url,
            json=payload,
            headers=self._headers(),
            timeout=self._timeout_s,
        )
        resp.raise_for_status()

    def send_task_failure(self, task_id: str, message: str) -> None:
        self._post({
            "type": "maintenance_task_failed",
            "task_id": task_id,
            "message": message,
        })

    def send_health_alert(self, snapshot: SystemHealthSnapshot) -> None:
        self._post({
            "type": "system_health_alert",
            "health": snapshot.model_dump(mode="json"),
        })


class AlertDispatcher:
    """Routes alerts to the backend and keeps a short delivery log."""

    def __init__(self, backend: Optional[AlertBackend] = None, keep: int = 100):
        self._backend = backend or LogAlertBackend()
        self._keep = keep
        self._outcomes: List[AlertOutcome] = []

    @property
    def outcomes(self) -> List[AlertOutcome]:
        return list(self._outcomes)

    def _record(self, outcome: AlertOutcome) -> AlertOutcome:
        self._outcomes.append(outcome)
        if len(self._outcomes) > self._keep:
            del self._outcomes[: len(self._outcomes) - self._keep]
        return outcome

    async def notify_task_failure(self, task_id: str, message: str) -> AlertOutcome:
        try:
            await asyncio.to_thread(self._backend.send_task_failure, task_id, message)
        except Exception as exc:
            logger.warning("alert_delivery_failed: task=%s error=%s", task_id, exc)
            return self._record(AlertOutcome(
                kind="task_failure", subject=task_id, delivered=False, error=str(exc),
            ))
        logger.info("alert_sent: task_failure %s", task_id)
        return self._record(AlertOutcome(kind="task_failure", subject=task_id, delivered=True))

    async def notify_health(self, snapshot: SystemHealthSnapshot) -> AlertOutcome:
        try:
            await asyncio.to_thread(self._backend.send_health_alert, snapshot)
        except Exception as exc:
            logger.warning("alert_delivery_failed: health error=%s", exc)
            return self._record(AlertOutcome(
                kind="health", subject=snapshot.overall.value, delivered=False, error=str(exc),
            ))
        logger.info("alert_sent: health %s", snapshot.overall.value)
        return self._record(AlertOutcome(
            kind="health", subject=snapshot.overall.value, delivered=True,
        ))
