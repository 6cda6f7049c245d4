"""
Maintenance Test Configuration
Provides shared fixtures and fakes for the maintenance test suite.
"""
import os
import sys

import pytest

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.maintenance.operations import CommandError, CommandOutput  # noqa: E402
from src.core.maintenance.schema import TaskDefinition  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeProbe:
    """Metric probe returning fixed readings."""

    def __init__(self, disk=50.0, memory=50.0, cpu=50.0, services=None):
        self.disk = disk
        self.memory = memory
        self.cpu = cpu
        self.services = services or {}

    def disk_usage_percent(self):
        if isinstance(self.disk, Exception):
            raise self.disk
        return self.disk

    def memory_usage_percent(self):
        return self.memory

    def cpu_usage_percent(self):
        return self.cpu

    def service_is_active(self, name):
        return self.services.get(name, True)


class RecordingAlertBackend:
    """Alert backend that remembers what it was asked to deliver."""

    def __init__(self, fail=False):
        self.fail = fail
        self.task_failures = []
        self.health_alerts = []

    def send_task_failure(self, task_id, message):
        self.task_failures.append((task_id, message))
        if self.fail:
            raise ConnectionError("smtp down")

    def send_health_alert(self, snapshot):
        self.health_alerts.append(snapshot)
        if self.fail:
            raise ConnectionError("smtp down")


class FakeRunner:
    """CommandRunner stand-in scripted by command substring."""

    def __init__(self, outputs=None, failures=None):
        self.outputs = outputs or {}
        self.failures = failures or set()
        self.commands = []

    async def run(self, command, check=True):
        self.commands.append(command)
        for fragment in self.failures:
            if fragment in command:
                raise CommandError(command, 1, "simulated failure")
        stdout = ""
        for fragment, out in self.outputs.items():
            if fragment in command:
                stdout = out
        return CommandOutput(command, stdout, "", 0)


def make_task(task_id, **overrides):
    base = {
        "id": task_id,
        "name": f"Task {task_id}",
        "category": "cleanup",
        "priority": "medium",
        "schedule": "0 * * * *",
    }
    base.update(overrides)
    return TaskDefinition(**base)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def alert_backend():
    return RecordingAlertBackend()


@pytest.fixture
def env_override(monkeypatch):
    """Factory fixture to set env vars scoped to a single test.

    Usage:
        def test_something(env_override):
            env_override(MAINTENANCE_TIMEZONE="Europe/Berlin")
    """
    def _set(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key, value)
    return _set
