"""
Tests for src.core.maintenance_api — HTTP mapping of engine responses.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeProbe, RecordingAlertBackend, make_task
from src.core import feature_flags
from src.core.gateway import create_app
from src.core.maintenance.engine import MaintenanceEngine
from src.core.maintenance.operations import OperationRegistry
from src.core.maintenance.schema import MaintenanceConfig


async def _ok(ctx):
    return {"ok": True}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(feature_flags, "FEATURE_MAINTENANCE", True)
    registry = OperationRegistry()
    registry.register("a", _ok)
    registry.register("b", _ok)
    engine = MaintenanceEngine(
        config=MaintenanceConfig(),
        probe=FakeProbe(disk=85),
        alert_backend=RecordingAlertBackend(),
        operations=registry,
        tasks=[make_task("a"), make_task("b", enabled=False)],
    )
    return TestClient(create_app(engine))


# ===================================================================
# Tasks
# ===================================================================

class TestTaskEndpoints:

    def test_list(self, client):
        resp = client.get("/api/maintenance/tasks")
        assert resp.status_code == 200
        assert [t["id"] for t in resp.json()["data"]] == ["a", "b"]

    def test_get_unknown(self, client):
        resp = client.get("/api/maintenance/tasks/zzz")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_enable_disable(self, client):
        resp = client.post("/api/maintenance/tasks/b/enable")
        assert resp.status_code == 200
        assert resp.json()["data"]["enabled"] is True
        resp = client.post("/api/maintenance/tasks/b/disable")
        assert resp.json()["data"]["status"] == "disabled"

    def test_run(self, client):
        resp = client.post("/api/maintenance/tasks/a/run")
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        results = client.get("/api/maintenance/tasks/a/results").json()["data"]
        assert len(results) == 1

    def test_run_disabled(self, client):
        resp = client.post("/api/maintenance/tasks/b/run")
        assert resp.status_code == 409
        assert resp.json()["error"] == "disabled"

    def test_restart_job(self, client):
        resp = client.post("/api/maintenance/tasks/a/restart-job")
        assert resp.status_code == 200
        assert resp.json()["data"]["next_run"] is not None
        resp = client.post("/api/maintenance/tasks/zzz/restart-job")
        assert resp.status_code == 404

    def test_run_all(self, client):
        resp = client.post("/api/maintenance/run-all")
        assert resp.status_code == 200
        assert [o["task_id"] for o in resp.json()["data"]] == ["a"]
        assert "a" in client.get("/api/maintenance/results").json()["data"]


# ===================================================================
# Health + status
# ===================================================================

class TestHealthEndpoints:

    def test_health(self, client):
        resp = client.get("/api/maintenance/health")
        assert resp.status_code == 200
        body = resp.json()["data"]
        assert body["overall"] == "warning"
        assert body["score"] == 85

    def test_status(self, client):
        resp = client.get("/api/maintenance/status")
        assert resp.status_code == 200
        assert "jobs" in resp.json()["data"]

    def test_liveness(self, client):
        assert client.get("/health/live").json()["status"] == "alive"


class TestDisabled:

    def test_feature_flag_off(self, client, monkeypatch):
        monkeypatch.setattr(feature_flags, "FEATURE_MAINTENANCE", False)
        resp = client.get("/api/maintenance/tasks")
        assert resp.status_code == 503
