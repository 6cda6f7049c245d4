"""
Tests for src.core.maintenance.operations — command runner, registry and
the default operation recipes.
"""

import asyncio

import pytest

from conftest import FakeRunner, make_task
from src.core.maintenance.catalog import DEFAULT_TASKS
from src.core.maintenance.health import MetricReadings, SystemHealthSnapshot
from src.core.maintenance.operations import (
    CommandError,
    CommandRunner,
    OperationContext,
    command_operation,
    default_registry,
    health_check_operation,
    performance_operation,
)


def _ctx(task_id="temp-cleanup"):
    return OperationContext(task=make_task(task_id))


# ===================================================================
# CommandRunner
# ===================================================================

class TestCommandRunner:

    def test_captures_stdout(self):
        out = asyncio.run(CommandRunner().run("echo hello"))
        assert out.stdout.strip() == "hello"
        assert out.return_code == 0

    def test_non_zero_exit_raises(self):
        with pytest.raises(CommandError) as exc_info:
            asyncio.run(CommandRunner().run("echo oops >&2; exit 3"))
        assert exc_info.value.return_code == 3
        assert "oops" in str(exc_info.value)

    def test_non_zero_exit_without_check(self):
        out = asyncio.run(CommandRunner().run("exit 2", check=False))
        assert out.return_code == 2

    def test_timeout(self):
        with pytest.raises(CommandError, match="timed out"):
            asyncio.run(CommandRunner(timeout_s=0.1).run("sleep 5"))


# ===================================================================
# Registry
# ===================================================================

class TestDefaultRegistry:

    def test_covers_default_catalog(self):
        async def check():
            return SystemHealthSnapshot()

        async def collect():
            return MetricReadings()

        reg = default_registry(FakeRunner(), health_check=check, collect_metrics=collect)
        assert set(reg.task_ids()) == {t.id for t in DEFAULT_TASKS}

    def test_monitoring_needs_callables(self):
        reg = default_registry(FakeRunner())
        assert "health-check" not in reg
        assert "performance-monitoring" not in reg
        assert "temp-cleanup" in reg


# ===================================================================
# Recipes
# ===================================================================

class TestRecipes:

    def test_command_steps_logged_in_order(self):
        runner = FakeRunner()
        op = command_operation(runner, [("one", "did one"), ("two", "did two")], "Starting...")
        ctx = _ctx()
        data = asyncio.run(op(ctx))
        assert runner.commands == ["one", "two"]
        assert ctx.logs == ["Starting...", "did one", "did two"]
        assert data == {"completed": True}

    def test_command_failure_propagates(self):
        runner = FakeRunner(failures={"two"})
        op = command_operation(runner, [("one", "did one"), ("two", "did two"), ("three", "x")], "Go")
        ctx = _ctx()
        with pytest.raises(CommandError):
            asyncio.run(op(ctx))
        assert runner.commands == ["one", "two"]
        assert len(ctx.errors) == 1

    def test_system_updates_counts(self):
        runner = FakeRunner(outputs={"apt list": "3\n"})
        op = default_registry(runner).get("system-updates")
        data = asyncio.run(op(_ctx("system-updates")))
        assert data == {"updates_applied": 3}
        assert "apt-get upgrade -y" in runner.commands

    def test_system_up_to_date(self):
        runner = FakeRunner(outputs={"apt list": "0\n"})
        op = default_registry(runner).get("system-updates")
        ctx = _ctx("system-updates")
        assert asyncio.run(op(ctx)) == {"updates_applied": 0}
        assert "System is up to date" in ctx.logs
        assert "apt-get upgrade -y" not in runner.commands

    def test_security_scan_warnings(self):
        runner = FakeRunner(outputs={"Failed password": "150\n", "masscan": "2\n"})
        op = default_registry(runner).get("security-scan")
        ctx = _ctx("security-scan")
        data = asyncio.run(op(ctx))
        assert data["failed_logins"] == 150
        assert data["security_issues"] == 2
        assert len(ctx.warnings) == 2

    def test_ssl_failure_is_a_warning(self):
        runner = FakeRunner(failures={"certbot"})
        op = default_registry(runner).get("ssl-certificate-check")
        ctx = _ctx("ssl-certificate-check")
        assert asyncio.run(op(ctx)) == {"certificates_valid": False}
        assert ctx.warnings

    def test_inactive_firewall(self):
        runner = FakeRunner(outputs={"ufw": "Status: inactive\n"})
        op = default_registry(runner).get("firewall-check")
        ctx = _ctx("firewall-check")
        assert asyncio.run(op(ctx)) == {"firewall_active": False}
        assert ctx.warnings == ["Firewall is inactive"]

    def test_backup_uses_backup_dir(self):
        runner = FakeRunner()
        op = default_registry(runner, backup_dir="/srv/bk").get("database-backup")
        data = asyncio.run(op(_ctx("database-backup")))
        assert data["backup_path"].startswith("/srv/bk/databases-")
        assert any("mysqldump" in c for c in runner.commands)

    def test_health_check_issues_become_warnings(self):
        snap = SystemHealthSnapshot(issues=["Critical disk usage: 95.0%"])

        async def check():
            return snap

        ctx = _ctx("health-check")
        data = asyncio.run(health_check_operation(check)(ctx))
        assert ctx.warnings == ["Critical disk usage: 95.0%"]
        assert data["issues"] == ["Critical disk usage: 95.0%"]

    def test_performance_monitoring(self):
        async def collect():
            return MetricReadings(disk=10, memory=20, cpu=30)

        data = asyncio.run(performance_operation(collect)(_ctx("performance-monitoring")))
        assert data == {"cpu_usage": 30.0, "memory_usage": 20.0, "disk_usage": 10.0}


# ===================================================================
# Service monitoring (self-healing)
# ===================================================================

class TestServiceMonitoring:

    def _op(self, runner, services=("nginx", "mysql")):
        return default_registry(runner, services=list(services)).get("service-monitoring")

    def _runner(self, failures=None):
        return FakeRunner(
            outputs={"is-active nginx": "active\n", "is-active mysql": "inactive\n"},
            failures=failures,
        )

    def test_restarts_down_service_with_auto_fix(self):
        runner = self._runner()
        ctx = OperationContext(task=make_task("service-monitoring", auto_fix=True))
        data = asyncio.run(self._op(runner)(ctx))
        assert "systemctl restart mysql" in runner.commands
        assert "systemctl restart nginx" not in runner.commands
        assert data == {"services": {"nginx": True, "mysql": False}, "restarted": ["mysql"]}
        assert ctx.warnings == ["Service mysql was inactive and has been restarted"]

    def test_reports_only_without_auto_fix(self):
        runner = self._runner()
        ctx = OperationContext(task=make_task("service-monitoring", auto_fix=False))
        data = asyncio.run(self._op(runner)(ctx))
        assert not any("restart" in c for c in runner.commands)
        assert data["restarted"] == []
        assert ctx.warnings == ["Service mysql is inactive"]

    def test_failed_restart_is_a_warning(self):
        runner = self._runner(failures={"systemctl restart"})
        ctx = OperationContext(task=make_task("service-monitoring", auto_fix=True))
        data = asyncio.run(self._op(runner)(ctx))
        assert data["restarted"] == []
        assert "could not be restarted" in ctx.warnings[0]

    def test_no_services_configured(self):
        runner = FakeRunner()
        ctx = OperationContext(task=make_task("service-monitoring", auto_fix=True))
        data = asyncio.run(self._op(runner, services=())(ctx))
        assert runner.commands == []
        assert data == {"services": {}, "restarted": []}

    def test_default_catalog_entry_has_auto_fix(self):
        task = next(t for t in DEFAULT_TASKS if t.id == "service-monitoring")
        assert task.auto_fix is True
        assert task.category.value == "monitoring"
