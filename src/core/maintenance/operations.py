"""
Maintenance Operations — pluggable units of work behind each task.

Each catalog entry resolves to an async operation through an
OperationRegistry (a strategy map keyed by task id). An operation receives
an OperationContext, appends log/warning/error lines to it, and returns an
optional payload. Raising marks the run as failed.

The default registry wires the standard catalog to shell command recipes
run through a CommandRunner, a service-monitoring operation that restarts
inactive services when the task has ``auto_fix`` set, and the two
monitoring operations which read the health aggregator and metric probe.
Deployments replace any entry with
``registry.register(task_id, operation)``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from src.core.maintenance.schema import TaskDefinition

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 600
FAILED_LOGIN_WARN_THRESHOLD = 100
BACKUP_DIR = "/var/backups/hostpanel"


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class OperationContext:
    """Collects the structured output of one operation run."""
    task: TaskDefinition
    logs: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def log(self, line: str) -> None:
        self.logs.append(line)

    def warn(self, line: str) -> None:
        self.warnings.append(line)

    def error(self, line: str) -> None:
        self.errors.append(line)


Operation = Callable[[OperationContext], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

class CommandError(Exception):
    """Raised when a maintenance command exits non-zero or times out."""

    def __init__(self, command: str, return_code: Optional[int], stderr: str = ""):
        detail = stderr.strip()[:500]
        if return_code is None:
            msg = f"Command timed out: {command}"
        else:
            msg = f"Command failed ({return_code}): {command}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


@dataclass
class CommandOutput:
    command: str
    stdout: str
    stderr: str
    return_code: int


class CommandRunner:
    """Runs shell commands as child processes without blocking the loop."""

    def __init__(self, timeout_s: float = DEFAULT_COMMAND_TIMEOUT):
        self._timeout_s = timeout_s

    async def run(self, command: str, check: bool = True) -> CommandOutput:
        logger.debug("command_start: %s", command)
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandError(command, None) from exc
        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")
        if check and proc.returncode != 0:
            raise CommandError(command, proc.returncode, stderr)
        return CommandOutput(command, stdout, stderr, proc.returncode)


def _parse_int(text: str) -> int:
    try:
        return int(text.strip().splitlines()[-1].strip())
    except (ValueError, IndexError):
        return 0


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class OperationRegistry:
    """Strategy map from task id to operation."""

    def __init__(self) -> None:
        self._ops: Dict[str, Operation] = {}

    def register(self, task_id: str, operation: Operation) -> None:
        self._ops[task_id] = operation

    def get(self, task_id: str) -> Optional[Operation]:
        return self._ops.get(task_id)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._ops

    def task_ids(self) -> List[str]:
        return list(self._ops)


def command_operation(
    runner: CommandRunner,
    steps: Sequence[Tuple[str, str]],
    intro: str,
    result: Optional[Dict[str, Any]] = None,
) -> Operation:
    """Build an operation that runs ``(command, log line)`` steps in order."""

    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log(intro)
        for command, done in steps:
            try:
                await runner.run(command)
            except CommandError as exc:
                ctx.error(str(exc))
                raise
            ctx.log(done)
        return dict(result or {"completed": True})

    return _operation


# ---------------------------------------------------------------------------
# Operations with custom result handling
# ---------------------------------------------------------------------------

def _system_updates(runner: CommandRunner) -> Operation:
    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Checking for system updates...")
        await runner.run("apt-get update")
        ctx.log("Updated package lists")
        listing = await runner.run("apt list --upgradable 2>/dev/null | tail -n +2 | wc -l")
        count = _parse_int(listing.stdout)
        if count <= 0:
            ctx.log("System is up to date")
            return {"updates_applied": 0}
        ctx.log(f"Found {count} updates available")
        await runner.run("apt-get upgrade -y")
        ctx.log("Applied system updates")
        return {"updates_applied": count}

    return _operation


def _security_scan(runner: CommandRunner) -> Operation:
    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Scanning for security issues...")
        logins = await runner.run(
            "grep -c 'Failed password' /var/log/auth.log 2>/dev/null || true",
        )
        failed_logins = _parse_int(logins.stdout)
        if failed_logins > FAILED_LOGIN_WARN_THRESHOLD:
            ctx.warn(f"High number of failed login attempts: {failed_logins}")
        procs = await runner.run(
            "ps aux | grep -E '(nc|netcat|nmap|masscan)' | grep -v grep | wc -l",
        )
        suspicious = _parse_int(procs.stdout)
        if suspicious > 0:
            ctx.warn(f"Suspicious processes detected: {suspicious}")
        ctx.log("Security scan completed")
        return {
            "failed_logins": failed_logins,
            "suspicious_processes": suspicious,
            "security_issues": len(ctx.warnings),
        }

    return _operation


def _firewall_check(runner: CommandRunner) -> Operation:
    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Checking firewall configuration...")
        status = await runner.run("ufw status")
        ctx.log("Firewall status checked")
        active = "Status: inactive" not in status.stdout
        if not active:
            ctx.warn("Firewall is inactive")
        return {"firewall_active": active}

    return _operation


def _ssl_certificate_check(runner: CommandRunner) -> Operation:
    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Checking SSL certificates...")
        try:
            await runner.run("certbot renew --dry-run")
        except CommandError as exc:
            # A failed dry run is a finding, not a task failure.
            ctx.warn(f"SSL certificate check failed: {exc}")
            return {"certificates_valid": False}
        ctx.log("SSL certificates are up to date")
        return {"certificates_valid": True}

    return _operation


def _system_backup(runner: CommandRunner, backup_dir: str) -> Operation:
    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Creating system backup...")
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        path = f"{backup_dir}/system-backup-{stamp}.tar.gz"
        await runner.run(f"mkdir -p {backup_dir}")
        await runner.run(
            f"tar -czf {path} --ignore-failed-read /etc/nginx /etc/apache2 /var/www /etc/ssl",
        )
        ctx.log("System backup created")
        return {"backup_path": path, "backup_created": True}

    return _operation


def _database_backup(runner: CommandRunner, backup_dir: str) -> Operation:
    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Creating database backup...")
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        path = f"{backup_dir}/databases-{stamp}.sql.gz"
        await runner.run(f"mkdir -p {backup_dir}")
        await runner.run(f"mysqldump --all-databases --single-transaction | gzip > {path}")
        ctx.log("Database backup created")
        return {"backup_path": path, "backup_created": True}

    return _operation


def _service_monitoring(runner: CommandRunner, services: Sequence[str]) -> Operation:
    """Check each service with systemctl; restart inactive ones when auto-fix is on."""

    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Checking monitored services...")
        if not services:
            ctx.log("No services configured")
        states: Dict[str, bool] = {}
        restarted: List[str] = []
        for svc in services:
            status = await runner.run(f"systemctl is-active {svc}", check=False)
            active = status.stdout.strip() == "active"
            states[svc] = active
            if active:
                continue
            if not ctx.task.auto_fix:
                ctx.warn(f"Service {svc} is inactive")
                continue
            try:
                await runner.run(f"systemctl restart {svc}")
            except CommandError as exc:
                ctx.warn(f"Service {svc} is inactive and could not be restarted: {exc}")
                continue
            restarted.append(svc)
            ctx.warn(f"Service {svc} was inactive and has been restarted")
            logger.warning("service_restarted: %s", svc)
        ctx.log("Service monitoring completed")
        return {"services": states, "restarted": restarted}

    return _operation


def health_check_operation(
    check: Callable[[], Awaitable[Any]],
) -> Operation:
    """Operation that runs a full health evaluation and returns the snapshot."""

    async def _operation(ctx: OperationContext) -> Any:
        ctx.log("Checking system health...")
        snapshot = await check()
        for issue in getattr(snapshot, "issues", []):
            ctx.warn(issue)
        ctx.log("System health check completed")
        return snapshot.model_dump(mode="json") if hasattr(snapshot, "model_dump") else snapshot

    return _operation


def performance_operation(
    collect: Callable[[], Awaitable[Any]],
) -> Operation:
    """Operation that records raw resource readings without scoring them."""

    async def _operation(ctx: OperationContext) -> Dict[str, Any]:
        ctx.log("Monitoring system performance...")
        readings = await collect()
        ctx.log("Performance monitoring completed")
        return {
            "cpu_usage": readings.cpu,
            "memory_usage": readings.memory,
            "disk_usage": readings.disk,
        }

    return _operation


# ---------------------------------------------------------------------------
# Default wiring
# ---------------------------------------------------------------------------

def default_registry(
    runner: Optional[CommandRunner] = None,
    health_check: Optional[Callable[[], Awaitable[Any]]] = None,
    collect_metrics: Optional[Callable[[], Awaitable[Any]]] = None,
    backup_dir: str = BACKUP_DIR,
    services: Optional[Sequence[str]] = None,
) -> OperationRegistry:
    """Registry covering every task in the default catalog."""
    runner = runner or CommandRunner()
    reg = OperationRegistry()

    # Cleanup
    reg.register("temp-cleanup", command_operation(runner, [
        ("find /tmp -type f -atime +1 -delete", "Cleaned /tmp directory"),
        ("find /var/tmp -type f -atime +1 -delete", "Cleaned /var/tmp directory"),
        ("find /var/cache -type f -atime +7 -delete 2>/dev/null || true",
         "Cleaned application caches"),
    ], "Cleaning temporary files...", {"cleaned": True}))
    reg.register("log-rotation", command_operation(runner, [
        ("logrotate -f /etc/logrotate.conf", "Rotated application logs"),
        ("find /var/log -name '*.log' -type f -mtime +1 -exec gzip {} \\;",
         "Compressed old log files"),
    ], "Rotating log files...", {"rotated": True}))
    reg.register("old-backup-cleanup", command_operation(runner, [
        (f"find {backup_dir} -type f -mtime +30 -delete 2>/dev/null || true",
         "Removed old backup files"),
        ("find /var/log -name '*.gz' -type f -mtime +90 -delete", "Removed old log backups"),
    ], "Cleaning old backup files...", {"cleaned": True}))
    reg.register("package-cache-cleanup", command_operation(runner, [
        ("apt-get clean", "Cleaned apt cache"),
        ("apt-get autoremove -y", "Removed unused packages"),
    ], "Cleaning package cache...", {"cleaned": True}))

    # Updates
    reg.register("system-updates", _system_updates(runner))
    reg.register("security-updates", command_operation(runner, [
        ("apt-get update", "Updated package lists"),
        ("unattended-upgrade", "Applied security updates"),
    ], "Applying security updates...", {"security_updates_applied": True}))
    reg.register("package-updates", command_operation(runner, [
        ("apt-get update", "Updated package lists"),
        ("apt-get upgrade -y", "Updated packages"),
    ], "Updating packages...", {"packages_updated": True}))

    # Optimization
    reg.register("database-optimization", command_operation(runner, [
        ("mysqlcheck --all-databases --optimize --silent", "Database optimized"),
    ], "Optimizing database...", {"optimized": True}))
    reg.register("filesystem-optimization", command_operation(runner, [
        ("sync", "Synced filesystem"),
        ("echo 3 > /proc/sys/vm/drop_caches", "Cleared page cache"),
    ], "Optimizing filesystem...", {"optimized": True}))
    reg.register("memory-optimization", command_operation(runner, [
        ("echo 1 > /proc/sys/vm/drop_caches", "Cleared page cache"),
        ("echo 2 > /proc/sys/vm/drop_caches", "Cleared dentries and inodes"),
    ], "Optimizing memory...", {"optimized": True}))

    # Security
    reg.register("security-scan", _security_scan(runner))
    reg.register("firewall-check", _firewall_check(runner))
    reg.register("ssl-certificate-check", _ssl_certificate_check(runner))

    # Backup
    reg.register("system-backup", _system_backup(runner, backup_dir))
    reg.register("database-backup", _database_backup(runner, backup_dir))

    # Monitoring
    reg.register("service-monitoring", _service_monitoring(runner, list(services or [])))
    if health_check is not None:
        reg.register("health-check", health_check_operation(health_check))
    if collect_metrics is not None:
        reg.register("performance-monitoring", performance_operation(collect_metrics))

    return reg
