"""
Tests for src.core.maintenance.scheduler — cron binding, ticks and sweeps.
"""

import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import make_task
from src.core.maintenance.catalog import TaskCatalog
from src.core.maintenance.executor import TaskExecutor
from src.core.maintenance.ledger import HistoryLedger
from src.core.maintenance.operations import OperationRegistry
from src.core.maintenance.scheduler import MaintenanceScheduler, compute_next_run
from src.core.maintenance.schema import ErrorCode, MaintenanceError

UTC = timezone.utc


def _build(tasks, ops, tz="UTC"):
    catalog = TaskCatalog(tasks)
    ledger = HistoryLedger()
    registry = OperationRegistry()
    for task_id, op in ops.items():
        registry.register(task_id, op)
    executor = TaskExecutor(catalog, ledger, registry)
    scheduler = MaintenanceScheduler(catalog, executor, timezone_name=tz, tick_interval_s=1)
    return scheduler, catalog, ledger


async def _noop(ctx):
    return None


# ===================================================================
# Cron evaluation
# ===================================================================

class TestNextRun:

    def test_next_hour(self):
        nxt = compute_next_run("0 * * * *", datetime(2026, 1, 1, 10, 30, tzinfo=UTC), ZoneInfo("UTC"))
        assert nxt == datetime(2026, 1, 1, 11, 0, tzinfo=UTC)

    def test_evaluated_in_configured_zone(self):
        # 00:30 UTC is 09:30 in Tokyo, so 09:00 daily is tomorrow.
        nxt = compute_next_run("0 9 * * *", datetime(2026, 1, 1, 0, 30, tzinfo=UTC), ZoneInfo("Asia/Tokyo"))
        assert nxt.astimezone(UTC) == datetime(2026, 1, 2, 0, 0, tzinfo=UTC)

    def test_naive_base_treated_as_utc(self):
        nxt = compute_next_run("*/15 * * * *", datetime(2026, 1, 1, 10, 1), ZoneInfo("UTC"))
        assert nxt == datetime(2026, 1, 1, 10, 15, tzinfo=UTC)

    def test_scheduler_zone_not_host_zone(self):
        scheduler, _, _ = _build([make_task("a", schedule="0 3 * * *")], {}, tz="America/New_York")
        scheduler.refresh_triggers(datetime(2026, 6, 1, 12, 0, tzinfo=UTC))
        nxt = scheduler.next_run("a")
        assert nxt.astimezone(ZoneInfo("America/New_York")).hour == 3
        assert scheduler.timezone == "America/New_York"


# ===================================================================
# Ticks
# ===================================================================

class TestTick:

    def test_fires_when_due(self):
        scheduler, catalog, ledger = _build([make_task("a")], {"a": _noop})
        scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 30, tzinfo=UTC))

        async def scenario():
            early = await scheduler.tick(datetime(2026, 1, 1, 10, 45, tzinfo=UTC))
            due = await scheduler.tick(datetime(2026, 1, 1, 11, 0, tzinfo=UTC))
            await scheduler.wait_idle()
            return early, due

        early, due = asyncio.run(scenario())
        assert early == []
        assert due == ["a"]
        assert len(ledger.get_results("a")) == 1
        assert scheduler.next_run("a") == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert catalog.get_state("a").next_run == scheduler.next_run("a")

    def test_disabled_task_never_fires(self):
        scheduler, _, ledger = _build([make_task("a", enabled=False)], {"a": _noop})
        scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 30, tzinfo=UTC))

        async def scenario():
            fired = await scheduler.tick(datetime(2026, 1, 2, 0, 0, tzinfo=UTC))
            await scheduler.wait_idle()
            return fired

        assert asyncio.run(scenario()) == []
        assert scheduler.next_run("a") is None
        assert ledger.get_results("a") == []

    def test_disable_clears_trigger(self):
        scheduler, catalog, _ = _build([make_task("a")], {"a": _noop})
        scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 30, tzinfo=UTC))
        catalog.toggle_task("a", False)
        fired = asyncio.run(scheduler.tick(datetime(2026, 1, 1, 11, 0, tzinfo=UTC)))
        assert fired == []
        assert scheduler.next_run("a") is None

    def test_newly_enabled_binds_for_future_only(self):
        scheduler, catalog, _ = _build([make_task("a", enabled=False)], {"a": _noop})
        scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 30, tzinfo=UTC))
        catalog.toggle_task("a", True)
        now = datetime(2026, 1, 1, 11, 0, tzinfo=UTC)
        fired = asyncio.run(scheduler.tick(now))
        assert fired == []
        assert scheduler.next_run("a") > now

    def test_overlapping_firing_is_rejected(self):
        scheduler, _, ledger = _build([make_task("a", schedule="* * * * *")], {})

        async def scenario():
            release = asyncio.Event()

            async def slow(ctx):
                await release.wait()

            scheduler._executor._operations.register("a", slow)
            scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 0, tzinfo=UTC))
            await scheduler.tick(datetime(2026, 1, 1, 10, 1, tzinfo=UTC))
            await asyncio.sleep(0.01)
            await scheduler.tick(datetime(2026, 1, 1, 10, 2, tzinfo=UTC))
            await asyncio.sleep(0.01)
            release.set()
            await scheduler.wait_idle()

        asyncio.run(scenario())
        assert len(ledger.get_results("a")) == 1

    def test_start_and_stop(self):
        scheduler, _, _ = _build([make_task("a")], {"a": _noop})

        async def scenario():
            await scheduler.start()
            running = scheduler.is_running
            await scheduler.stop()
            return running

        assert asyncio.run(scenario()) is True
        assert scheduler.is_running is False


# ===================================================================
# Sweep
# ===================================================================

class TestRunAll:

    def test_runs_enabled_in_catalog_order(self):
        order = []

        def recorder(name):
            async def op(ctx):
                order.append(name)
            return op

        scheduler, _, _ = _build(
            [make_task("c"), make_task("a"), make_task("skip", enabled=False), make_task("b")],
            {name: recorder(name) for name in ("a", "b", "c", "skip")},
        )
        outcomes = asyncio.run(scheduler.run_all_tasks())
        assert order == ["c", "a", "b"]
        assert [o.task_id for o in outcomes] == ["c", "a", "b"]

    def test_failure_does_not_stop_sweep(self):
        async def boom(ctx):
            raise RuntimeError("nope")

        scheduler, _, ledger = _build([make_task("a"), make_task("b")], {"a": boom, "b": _noop})
        outcomes = asyncio.run(scheduler.run_all_tasks())
        assert [o.success for o in outcomes] == [False, True]
        assert len(ledger.get_results("b")) == 1

    def test_dependency_chain_in_one_sweep(self):
        scheduler, _, _ = _build(
            [make_task("A"), make_task("B", dependencies=["A"])],
            {"A": _noop, "B": _noop},
        )
        outcomes = asyncio.run(scheduler.run_all_tasks())
        assert all(o.success for o in outcomes)

    def test_concurrent_sweep_rejected(self):
        scheduler, _, _ = _build([make_task("a")], {})

        async def scenario():
            started = asyncio.Event()
            release = asyncio.Event()

            async def slow(ctx):
                started.set()
                await release.wait()

            scheduler._executor._operations.register("a", slow)
            sweep = asyncio.create_task(scheduler.run_all_tasks())
            await started.wait()
            assert scheduler.is_sweep_running
            with pytest.raises(MaintenanceError) as exc_info:
                await scheduler.run_all_tasks()
            release.set()
            outcomes = await sweep
            return exc_info.value, outcomes

        error, outcomes = asyncio.run(scenario())
        assert error.code == ErrorCode.ALREADY_RUNNING
        assert error.message == "Maintenance is already running"
        assert len(outcomes) == 1
        assert scheduler.is_sweep_running is False


# ===================================================================
# Status
# ===================================================================

class TestJobStatus:

    def test_job_status(self):
        scheduler, _, _ = _build([make_task("a"), make_task("b", enabled=False)], {"a": _noop})
        scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 30, tzinfo=UTC))
        asyncio.run(scheduler._executor.run_task("a"))
        status = scheduler.job_status()
        assert status["a"]["running"] is False
        assert status["a"]["status"] == "completed"
        assert status["a"]["last_run"] is not None
        assert status["a"]["next_run"].startswith("2026-01-01T11:00")
        assert status["b"]["status"] == "disabled"
        assert status["b"]["next_run"] is None


# ===================================================================
# Single-task rebinding
# ===================================================================

class TestReschedule:

    def test_reschedule_leaves_other_triggers(self):
        scheduler, catalog, _ = _build(
            [make_task("a"), make_task("b", enabled=False)], {},
        )
        scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 30, tzinfo=UTC))
        catalog.toggle_task("b", True)
        scheduler.reschedule("b")
        assert scheduler.next_run("a") == datetime(2026, 1, 1, 11, 0, tzinfo=UTC)
        assert scheduler.next_run("b") is not None

    def test_restart_job_rebinds_from_now(self):
        scheduler, catalog, _ = _build([make_task("a")], {})
        scheduler.refresh_triggers(datetime(2026, 1, 1, 10, 30, tzinfo=UTC))
        assert scheduler.restart_job("a") is True
        assert scheduler.next_run("a") > datetime(2026, 1, 1, 11, 0, tzinfo=UTC)
        assert catalog.get_state("a").next_run == scheduler.next_run("a")

    def test_restart_job_unknown(self):
        scheduler, _, _ = _build([make_task("a")], {})
        assert scheduler.restart_job("ghost") is False
