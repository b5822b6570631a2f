"""End-to-end tests for the wired runtime."""

from datetime import timedelta

import pytest

from conftest import RecordingNotifier, ScriptedAdapter, only_collectors
from perfwatch.runtime import build_runtime
from perfwatch.services.store import LocalStore


async def run_cycle(runtime):
    for task in await runtime.orchestrator.tick():
        await task


class TestRestart:
    @pytest.mark.asyncio
    async def test_restart_keeps_the_delta_baseline(self, runtime, adapter, clock, database_url, tmp_path):
        """The first cycle after a restart produces a delta from the persisted sample."""
        await only_collectors(runtime.config, "wait_stats")
        server = await runtime.servers.create("sql01", "ref")
        adapter.script("wait_stats", {"CXPACKET.wait_time_ms": 1000.0})
        await run_cycle(runtime)

        restarted_adapter = ScriptedAdapter(clock)
        restarted_adapter.script("wait_stats", {"CXPACKET.wait_time_ms": 1600.0})
        restarted = build_runtime(
            store=LocalStore(database_url, archive_dir=tmp_path / "archive"),
            adapter=restarted_adapter,
            notifier=RecordingNotifier(),
            clock=clock,
        )
        await restarted.start(schedule_jobs=False)
        try:
            assert restarted.config.current.collector("blocking").enabled is False
            clock.advance(minutes=1)
            await run_cycle(restarted)
            deltas = await restarted.store.metric_series(server.id, "wait_stats", valid_only=True)
        finally:
            await restarted.stop()

        assert [d.delta_value for d in deltas] == [600.0]
        assert deltas[0].interval_end - deltas[0].interval_start == timedelta(minutes=1)


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_archive_all_covers_every_table(self, runtime):
        results = await runtime.archive_all()

        assert sorted(r.table for r in results) == [
            "alert_events",
            "collection_runs",
            "metric_deltas",
            "raw_samples",
        ]
        assert all(r.rows_archived == 0 for r in results)

    @pytest.mark.asyncio
    async def test_scheduled_archive_logs_instead_of_raising(self, runtime, monkeypatch, caplog):
        async def broken(policy, now=None):
            raise OSError("archive volume missing")

        monkeypatch.setattr(runtime.store, "archive_and_purge", broken)

        await runtime.run_archive()

        assert "archive volume missing" in caplog.text


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_finishes_scheduler_shutdown_before_returning(self, database_url, tmp_path, clock):
        """Maintenance jobs are gone and the scheduler is down once stop() returns."""
        runtime = build_runtime(
            store=LocalStore(database_url, archive_dir=tmp_path / "archive"),
            adapter=ScriptedAdapter(clock),
            notifier=RecordingNotifier(),
            clock=clock,
        )
        await runtime.start()

        await runtime.stop()

        assert runtime.scheduler.running is False
        assert runtime.scheduler.get_jobs() == []
