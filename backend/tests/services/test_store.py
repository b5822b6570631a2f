"""Tests for the local store's writes, range queries and views."""

from datetime import timedelta

import pytest

from conftest import T0
from perfwatch.core.exceptions import NotFoundError, StoreWriteError, ValidationError
from perfwatch.models import CollectionRun, MetricDelta, RawSampleRow, RunStatus, ScheduleStatus
from perfwatch.services.schedule import ScheduleManager
from perfwatch.services.servers import ServerService


def delta(minute: int, counter: str = "CXPACKET.wait_time_ms", value: float = 1.0, server_id: int = 1) -> MetricDelta:
    return MetricDelta(
        server_id=server_id,
        category="wait_stats",
        counter_name=counter,
        interval_start=T0 + timedelta(minutes=minute - 1),
        interval_end=T0 + timedelta(minutes=minute),
        delta_value=value,
        is_valid=True,
    )


def run(minute: int, status: RunStatus = RunStatus.SUCCESS, collector: str = "wait_stats", server_id: int = 1):
    started = T0 + timedelta(minutes=minute)
    return CollectionRun(
        server_id=server_id,
        collector=collector,
        started_at=started,
        ended_at=started + timedelta(seconds=2),
        status=status.value,
        duration_ms=2000,
    )


class TestRangeQueries:
    @pytest.mark.asyncio
    async def test_rows_come_back_in_time_order(self, store):
        """Insertion order does not matter; reads are ordered by collection time."""
        await store.append([delta(3), delta(1), delta(2)])

        rows = await store.metric_series(1, "wait_stats")

        assert [r.interval_end for r in rows] == [T0 + timedelta(minutes=m) for m in (1, 2, 3)]

    @pytest.mark.asyncio
    async def test_start_inclusive_end_exclusive(self, store):
        await store.append([delta(m) for m in range(1, 6)])

        rows = await store.metric_series(1, "wait_stats", start=T0 + timedelta(minutes=2), end=T0 + timedelta(minutes=4))

        assert [r.interval_end for r in rows] == [T0 + timedelta(minutes=2), T0 + timedelta(minutes=3)]

    @pytest.mark.asyncio
    async def test_counter_and_server_filters(self, store):
        await store.append(
            [
                delta(1, "CXPACKET.wait_time_ms"),
                delta(1, "WRITELOG.wait_time_ms"),
                delta(1, "CXPACKET.wait_time_ms", server_id=2),
            ]
        )

        rows = await store.metric_series(1, "wait_stats", "CXPACKET.wait_time_ms")

        assert [(r.server_id, r.counter_name) for r in rows] == [(1, "CXPACKET.wait_time_ms")]

    @pytest.mark.asyncio
    async def test_valid_only_drops_reset_rows(self, store):
        reset = delta(2, value=0)
        reset.is_valid = False
        await store.append([delta(1), reset, delta(3)])

        rows = await store.metric_series(1, "wait_stats", valid_only=True)

        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_unknown_table_and_column(self, store):
        with pytest.raises(NotFoundError):
            await store.query("perf_counters")
        with pytest.raises(ValidationError, match="no column"):
            await store.query("metric_deltas", {"wait_type": "CXPACKET"})

    @pytest.mark.asyncio
    async def test_limit(self, store):
        await store.append([run(m) for m in range(10)])
        assert len(await store.query("collection_runs", limit=4)) == 4

    @pytest.mark.asyncio
    async def test_latest_samples_per_server_and_category(self, store):
        await store.append(
            [
                RawSampleRow(server_id=1, category="wait_stats", collection_time=T0, counters={"x": 1}),
                RawSampleRow(server_id=1, category="wait_stats", collection_time=T0 + timedelta(minutes=1), counters={"x": 2}),
                RawSampleRow(server_id=2, category="wait_stats", collection_time=T0, counters={"x": 9}),
            ]
        )

        latest = {(r.server_id, r.category): r.counters for r in await store.latest_samples()}

        assert latest == {(1, "wait_stats"): {"x": 2}, (2, "wait_stats"): {"x": 9}}


class TestWrites:
    @pytest.mark.asyncio
    async def test_collection_write_is_all_or_nothing(self, store):
        """A failing row rolls back the sample and run written with it."""
        bad = delta(1)
        bad.counter_name = None  # violates NOT NULL

        with pytest.raises(StoreWriteError):
            await store.write_collection(
                run(1),
                RawSampleRow(server_id=1, category="wait_stats", collection_time=T0, counters={"x": 1}),
                [delta(1), bad],
            )

        assert await store.query("collection_runs") == []
        assert await store.query("raw_samples") == []
        assert await store.query("metric_deltas") == []

    @pytest.mark.asyncio
    async def test_run_log_failures_are_counted_not_raised(self, store):
        broken = run(1)
        broken.collector = None

        assert await store.write_run(broken) is False
        assert store.run_log_failures == 1
        assert await store.write_run(run(2)) is True

    @pytest.mark.asyncio
    async def test_settings_round_trip(self, store):
        assert await store.get_setting("monitor_config") is None
        await store.set_setting("monitor_config", {"a": 1})
        await store.set_setting("monitor_config", {"a": 2})
        assert await store.get_setting("monitor_config") == {"a": 2}


class TestHealthView:
    @pytest.mark.asyncio
    async def test_latest_status_and_24h_stats(self, store, config_service):
        server = await ServerService(store).create("sql01", "ref")
        schedule = ScheduleManager(store, config_service)
        for minute, status in ((0, ScheduleStatus.SUCCESS), (1, ScheduleStatus.ERROR)):
            started = T0 + timedelta(minutes=minute)
            await schedule.mark_running(server.id, "wait_stats", started)
            await schedule.mark_completed(server.id, "wait_stats", status, started, started, error="boom" if minute else None)
        await store.append(
            [run(0, server_id=server.id), run(1, RunStatus.ERROR, server_id=server.id), run(-60 * 25, server_id=server.id)]
        )

        view = await store.collector_health(T0 + timedelta(minutes=2), {"wait_stats": 1}, 3.0)

        assert len(view) == 1
        row = view[0]
        assert row["server_name"] == "sql01"
        assert row["status"] == "error"
        assert row["last_error"] == "boom"
        assert row["runs_24h"] == 2
        assert row["failures_24h"] == 1
        assert row["hung"] is False

    @pytest.mark.asyncio
    async def test_disabled_pair_is_reported(self, store, config_service):
        server = await ServerService(store).create("sql01", "ref")
        await ScheduleManager(store, config_service).disable(server.id, "deadlocks", "permission denied")

        view = await store.collector_health(T0, {"deadlocks": 1}, 3.0)

        assert view[0]["status"] == "disabled"
        assert view[0]["disabled_reason"] == "permission denied"


class TestPurge:
    @pytest.mark.asyncio
    async def test_purge_removes_only_that_server(self, store):
        servers = ServerService(store)
        keep = await servers.create("keep", "ref:keep")
        gone = await servers.create("gone", "ref:gone")
        await store.append([delta(1, server_id=keep.id), delta(1, server_id=gone.id), run(1, server_id=gone.id)])

        await servers.delete(gone.id, purge=True)

        assert [r.server_id for r in await store.query("metric_deltas")] == [keep.id]
        assert await store.query("collection_runs") == []
        with pytest.raises(NotFoundError):
            await servers.get(gone.id, include_deleted=True)
