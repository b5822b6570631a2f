"""Tests for archive-and-purge to Parquet."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import T0
from perfwatch.models import MetricDelta, RawSampleRow
from perfwatch.services import archive as archive_module
from perfwatch.services.monitor_config import RetentionPolicy


def deltas(count: int, server_id: int = 1, start=T0) -> list[MetricDelta]:
    return [
        MetricDelta(
            server_id=server_id,
            category="wait_stats",
            counter_name="CXPACKET.wait_time_ms",
            interval_start=start + timedelta(minutes=i - 1),
            interval_end=start + timedelta(minutes=i),
            delta_value=float(i),
            is_valid=True,
        )
        for i in range(count)
    ]


class TestArchiveAndPurge:
    @pytest.mark.asyncio
    async def test_rows_end_up_in_exactly_one_place(self, store):
        """Old rows move to Parquet; recent rows stay live; nothing is lost or duplicated."""
        old = deltas(250, server_id=1) + deltas(30, server_id=2)
        recent = deltas(5, start=T0 + timedelta(days=10))
        await store.append(old + recent)
        now = T0 + timedelta(days=10)

        result = await store.archive_and_purge(RetentionPolicy(table="metric_deltas", max_age_days=7), now)

        live = await store.query("metric_deltas")
        archived = await store.archive.read_archive("metric_deltas")
        assert result.rows_archived == 280
        assert len(live) == 5
        assert len(archived) == 280
        assert set(archived["id"]).isdisjoint({r.id for r in live})
        assert archived["id"].is_unique

    @pytest.mark.asyncio
    async def test_files_are_per_server_and_batched(self, store):
        """Batch size 100 in the fixture: 250 rows for one server is three files."""
        await store.append(deltas(250, server_id=1) + deltas(30, server_id=2, start=T0 + timedelta(days=1)))

        result = await store.archive_and_purge(RetentionPolicy(table="metric_deltas", max_age_days=1), T0 + timedelta(days=5))

        assert len(store.archive.archive_files("metric_deltas", 1)) == 3
        assert len(store.archive.archive_files("metric_deltas", 2)) == 1
        assert all(path.suffix == ".parquet" for path in result.files)
        assert len(await store.archive.read_archive("metric_deltas", 2)) == 30

    @pytest.mark.asyncio
    async def test_json_columns_survive_archival(self, store):
        await store.append(
            [RawSampleRow(server_id=1, category="blocking", collection_time=T0, counters={"blocked_sessions": 2.0})]
        )

        await store.archive_and_purge(RetentionPolicy(table="raw_samples", max_age_days=1), T0 + timedelta(days=2))
        archived = await store.archive.read_archive("raw_samples", 1)

        assert len(archived) == 1
        assert '"blocked_sessions"' in archived.loc[0, "counters"]

    @pytest.mark.asyncio
    async def test_nothing_old_is_a_no_op(self, store):
        await store.append(deltas(3))

        result = await store.archive_and_purge(RetentionPolicy(table="metric_deltas", max_age_days=7), T0)

        assert result.rows_archived == 0
        assert result.files == []
        assert len(await store.query("metric_deltas")) == 3

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_rows_and_removes_files(self, store, monkeypatch):
        """If the purge cannot run, the exported files go and the live rows stay."""
        await store.append(deltas(10))

        def broken_delete(model):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(archive_module, "delete", broken_delete)

        with pytest.raises(SQLAlchemyError):
            await store.archive_and_purge(RetentionPolicy(table="metric_deltas", max_age_days=1), T0 + timedelta(days=3))

        assert len(await store.query("metric_deltas")) == 10
        assert store.archive.archive_files("metric_deltas") == []

    @pytest.mark.asyncio
    async def test_concurrent_pass_is_skipped(self, store):
        async with store.archive._lock:
            result = await store.archive_and_purge(RetentionPolicy(table="metric_deltas", max_age_days=1), T0)

        assert result.skipped is True
        assert result.rows_archived == 0

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_files(self, store):
        await store.append(deltas(5))
        await store.archive_and_purge(RetentionPolicy(table="metric_deltas", max_age_days=1), T0 + timedelta(days=2))

        kept = await store.archive.cleanup_old_archives(T0 + timedelta(days=30), retention_days=90)
        removed = await store.archive.cleanup_old_archives(T0 + timedelta(days=91), retention_days=90)

        assert kept == []
        assert len(removed) == 1
        assert store.archive.archive_files("metric_deltas") == []
