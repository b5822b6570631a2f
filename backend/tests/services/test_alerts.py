"""Tests for alert rules, dedup windows and notification suppression."""

from datetime import timedelta

import pytest

from conftest import T0, RecordingNotifier
from perfwatch.collectors.base import RawSample
from perfwatch.core.exceptions import StoreWriteError
from perfwatch.models import AlertKind, MetricDelta, NotificationStatus
from perfwatch.services.alerts import AlertEvaluator, AlertService
from perfwatch.services.monitor_config import default_monitor_config
from perfwatch.services.notification import NotificationDispatcher

RULES = list(default_monitor_config().alert_rules.values())


def sample(category: str, at=T0, server_id: int = 1, **counters) -> RawSample:
    return RawSample(server_id=server_id, category=category, collected_at=at, counters=counters)


def delta(category: str, counter: str, value: float, at=T0, valid: bool = True) -> MetricDelta:
    return MetricDelta(
        server_id=1,
        category=category,
        counter_name=counter,
        interval_start=at - timedelta(minutes=1),
        interval_end=at,
        delta_value=value,
        is_valid=valid,
    )


class TestDedupWindows:
    def test_sustained_condition_fires_once(self):
        """CPU above threshold on three consecutive cycles gives a single event."""
        evaluator = AlertEvaluator()

        fired = []
        for minute in range(3):
            at = T0 + timedelta(minutes=minute)
            fired += evaluator.evaluate(1, RULES, [], [sample("cpu_utilization", at, cpu_percent=95)], at)

        assert len(fired) == 1
        assert fired[0].dedup_key == "1:CPU:"
        assert fired[0].details["cpu_percent"] == 95
        assert evaluator.is_active("1:CPU:")

    def test_condition_that_clears_and_returns_fires_again(self):
        evaluator = AlertEvaluator()

        first = evaluator.evaluate(1, RULES, [], [sample("cpu_utilization", cpu_percent=95)], T0)
        cleared = evaluator.evaluate(1, RULES, [], [sample("cpu_utilization", cpu_percent=20)], T0 + timedelta(minutes=1))
        again = evaluator.evaluate(1, RULES, [], [sample("cpu_utilization", cpu_percent=90)], T0 + timedelta(minutes=2))

        assert len(first) == 1
        assert cleared == []
        assert len(again) == 1

    def test_kinds_without_fresh_data_keep_their_windows(self):
        """A cycle that did not collect CPU must not close the CPU window."""
        evaluator = AlertEvaluator()
        evaluator.evaluate(1, RULES, [], [sample("cpu_utilization", cpu_percent=95)], T0)

        evaluator.evaluate(1, RULES, [], [sample("blocking", blocked_sessions=0)], T0 + timedelta(minutes=1))

        assert evaluator.is_active("1:CPU:")

    def test_windows_are_per_server(self):
        evaluator = AlertEvaluator()

        a = evaluator.evaluate(1, RULES, [], [sample("cpu_utilization", cpu_percent=95)], T0)
        b = evaluator.evaluate(2, RULES, [], [sample("cpu_utilization", server_id=2, cpu_percent=95)], T0)

        assert [e.dedup_key for e in a + b] == ["1:CPU:", "2:CPU:"]

    def test_disabled_rule_is_skipped(self):
        rules = [r.model_copy(update={"enabled": False}) if r.kind == AlertKind.CPU else r for r in RULES]

        events = AlertEvaluator().evaluate(1, rules, [], [sample("cpu_utilization", cpu_percent=99)], T0)

        assert events == []

    def test_resolved_event_when_enabled(self):
        evaluator = AlertEvaluator()
        evaluator.evaluate(1, RULES, [], [sample("tempdb_stats", used_percent=95)], T0)

        events = evaluator.evaluate(
            1, RULES, [], [sample("tempdb_stats", used_percent=10)], T0 + timedelta(minutes=1), emit_resolved=True
        )

        assert len(events) == 1
        assert events[0].resolved is True
        assert events[0].summary.startswith("RESOLVED [TempDbSpace]")

    def test_restored_window_suppresses_duplicate(self):
        """After a restart the open windows are loaded back and do not re-fire."""
        first = AlertEvaluator()
        first.evaluate(1, RULES, [], [sample("cpu_utilization", cpu_percent=95)], T0)
        persisted = first.pop_changes()

        class Row:
            def __init__(self, window):
                self.dedup_key = window.dedup_key
                self.server_id = window.server_id
                self.kind = window.kind.value
                self.active = window.active
                self.first_seen_at = window.first_seen_at
                self.last_seen_at = window.last_seen_at
                self.details = window.details
                self.last_event_id = 7

        restarted = AlertEvaluator()
        assert restarted.load_state(Row(w) for w in persisted) == 1

        events = restarted.evaluate(1, RULES, [], [sample("cpu_utilization", cpu_percent=95)], T0 + timedelta(minutes=1))

        assert events == []

    def test_close_server_drops_every_window(self):
        evaluator = AlertEvaluator()
        evaluator.evaluate(
            1,
            RULES,
            [],
            [sample("cpu_utilization", cpu_percent=95), sample("tempdb_stats", used_percent=95)],
            T0,
        )

        assert evaluator.close_server(1, T0) == 2
        assert evaluator.active_keys() == []


class TestRulePredicates:
    def test_blocking(self):
        events = AlertEvaluator().evaluate(
            1, RULES, [], [sample("blocking", blocked_sessions=2, longest_wait_ms=45000)], T0
        )

        assert len(events) == 1
        assert events[0].kind == AlertKind.BLOCKING.value
        assert events[0].details["longest_wait_ms"] == 45000

    def test_no_blocking(self):
        assert AlertEvaluator().evaluate(1, RULES, [], [sample("blocking", blocked_sessions=0)], T0) == []

    def test_deadlocks_bucket_by_minute(self):
        """Each minute with new deadlocks is its own incident."""
        evaluator = AlertEvaluator()

        first = evaluator.evaluate(1, RULES, [delta("deadlocks", "deadlock_count", 2)], [], T0)
        second = evaluator.evaluate(
            1, RULES, [delta("deadlocks", "deadlock_count", 1, at=T0 + timedelta(minutes=1))], [], T0 + timedelta(minutes=1)
        )
        quiet = evaluator.evaluate(
            1, RULES, [delta("deadlocks", "deadlock_count", 0, at=T0 + timedelta(minutes=2))], [], T0 + timedelta(minutes=2)
        )

        assert [e.dedup_key for e in first + second] == ["1:Deadlock:202403011200", "1:Deadlock:202403011201"]
        assert quiet == []
        assert evaluator.active_windows(AlertKind.DEADLOCK) == []

    def test_reset_deltas_never_alert(self):
        events = AlertEvaluator().evaluate(1, RULES, [delta("deadlocks", "deadlock_count", 50, valid=False)], [], T0)
        assert events == []

    def test_poison_wait_average(self):
        deltas = [
            delta("wait_stats", "THREADPOOL.wait_time_ms", 6000),
            delta("wait_stats", "THREADPOOL.waiting_tasks_count", 10),
            delta("wait_stats", "RESOURCE_SEMAPHORE.wait_time_ms", 100),
            delta("wait_stats", "RESOURCE_SEMAPHORE.waiting_tasks_count", 10),
            delta("wait_stats", "CXPACKET.wait_time_ms", 900000),
            delta("wait_stats", "CXPACKET.waiting_tasks_count", 1),
        ]

        events = AlertEvaluator().evaluate(1, RULES, deltas, [], T0)

        assert [e.dedup_key for e in events] == ["1:PoisonWait:THREADPOOL"]
        assert events[0].details["avg_ms_per_wait"] == 600.0

    def test_long_running_query_per_session(self):
        events = AlertEvaluator().evaluate(
            1,
            RULES,
            [],
            [sample("query_snapshots", **{"session:55.elapsed_seconds": 2400, "session:56.elapsed_seconds": 12})],
            T0,
        )

        assert [e.dedup_key for e in events] == ["1:LongRunningQuery:55"]

    def test_tempdb_space(self):
        events = AlertEvaluator().evaluate(1, RULES, [], [sample("tempdb_stats", used_percent=85)], T0)
        assert [e.kind for e in events] == [AlertKind.TEMPDB_SPACE.value]

    def test_long_running_job_against_its_average(self):
        counters = {
            "etl_load.current_seconds": 400,
            "etl_load.average_seconds": 100,
            "nightly_backup.current_seconds": 150,
            "nightly_backup.average_seconds": 100,
            "index_maintenance.current_seconds": 999,
            "index_maintenance.average_seconds": 0,
        }

        events = AlertEvaluator().evaluate(1, RULES, [], [sample("running_jobs", **counters)], T0)

        assert [e.dedup_key for e in events] == ["1:LongRunningJob:etl_load"]

    def test_connection_change(self):
        evaluator = AlertEvaluator()

        down = evaluator.evaluate(1, RULES, [], [sample("connectivity", online=0)], T0)
        up = evaluator.evaluate(1, RULES, [], [sample("connectivity", online=1)], T0 + timedelta(minutes=1))

        assert [e.dedup_key for e in down] == ["1:ConnectionChange:offline"]
        assert up == []
        assert evaluator.active_keys() == []


@pytest.fixture
def alert_service(store, config_service, notifier):
    dispatcher = NotificationDispatcher(notifier, store, retry_delay_seconds=0)
    return AlertService(store, config_service, dispatcher)


class TestAlertService:
    @pytest.mark.asyncio
    async def test_event_and_window_are_persisted_and_notified(self, alert_service, store, notifier):
        events = await alert_service.evaluate_cycle(1, [], [sample("cpu_utilization", cpu_percent=95)], T0)
        await alert_service.dispatcher.drain()

        rows = await store.query("alert_events")
        running = await store.running_alerts()
        assert len(events) == 1
        assert len(rows) == 1
        assert rows[0].notification_status == NotificationStatus.SENT.value
        assert [r["dedup_key"] for r in running] == ["1:CPU:"]
        assert running[0]["event_id"] == rows[0].id
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_same_kind(self, alert_service, store, notifier):
        """A second incident of the same kind inside the cooldown is recorded but not sent."""
        await alert_service.evaluate_cycle(1, [], [sample("query_snapshots", **{"session:55.elapsed_seconds": 2400})], T0)
        await alert_service.evaluate_cycle(
            1,
            [],
            [
                sample(
                    "query_snapshots",
                    **{"session:55.elapsed_seconds": 2460, "session:61.elapsed_seconds": 1900},
                )
            ],
            T0 + timedelta(minutes=1),
        )
        await alert_service.dispatcher.drain()

        statuses = [r.notification_status for r in await store.query("alert_events")]
        assert statuses == [NotificationStatus.SENT.value, NotificationStatus.SUPPRESSED.value]
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_silenced_server_is_not_notified(self, alert_service, config_service, store, notifier):
        await config_service.set_server_silenced(1, True)

        await alert_service.evaluate_cycle(1, [], [sample("tempdb_stats", used_percent=99)], T0)
        await alert_service.dispatcher.drain()

        rows = await store.query("alert_events")
        assert rows[0].notification_status == NotificationStatus.SUPPRESSED.value
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_windows_survive_restart(self, alert_service, store, config_service):
        await alert_service.evaluate_cycle(1, [], [sample("cpu_utilization", cpu_percent=95)], T0)

        restarted = AlertService(
            store, config_service, NotificationDispatcher(RecordingNotifier(), store, retry_delay_seconds=0)
        )
        assert await restarted.load() == 1
        events = await restarted.evaluate_cycle(
            1, [], [sample("cpu_utilization", cpu_percent=97)], T0 + timedelta(minutes=1)
        )

        assert events == []
        assert len(await store.query("alert_events")) == 1

    @pytest.mark.asyncio
    async def test_cleared_window_is_persisted_inactive(self, alert_service, store):
        await alert_service.evaluate_cycle(1, [], [sample("cpu_utilization", cpu_percent=95)], T0)
        await alert_service.evaluate_cycle(1, [], [sample("cpu_utilization", cpu_percent=5)], T0 + timedelta(minutes=1))

        assert await store.running_alerts() == []
        assert await store.active_dedup_states() == []

    @pytest.mark.asyncio
    async def test_system_alert_dedups(self, alert_service, store):
        first = await alert_service.raise_system(1, AlertKind.COLLECTOR_FAILURE, "wait_stats", {"message": "x"}, T0)
        second = await alert_service.raise_system(1, AlertKind.COLLECTOR_FAILURE, "wait_stats", {"message": "x"}, T0)
        await alert_service.clear_system(1, AlertKind.COLLECTOR_FAILURE, "wait_stats", T0)
        await alert_service.dispatcher.drain()

        assert first is not None
        assert second is None
        assert await store.running_alerts() == []

    @pytest.mark.asyncio
    async def test_failed_write_is_retried_with_next_commit(self, alert_service, store, notifier, monkeypatch):
        """An event and window lost to a failed write are written by the next cycle."""
        # Arrange
        real_write = store.write_alerts
        attempts = []

        async def flaky_write(events, windows):
            attempts.append(len(events))
            if len(attempts) == 1:
                raise StoreWriteError("disk I/O error")
            await real_write(events, windows)

        monkeypatch.setattr(store, "write_alerts", flaky_write)

        # Act
        fired = await alert_service.evaluate_cycle(1, [], [sample("cpu_utilization", cpu_percent=95)], T0)
        await alert_service.dispatcher.drain()
        rows_after_failure = await store.query("alert_events")

        await alert_service.evaluate_cycle(
            1, [], [sample("cpu_utilization", cpu_percent=96)], T0 + timedelta(minutes=1)
        )
        rows = await store.query("alert_events")
        running = await store.running_alerts()

        # Assert
        assert rows_after_failure == []
        assert len(notifier.sent) == 1
        assert attempts == [1, 1]
        assert [r.dedup_key for r in rows] == ["1:CPU:"]
        assert rows[0].notification_status == NotificationStatus.SENT.value
        assert fired[0].id == rows[0].id
        assert [r["dedup_key"] for r in running] == ["1:CPU:"]
        assert running[0]["event_id"] == rows[0].id
