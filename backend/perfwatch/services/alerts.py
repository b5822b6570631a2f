"""
Alert evaluation with deduplication.

Each rule kind has a predicate over the cycle's fresh samples or deltas that
yields zero or more met conditions, each with a bucket (blocked session,
wait type, job, calendar minute...). The dedup key is server:kind:bucket.

A key whose condition goes from not-met to met fires exactly one AlertEvent
and opens a window. While the condition stays met, only the window's
last_seen is updated. When a later evaluation of the same kind no longer
sees it, the window closes silently (or with a resolved event when enabled).
Kinds whose source category was not collected this cycle are left alone, so
a 5-minute collector does not close its windows on the 1-minute cycles.
"""

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from perfwatch.collectors.base import RawSample
from perfwatch.core.exceptions import StoreWriteError
from perfwatch.models import AlertDedupState, AlertEvent, AlertKind, MetricDelta, NotificationStatus, make_dedup_key
from perfwatch.services.events import AlertRaised, EventBus
from perfwatch.services.monitor_config import AlertRule, ConfigService
from perfwatch.services.notification import NotificationDispatcher
from perfwatch.services.store import LocalStore

logger = logging.getLogger(__name__)

CONNECTIVITY_CATEGORY = "connectivity"

POISON_WAIT_TYPES = ("THREADPOOL", "RESOURCE_SEMAPHORE", "RESOURCE_SEMAPHORE_QUERY_COMPILE")

DEFAULT_JOB_MULTIPLIER = 3.0


@dataclass(frozen=True)
class Condition:
    bucket: str
    details: dict


@dataclass
class DedupWindow:
    dedup_key: str
    server_id: int
    kind: AlertKind
    active: bool
    first_seen_at: datetime
    last_seen_at: datetime
    cleared_at: datetime | None = None
    details: dict = field(default_factory=dict)
    last_event_id: int | None = None
    # Event that opened this window during the current cycle, until persisted
    opening_event: AlertEvent | None = None


# --------------------------------------------------------------------------
# Predicates
# --------------------------------------------------------------------------

def _cpu(rule: AlertRule, sample: RawSample) -> list[Condition]:
    value = sample.counters.get("cpu_percent")
    if value is None or value < rule.threshold:
        return []
    return [
        Condition(
            "",
            {"message": f"CPU at {value:.0f}% (threshold {rule.threshold:.0f}%)", "cpu_percent": value},
        )
    ]


def _blocking(rule: AlertRule, sample: RawSample) -> list[Condition]:
    blocked = sample.counters.get("blocked_sessions", 0)
    if blocked <= 0 or blocked < rule.threshold:
        return []
    details = {"message": f"{blocked:.0f} blocked session(s)", "blocked_sessions": blocked}
    if "longest_wait_ms" in sample.counters:
        details["longest_wait_ms"] = sample.counters["longest_wait_ms"]
    return [Condition("", details)]


def _deadlock(rule: AlertRule, deltas: list[MetricDelta]) -> list[Condition]:
    rows = [d for d in deltas if d.counter_name == "deadlock_count" and d.is_valid]
    total = sum(d.delta_value for d in rows)
    if not rows or total <= 0 or total < rule.threshold:
        return []
    interval_end = max(d.interval_end for d in rows)
    return [
        Condition(
            interval_end.strftime("%Y%m%d%H%M"),
            {"message": f"{total:.0f} new deadlock(s)", "deadlocks": total},
        )
    ]


def _poison_wait(rule: AlertRule, deltas: list[MetricDelta]) -> list[Condition]:
    totals: dict[str, dict[str, float]] = defaultdict(dict)
    for d in deltas:
        if not d.is_valid:
            continue
        wait_type, _, metric = d.counter_name.rpartition(".")
        if wait_type in POISON_WAIT_TYPES and metric in ("wait_time_ms", "waiting_tasks_count"):
            totals[wait_type][metric] = d.delta_value

    conditions = []
    for wait_type in POISON_WAIT_TYPES:
        tasks = totals.get(wait_type, {}).get("waiting_tasks_count", 0)
        wait_ms = totals.get(wait_type, {}).get("wait_time_ms", 0)
        if tasks <= 0:
            continue
        avg_ms = wait_ms / tasks
        if avg_ms >= rule.threshold:
            conditions.append(
                Condition(
                    wait_type,
                    {
                        "message": f"{wait_type} averaging {avg_ms:.0f} ms per wait",
                        "wait_type": wait_type,
                        "avg_ms_per_wait": round(avg_ms, 1),
                        "waiting_tasks": tasks,
                    },
                )
            )
    return conditions


def _long_running_query(rule: AlertRule, sample: RawSample) -> list[Condition]:
    limit_seconds = rule.threshold * 60
    conditions = []
    for name, elapsed in sample.counters.items():
        if not (name.startswith("session:") and name.endswith(".elapsed_seconds")):
            continue
        session_id = name[len("session:"):-len(".elapsed_seconds")]
        if elapsed >= limit_seconds:
            conditions.append(
                Condition(
                    session_id,
                    {
                        "message": f"Session {session_id} running for {elapsed / 60:.0f} min",
                        "session_id": session_id,
                        "elapsed_seconds": elapsed,
                    },
                )
            )
    return conditions


def _tempdb_space(rule: AlertRule, sample: RawSample) -> list[Condition]:
    used = sample.counters.get("used_percent")
    if used is None or used < rule.threshold:
        return []
    return [Condition("", {"message": f"TempDB {used:.0f}% used", "used_percent": used})]


def _long_running_job(rule: AlertRule, sample: RawSample) -> list[Condition]:
    multiplier = rule.multiplier or DEFAULT_JOB_MULTIPLIER
    conditions = []
    for name, current in sample.counters.items():
        job, _, metric = name.rpartition(".")
        if metric != "current_seconds":
            continue
        average = sample.counters.get(f"{job}.average_seconds", 0)
        if average > 0 and current >= multiplier * average:
            conditions.append(
                Condition(
                    job,
                    {
                        "message": f"Job {job} running {current / average:.1f}x its average",
                        "job": job,
                        "current_seconds": current,
                        "average_seconds": average,
                    },
                )
            )
    return conditions


def _connection_change(rule: AlertRule, sample: RawSample) -> list[Condition]:
    if sample.counters.get("online", 1) >= 1:
        return []
    return [Condition("offline", {"message": "Server is unreachable"})]


SAMPLE_PREDICATES: dict[AlertKind, tuple[str, Callable[[AlertRule, RawSample], list[Condition]]]] = {
    AlertKind.CPU: ("cpu_utilization", _cpu),
    AlertKind.BLOCKING: ("blocking", _blocking),
    AlertKind.LONG_RUNNING_QUERY: ("query_snapshots", _long_running_query),
    AlertKind.TEMPDB_SPACE: ("tempdb_stats", _tempdb_space),
    AlertKind.LONG_RUNNING_JOB: ("running_jobs", _long_running_job),
    AlertKind.CONNECTION_CHANGE: (CONNECTIVITY_CATEGORY, _connection_change),
}

DELTA_PREDICATES: dict[AlertKind, tuple[str, Callable[[AlertRule, list[MetricDelta]], list[Condition]]]] = {
    AlertKind.DEADLOCK: ("deadlocks", _deadlock),
    AlertKind.POISON_WAIT: ("wait_stats", _poison_wait),
}


# --------------------------------------------------------------------------
# Evaluator
# --------------------------------------------------------------------------

class AlertEvaluator:
    """Rule predicates plus the in-memory dedup windows."""

    def __init__(self):
        self._windows: dict[str, DedupWindow] = {}
        self._changed: dict[str, DedupWindow] = {}

    def evaluate(
        self,
        server_id: int,
        rules: Iterable[AlertRule],
        latest_deltas: Iterable[MetricDelta],
        latest_samples: Iterable[RawSample],
        now: datetime | None = None,
        emit_resolved: bool = False,
    ) -> list[AlertEvent]:
        now = now or datetime.now(UTC)
        samples = {sample.category: sample for sample in latest_samples}
        deltas: dict[str, list[MetricDelta]] = defaultdict(list)
        for delta in latest_deltas:
            deltas[delta.category].append(delta)

        events = []
        for rule in rules:
            if not rule.enabled:
                continue
            kind = AlertKind(rule.kind)

            if kind in SAMPLE_PREDICATES:
                category, predicate = SAMPLE_PREDICATES[kind]
                if category not in samples:
                    continue
                conditions = predicate(rule, samples[category])
            elif kind in DELTA_PREDICATES:
                category, predicate = DELTA_PREDICATES[kind]
                if not deltas.get(category):
                    continue
                conditions = predicate(rule, deltas[category])
            else:
                continue

            met = set()
            for condition in conditions:
                key = make_dedup_key(server_id, kind, condition.bucket)
                met.add(key)
                event = self._observe(server_id, kind, key, condition.details, now)
                if event is not None:
                    events.append(event)
            events.extend(self._close_unmet(server_id, kind, met, now, emit_resolved))

        return events

    def raise_condition(
        self, server_id: int, kind: AlertKind, bucket: str, details: dict, now: datetime | None = None
    ) -> AlertEvent | None:
        """Report a condition outside rule evaluation (collector failures, store errors)."""
        return self._observe(server_id, kind, make_dedup_key(server_id, kind, bucket), details, now or datetime.now(UTC))

    def clear_condition(
        self,
        server_id: int,
        kind: AlertKind,
        bucket: str,
        now: datetime | None = None,
        emit_resolved: bool = False,
    ) -> AlertEvent | None:
        key = make_dedup_key(server_id, kind, bucket)
        window = self._windows.get(key)
        if window is None or not window.active:
            return None
        return self._close(window, now or datetime.now(UTC), emit_resolved)

    def close_server(self, server_id: int, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        windows = [w for w in self._windows.values() if w.server_id == server_id and w.active]
        for window in windows:
            self._close(window, now, emit_resolved=False)
        return len(windows)

    def is_active(self, dedup_key: str) -> bool:
        window = self._windows.get(dedup_key)
        return bool(window and window.active)

    def active_windows(self, kind: AlertKind | None = None) -> list[DedupWindow]:
        return [w for w in self._windows.values() if w.active and (kind is None or w.kind == kind)]

    def active_keys(self, server_id: int | None = None) -> list[str]:
        return sorted(
            key
            for key, window in self._windows.items()
            if window.active and (server_id is None or window.server_id == server_id)
        )

    def load_state(self, rows: Iterable[AlertDedupState]) -> int:
        count = 0
        for row in rows:
            if not row.active:
                continue
            self._windows[row.dedup_key] = DedupWindow(
                dedup_key=row.dedup_key,
                server_id=row.server_id,
                kind=AlertKind(row.kind),
                active=True,
                first_seen_at=row.first_seen_at,
                last_seen_at=row.last_seen_at,
                details=dict(row.details or {}),
                last_event_id=row.last_event_id,
            )
            count += 1
        return count

    def pop_changes(self) -> list[DedupWindow]:
        changes = list(self._changed.values())
        self._changed.clear()
        return changes

    def requeue(self, windows: list[DedupWindow]) -> None:
        """Mark windows whose persistence failed as changed again."""
        for window in windows:
            self._changed.setdefault(window.dedup_key, window)

    def _observe(self, server_id: int, kind: AlertKind, key: str, details: dict, now: datetime) -> AlertEvent | None:
        window = self._windows.get(key)
        if window is not None and window.active:
            window.last_seen_at = now
            window.details = details
            self._changed[key] = window
            return None

        event = AlertEvent(
            server_id=server_id,
            kind=kind.value,
            triggered_at=now,
            dedup_key=key,
            details=details,
            resolved=False,
            notification_status=NotificationStatus.PENDING.value,
        )
        window = DedupWindow(
            dedup_key=key,
            server_id=server_id,
            kind=kind,
            active=True,
            first_seen_at=now,
            last_seen_at=now,
            details=details,
            opening_event=event,
        )
        self._windows[key] = window
        self._changed[key] = window
        logger.info("Alert %s opened", key)
        return event

    def _close_unmet(
        self, server_id: int, kind: AlertKind, met: set[str], now: datetime, emit_resolved: bool
    ) -> list[AlertEvent]:
        events = []
        for window in list(self._windows.values()):
            if window.server_id != server_id or window.kind != kind or not window.active:
                continue
            if window.dedup_key in met:
                continue
            event = self._close(window, now, emit_resolved)
            if event is not None:
                events.append(event)
        return events

    def _close(self, window: DedupWindow, now: datetime, emit_resolved: bool) -> AlertEvent | None:
        window.active = False
        window.cleared_at = now
        self._changed[window.dedup_key] = window
        # Closed windows no longer need to be held in memory once persisted
        self._windows.pop(window.dedup_key, None)
        logger.info("Alert %s cleared", window.dedup_key)
        if not emit_resolved:
            return None
        return AlertEvent(
            server_id=window.server_id,
            kind=window.kind.value,
            triggered_at=now,
            dedup_key=window.dedup_key,
            details={**window.details, "message": f"{window.kind.value} condition cleared"},
            resolved=True,
            notification_status=NotificationStatus.PENDING.value,
        )


# --------------------------------------------------------------------------
# Service
# --------------------------------------------------------------------------

class AlertService:
    """
    Runs the evaluator for one server cycle, persists events and window
    changes in one write, and hands new events to the notifier.
    """

    def __init__(
        self,
        store: LocalStore,
        config_service: ConfigService,
        dispatcher: NotificationDispatcher,
        evaluator: AlertEvaluator | None = None,
        events: EventBus | None = None,
    ):
        self.store = store
        self.config_service = config_service
        self.dispatcher = dispatcher
        self.evaluator = evaluator or AlertEvaluator()
        self.events = events
        self._last_notified: dict[tuple[int, str], datetime] = {}
        # Events whose write failed; retried with the next commit
        self._unsaved: list[AlertEvent] = []

    async def load(self) -> int:
        count = self.evaluator.load_state(await self.store.active_dedup_states())
        if count:
            logger.info("Restored %d open alert window(s)", count)
        return count

    async def evaluate_cycle(
        self,
        server_id: int,
        deltas: Iterable[MetricDelta],
        samples: Iterable[RawSample],
        now: datetime | None = None,
    ) -> list[AlertEvent]:
        now = now or datetime.now(UTC)
        config = self.config_service.current
        events = self.evaluator.evaluate(
            server_id,
            config.alert_rules.values(),
            deltas,
            samples,
            now,
            emit_resolved=config.alerting.emit_resolved,
        )
        await self._commit(events, now)
        return events

    async def raise_system(
        self, server_id: int, kind: AlertKind, bucket: str, details: dict, now: datetime | None = None
    ) -> AlertEvent | None:
        now = now or datetime.now(UTC)
        event = self.evaluator.raise_condition(server_id, kind, bucket, details, now)
        await self._commit([event] if event else [], now)
        return event

    async def clear_system(self, server_id: int, kind: AlertKind, bucket: str, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        event = self.evaluator.clear_condition(
            server_id, kind, bucket, now, emit_resolved=self.config_service.current.alerting.emit_resolved
        )
        await self._commit([event] if event else [], now)

    async def close_server(self, server_id: int, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        self.evaluator.close_server(server_id, now)
        await self._commit([], now)

    def _suppressed(self, event: AlertEvent, now: datetime) -> bool:
        alerting = self.config_service.current.alerting
        if event.server_id in alerting.silenced_server_ids:
            return True
        if event.resolved:
            return False
        last = self._last_notified.get((event.server_id, event.kind))
        cooldown = timedelta(minutes=alerting.notify_cooldown_minutes)
        return last is not None and now - last < cooldown

    async def _commit(self, events: list[AlertEvent], now: datetime) -> None:
        changes = self.evaluator.pop_changes()
        unsaved, self._unsaved = self._unsaved, []
        if not events and not changes and not unsaved:
            return

        for event in events:
            if self._suppressed(event, now):
                event.notification_status = NotificationStatus.SUPPRESSED.value

        to_write = unsaved + events
        try:
            await self.store.write_alerts(to_write, changes)
        except StoreWriteError as e:
            # Nothing was written; keep both for the next commit. Notifications still go out.
            logger.critical("Failed to persist %d alert event(s): %s", len(to_write), e)
            for event in to_write:
                event.id = None
            self._unsaved = to_write
            self.evaluator.requeue(changes)

        for event in events:
            if event.notification_status == NotificationStatus.SUPPRESSED.value:
                logger.info("Notification suppressed for %s", event.dedup_key)
                continue
            if not event.resolved:
                self._last_notified[(event.server_id, event.kind)] = now
            self.dispatcher.submit(event)
            if self.events is not None:
                await self.events.publish(
                    AlertRaised(
                        event_id=event.id,
                        server_id=event.server_id,
                        kind=event.kind,
                        dedup_key=event.dedup_key,
                        details=dict(event.details or {}),
                    )
                )
