"""
Operator-editable monitor configuration.

The configuration is an immutable snapshot (MonitorConfig). Components get a
provider (`config_service.current`) and read the snapshot each time they need
it; they never hold on to pieces of it. ConfigService is the only writer:
every update validates, builds a new snapshot, persists it to the settings
table, swaps it in and publishes ConfigChanged.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from perfwatch.collectors.base import CounterKind
from perfwatch.core.config import settings
from perfwatch.core.exceptions import NotFoundError, ValidationError
from perfwatch.models.alert import AlertKind
from perfwatch.services.events import ConfigChanged, EventBus

if TYPE_CHECKING:
    from perfwatch.services.store import LocalStore

logger = logging.getLogger(__name__)

SETTING_KEY = "monitor_config"

DEFAULT_RETENTION_DAYS = 7
DEFAULT_ARCHIVE_RETENTION_DAYS = 90


class CollectorDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    category: str
    interval_minutes: int = Field(ge=1)
    enabled: bool = True
    counter_kind: CounterKind = CounterKind.POINT_IN_TIME


class AlertRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: AlertKind
    enabled: bool = True
    threshold: float = Field(default=0, ge=0)
    multiplier: float | None = Field(default=None, gt=0)


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str
    max_age_days: int = Field(ge=1)


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    tick_seconds: int = Field(default=30, ge=1)
    max_concurrency: int = Field(default=7, ge=1)
    run_timeout_seconds: float = Field(default=30, gt=0)
    # A Running state older than hung_multiplier x interval is reported as hung
    hung_multiplier: float = Field(default=3.0, gt=0)
    # Consecutive transient failures before a CollectorFailure alert
    persistent_failure_threshold: int = Field(default=5, ge=1)


class AlertingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    notify_cooldown_minutes: int = Field(default=15, ge=0)
    emit_resolved: bool = False
    silenced_server_ids: frozenset[int] = frozenset()


class MonitorConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    collectors: dict[str, CollectorDefinition]
    alert_rules: dict[AlertKind, AlertRule]
    retention: dict[str, RetentionPolicy]
    scheduler: SchedulerConfig = SchedulerConfig()
    alerting: AlertingConfig = AlertingConfig()
    archive_retention_days: int = Field(default=DEFAULT_ARCHIVE_RETENTION_DAYS, ge=1)

    def collector(self, name: str) -> CollectorDefinition:
        try:
            return self.collectors[name]
        except KeyError:
            raise NotFoundError(f"Unknown collector '{name}'") from None

    def enabled_collectors(self) -> list[CollectorDefinition]:
        return [definition for definition in self.collectors.values() if definition.enabled]

    def rule(self, kind: AlertKind) -> AlertRule | None:
        return self.alert_rules.get(kind)


def _collector(name: str, interval: int, kind: CounterKind) -> CollectorDefinition:
    return CollectorDefinition(name=name, category=name, interval_minutes=interval, counter_kind=kind)


DEFAULT_COLLECTORS = (
    _collector("wait_stats", 1, CounterKind.MONOTONIC),
    _collector("cpu_utilization", 1, CounterKind.POINT_IN_TIME),
    _collector("memory_stats", 1, CounterKind.POINT_IN_TIME),
    _collector("file_io_stats", 1, CounterKind.MONOTONIC),
    _collector("perfmon_stats", 1, CounterKind.MONOTONIC),
    _collector("query_snapshots", 1, CounterKind.POINT_IN_TIME),
    _collector("blocking", 1, CounterKind.POINT_IN_TIME),
    _collector("deadlocks", 1, CounterKind.MONOTONIC),
    _collector("tempdb_stats", 1, CounterKind.POINT_IN_TIME),
    _collector("running_jobs", 5, CounterKind.POINT_IN_TIME),
    _collector("server_config", 60, CounterKind.POINT_IN_TIME),
)

DEFAULT_ALERT_RULES = (
    AlertRule(kind=AlertKind.CPU, threshold=80),
    AlertRule(kind=AlertKind.BLOCKING, threshold=1),
    AlertRule(kind=AlertKind.DEADLOCK, threshold=1),
    AlertRule(kind=AlertKind.POISON_WAIT, threshold=500),
    AlertRule(kind=AlertKind.LONG_RUNNING_QUERY, threshold=30),
    AlertRule(kind=AlertKind.TEMPDB_SPACE, threshold=80),
    AlertRule(kind=AlertKind.LONG_RUNNING_JOB, threshold=0, multiplier=3.0),
    AlertRule(kind=AlertKind.CONNECTION_CHANGE, threshold=0),
)

RETENTION_TABLES = ("raw_samples", "metric_deltas", "collection_runs", "alert_events")


def default_monitor_config() -> MonitorConfig:
    return MonitorConfig(
        collectors={definition.name: definition for definition in DEFAULT_COLLECTORS},
        alert_rules={rule.kind: rule for rule in DEFAULT_ALERT_RULES},
        retention={
            table: RetentionPolicy(table=table, max_age_days=DEFAULT_RETENTION_DAYS)
            for table in RETENTION_TABLES
        },
        scheduler=SchedulerConfig(
            tick_seconds=settings.DEFAULT_TICK_SECONDS,
            max_concurrency=settings.DEFAULT_MAX_CONCURRENCY,
            run_timeout_seconds=settings.DEFAULT_RUN_TIMEOUT_SECONDS,
        ),
    )


def merge_persisted(data: dict[str, Any], base: MonitorConfig | None = None) -> MonitorConfig:
    """
    Overlay a persisted snapshot onto the built-in defaults.

    Only the mutable fields are taken from disk (interval/enabled for
    collectors, enabled/threshold/multiplier for rules, max_age_days for
    retention). Entries this build does not know about are dropped, and
    entries missing on disk keep their defaults.
    """
    base = base or default_monitor_config()

    collectors = {}
    for name, definition in base.collectors.items():
        stored = (data.get("collectors") or {}).get(name) or {}
        collectors[name] = CollectorDefinition(
            **{
                **definition.model_dump(),
                **{k: stored[k] for k in ("interval_minutes", "enabled") if k in stored},
            }
        )

    alert_rules = {}
    stored_rules = data.get("alert_rules") or {}
    for kind, rule in base.alert_rules.items():
        stored = stored_rules.get(kind.value) or {}
        alert_rules[kind] = AlertRule(
            **{
                **rule.model_dump(),
                **{k: stored[k] for k in ("enabled", "threshold", "multiplier") if k in stored},
            }
        )

    retention = {}
    for table, policy in base.retention.items():
        stored = (data.get("retention") or {}).get(table) or {}
        retention[table] = RetentionPolicy(table=table, max_age_days=stored.get("max_age_days", policy.max_age_days))

    scheduler = SchedulerConfig(
        **{**base.scheduler.model_dump(), **_known(data.get("scheduler"), SchedulerConfig)}
    )
    alerting = AlertingConfig(
        **{**base.alerting.model_dump(), **_known(data.get("alerting"), AlertingConfig)}
    )

    return MonitorConfig(
        collectors=collectors,
        alert_rules=alert_rules,
        retention=retention,
        scheduler=scheduler,
        alerting=alerting,
        archive_retention_days=data.get("archive_retention_days", base.archive_retention_days),
    )


def _known(values: dict | None, model: type[BaseModel]) -> dict:
    if not values:
        return {}
    return {k: v for k, v in values.items() if k in model.model_fields}


def _describe(error: pydantic.ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", str(error))


class ConfigService:
    """Single writer for MonitorConfig."""

    def __init__(self, store: "LocalStore", events: EventBus | None = None, initial: MonitorConfig | None = None):
        self._store = store
        self._events = events
        self._current = initial or default_monitor_config()
        self._lock = asyncio.Lock()

    @property
    def current(self) -> MonitorConfig:
        return self._current

    async def load(self) -> MonitorConfig:
        """Load the persisted snapshot, writing the defaults on first start."""
        data = await self._store.get_setting(SETTING_KEY)
        if data is None:
            self._current = default_monitor_config()
            await self._store.set_setting(SETTING_KEY, self._current.model_dump(mode="json"))
            logger.info("Initialized monitor configuration with defaults")
        else:
            try:
                self._current = merge_persisted(data)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Persisted monitor configuration is invalid: {_describe(e)}") from e
        return self._current

    async def update_collector(
        self, name: str, *, interval_minutes: int | None = None, enabled: bool | None = None
    ) -> CollectorDefinition:
        def build(config: MonitorConfig) -> MonitorConfig:
            definition = config.collector(name)
            changes = {}
            if interval_minutes is not None:
                changes["interval_minutes"] = interval_minutes
            if enabled is not None:
                changes["enabled"] = enabled
            updated = CollectorDefinition(**{**definition.model_dump(), **changes})
            return _replace(config, collectors={**config.collectors, name: updated})

        config = await self._apply(build)
        return config.collectors[name]

    async def update_alert_rule(
        self,
        kind: AlertKind | str,
        *,
        enabled: bool | None = None,
        threshold: float | None = None,
        multiplier: float | None = None,
    ) -> AlertRule:
        try:
            kind = AlertKind(kind)
        except ValueError:
            raise NotFoundError(f"Unknown alert rule kind '{kind}'") from None

        def build(config: MonitorConfig) -> MonitorConfig:
            rule = config.rule(kind)
            if rule is None:
                raise NotFoundError(f"Alert kind '{kind.value}' is not configurable")
            changes = {
                key: value
                for key, value in (("enabled", enabled), ("threshold", threshold), ("multiplier", multiplier))
                if value is not None
            }
            updated = AlertRule(**{**rule.model_dump(), **changes})
            return _replace(config, alert_rules={**config.alert_rules, kind: updated})

        config = await self._apply(build)
        return config.alert_rules[kind]

    async def update_retention(self, table: str, max_age_days: int) -> RetentionPolicy:
        def build(config: MonitorConfig) -> MonitorConfig:
            if table not in config.retention:
                raise NotFoundError(f"Unknown table class '{table}'")
            updated = RetentionPolicy(table=table, max_age_days=max_age_days)
            return _replace(config, retention={**config.retention, table: updated})

        config = await self._apply(build)
        return config.retention[table]

    async def update_scheduler(self, **changes: Any) -> SchedulerConfig:
        unknown = set(changes) - set(SchedulerConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown scheduler settings: {', '.join(sorted(unknown))}")

        def build(config: MonitorConfig) -> MonitorConfig:
            scheduler = SchedulerConfig(**{**config.scheduler.model_dump(), **changes})
            return _replace(config, scheduler=scheduler)

        config = await self._apply(build)
        return config.scheduler

    async def update_alerting(self, **changes: Any) -> AlertingConfig:
        unknown = set(changes) - set(AlertingConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown alerting settings: {', '.join(sorted(unknown))}")

        def build(config: MonitorConfig) -> MonitorConfig:
            alerting = AlertingConfig(**{**config.alerting.model_dump(), **changes})
            return _replace(config, alerting=alerting)

        config = await self._apply(build)
        return config.alerting

    async def set_server_silenced(self, server_id: int, silenced: bool) -> AlertingConfig:
        current = set(self._current.alerting.silenced_server_ids)
        if silenced:
            current.add(server_id)
        else:
            current.discard(server_id)
        return await self.update_alerting(silenced_server_ids=frozenset(current))

    async def _apply(self, build: Callable[[MonitorConfig], MonitorConfig]) -> MonitorConfig:
        async with self._lock:
            old = self._current
            try:
                new = build(old)
            except pydantic.ValidationError as e:
                raise ValidationError(_describe(e)) from e
            await self._store.set_setting(SETTING_KEY, new.model_dump(mode="json"))
            self._current = new

        logger.info("Monitor configuration updated")
        if self._events is not None:
            await self._events.publish(ConfigChanged(old=old, new=new))
        return new


def _replace(config: MonitorConfig, **changes: Any) -> MonitorConfig:
    return MonitorConfig(**{**dict(config), **changes})
