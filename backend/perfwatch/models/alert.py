"""Alert events and their dedup windows."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from perfwatch.db.base import Base, UTCDateTime


class AlertKind(str, Enum):
    # Operator-configurable rules
    CPU = "CPU"
    BLOCKING = "Blocking"
    DEADLOCK = "Deadlock"
    POISON_WAIT = "PoisonWait"
    LONG_RUNNING_QUERY = "LongRunningQuery"
    TEMPDB_SPACE = "TempDbSpace"
    LONG_RUNNING_JOB = "LongRunningJob"
    CONNECTION_CHANGE = "ConnectionChange"

    # System conditions raised by the collector itself, always on
    COLLECTOR_FAILURE = "CollectorFailure"
    COLLECTOR_DISABLED = "CollectorDisabled"
    HUNG_COLLECTOR = "HungCollector"
    STORE_WRITE_FAILURE = "StoreWriteFailure"

    @property
    def is_system(self) -> bool:
        return self in SYSTEM_ALERT_KINDS


SYSTEM_ALERT_KINDS = frozenset(
    {
        AlertKind.COLLECTOR_FAILURE,
        AlertKind.COLLECTOR_DISABLED,
        AlertKind.HUNG_COLLECTOR,
        AlertKind.STORE_WRITE_FAILURE,
    }
)


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"


def make_dedup_key(server_id: int, kind: AlertKind | str, bucket: str = "") -> str:
    """Stable identity of one alert condition: server, kind and a rule-specific bucket."""
    kind_value = kind.value if isinstance(kind, AlertKind) else kind
    return f"{server_id}:{kind_value}:{bucket}"


class AlertEvent(Base):
    """A fired alert. One row per occurrence window, never per sample."""

    __tablename__ = "alert_events"
    __time_column__ = "triggered_at"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[AlertKind] = mapped_column(String(50), nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(500), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # True for the optional "condition cleared" event
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notification_status: Mapped[NotificationStatus] = mapped_column(
        String(20), default=NotificationStatus.PENDING, nullable=False
    )
    notification_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_alert_events_server_time", "server_id", "triggered_at"),
        Index("ix_alert_events_dedup_key", "dedup_key"),
    )

    @property
    def summary(self) -> str:
        message = self.details.get("message") if self.details else None
        prefix = "RESOLVED " if self.resolved else ""
        kind = AlertKind(self.kind).value
        return f"{prefix}[{kind}] server {self.server_id}: {message or self.dedup_key}"


class AlertDedupState(Base):
    """
    Open/closed window for one dedup key.

    A window opens when its condition goes from not-met to met (an event is
    written) and closes silently when a later evaluation finds it not met.
    """

    __tablename__ = "alert_dedup_state"

    dedup_key: Mapped[str] = mapped_column(String(500), primary_key=True)
    server_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[AlertKind] = mapped_column(String(50), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    cleared_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_event_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("ix_alert_dedup_state_server_active", "server_id", "active"),)
