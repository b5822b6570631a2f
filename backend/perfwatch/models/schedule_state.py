"""Per (server, collector) scheduling state."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from perfwatch.db.base import Base, UTCDateTime


class ScheduleStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class ScheduleState(Base):
    """
    Tracks when a collector last ran against a server and when it is next due.

    next_due_at is NULL until the first run, which makes the pair due at once.
    """

    __tablename__ = "schedule_state"

    server_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("servers.id", ondelete="CASCADE"), primary_key=True
    )
    collector: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_status: Mapped[ScheduleStatus | None] = mapped_column(String(20), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_due_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    running_since: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Health counters
    total_runs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_runs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_success_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Set after a permission failure; cleared by the operator
    disabled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # False once the owning server is deleted
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def is_running(self) -> bool:
        return self.last_status == ScheduleStatus.RUNNING
