"""Time-series tables for raw samples and computed deltas."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from perfwatch.db.base import Base, UTCDateTime


class RawSampleRow(Base):
    """
    A persisted collector snapshot.

    Not needed for delta correctness; kept so the delta cache can be seeded
    after a restart and so point-in-time categories can be charted.
    """

    __tablename__ = "raw_samples"
    __time_column__ = "collection_time"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    collection_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    counters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_raw_samples_server_time", "server_id", "collection_time"),
        Index("ix_raw_samples_server_category_time", "server_id", "category", "collection_time"),
    )


class MetricDelta(Base):
    """One counter's activity over one collection interval. Immutable once written."""

    __tablename__ = "metric_deltas"
    __time_column__ = "interval_end"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    counter_name: Mapped[str] = mapped_column(String(255), nullable=False)
    interval_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    interval_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    delta_value: Mapped[float] = mapped_column(Float, nullable=False)
    # False when a counter reset was detected for this interval
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_metric_deltas_server_time", "server_id", "interval_end"),
        Index(
            "ix_metric_deltas_server_category_counter_time",
            "server_id",
            "category",
            "counter_name",
            "interval_end",
        ),
    )

    @property
    def elapsed_seconds(self) -> float | None:
        if self.interval_start is None:
            return None
        return (self.interval_end - self.interval_start).total_seconds()

    @property
    def rate_per_second(self) -> float | None:
        """Delta normalized by the actual interval length."""
        elapsed = self.elapsed_seconds
        if not elapsed:
            return None
        return self.delta_value / elapsed

    def __repr__(self) -> str:
        return (
            f"<MetricDelta server={self.server_id} {self.category}/{self.counter_name} "
            f"delta={self.delta_value} valid={self.is_valid}>"
        )
