"""Append-only log of collector executions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from perfwatch.db.base import Base, UTCDateTime


class RunStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class CollectionRun(Base):
    """Outcome of one collector run against one server. Never updated after insert."""

    __tablename__ = "collection_runs"
    __time_column__ = "started_at"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[int] = mapped_column(Integer, nullable=False)
    collector: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ended_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[RunStatus] = mapped_column(String(20), nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rows_collected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_collection_runs_server_time", "server_id", "started_at"),
        Index("ix_collection_runs_server_collector_time", "server_id", "collector", "started_at"),
        Index("ix_collection_runs_status", "status"),
    )
