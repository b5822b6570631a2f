"""Monitored database server targets."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from perfwatch.db.base import Base, TimestampMixin, UTCDateTime


class ServerTarget(Base, TimestampMixin):
    """
    A monitored server.

    Every other table refers to a server by its integer id only. Deleting a
    server is logical (deleted_at); its history stays queryable until purged.
    """

    __tablename__ = "servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # Opaque reference resolved by the collector adapter (credential storage is external)
    connection_ref: Mapped[str] = mapped_column(String(500), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_pollable(self) -> bool:
        return self.enabled and self.deleted_at is None
