"""
Local time-series store.

Wraps the SQLite database behind one async engine. Reads open their own
session and may run concurrently (WAL mode). Every write goes through
`writer()`, which holds a single asyncio lock for the whole transaction:
SQLite allows one writer at a time, so serializing in-process avoids
"database is locked" errors and keeps each batch all-or-nothing.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from perfwatch.core.config import settings
from perfwatch.core.exceptions import NotFoundError, StoreWriteError, ValidationError
from perfwatch.db.migrations import get_schema_version, run_migrations
from perfwatch.db.session import create_engine, create_session_maker
from perfwatch.models import (
    TIME_SERIES_MODELS,
    AlertDedupState,
    AlertEvent,
    CollectionRun,
    MetricDelta,
    RawSampleRow,
    RunStatus,
    ScheduleState,
    ScheduleStatus,
    ServerTarget,
    Setting,
)

logger = logging.getLogger(__name__)

# Collection-log write failures are logged loudly for the first few, then sampled
LOUD_FAILURE_COUNT = 3
FAILURE_LOG_EVERY = 100

HEALTH_WINDOW = timedelta(hours=24)


class LocalStore:
    def __init__(
        self,
        database_url: str | None = None,
        archive_dir: str | Path | None = None,
        archive_batch_size: int | None = None,
    ):
        from perfwatch.services.archive import ArchiveService

        self.database_url = database_url or settings.DATABASE_URL
        self.engine = create_engine(self.database_url)
        self.session_maker = create_session_maker(self.engine)
        self._write_lock = asyncio.Lock()
        self.archive = ArchiveService(
            self,
            Path(archive_dir) if archive_dir else settings.ARCHIVE_PATH,
            batch_size=archive_batch_size or settings.ARCHIVE_BATCH_SIZE,
        )
        self.schema_version: int | None = None
        self.run_log_failures = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> int:
        """
        Ensure the schema is at the current version.

        Safe on every startup: pending Alembic revisions are applied in one
        transaction; nothing is ever dropped.

        Raises:
            SchemaVersionError: the on-disk schema is newer than this build
        """
        async with self._write_lock:
            async with self.engine.begin() as conn:
                before = await conn.run_sync(get_schema_version)
                self.schema_version = await conn.run_sync(run_migrations)

        if self.schema_version != before:
            logger.info("Store schema migrated from version %d to %d", before, self.schema_version)
        else:
            logger.debug("Store schema already at version %d", self.schema_version)
        return self.schema_version

    async def dispose(self) -> None:
        # Waiting on the lock means an in-flight write finishes before the engine goes away
        async with self._write_lock:
            await self.engine.dispose()
        logger.info("Store closed")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def reader(self) -> AsyncSession:
        return self.session_maker()

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[AsyncSession]:
        """Session for one all-or-nothing write, serialized with every other write."""
        async with self._write_lock:
            async with self.session_maker() as session:
                try:
                    yield session
                    await session.commit()
                except BaseException:
                    await session.rollback()
                    raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, rows: Iterable[Any]) -> int:
        rows = list(rows)
        if not rows:
            return 0
        try:
            async with self.writer() as session:
                session.add_all(rows)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"append of {len(rows)} rows failed: {e}") from e
        return len(rows)

    async def write_collection(
        self,
        run: CollectionRun,
        sample: RawSampleRow | None = None,
        deltas: Iterable[MetricDelta] = (),
    ) -> None:
        """
        Persist one successful collector run: sample, deltas and run log together.

        Raises:
            StoreWriteError: nothing from this run was written
        """
        deltas = list(deltas)
        try:
            async with self.writer() as session:
                if sample is not None:
                    session.add(sample)
                session.add_all(deltas)
                session.add(run)
        except SQLAlchemyError as e:
            raise StoreWriteError(
                f"write of {run.collector} for server {run.server_id} failed: {e}"
            ) from e

    async def write_run(self, run: CollectionRun) -> bool:
        """
        Record a run outcome on its own (failure paths).

        Failures here are counted rather than raised so a broken collection
        log never takes the scheduler down with it.
        """
        try:
            async with self.writer() as session:
                session.add(run)
            return True
        except SQLAlchemyError as e:
            self.run_log_failures += 1
            if self.run_log_failures <= LOUD_FAILURE_COUNT or self.run_log_failures % FAILURE_LOG_EVERY == 0:
                logger.error(
                    "Failed to write collection log for %s on server %s (failure #%d): %s",
                    run.collector,
                    run.server_id,
                    self.run_log_failures,
                    e,
                )
            return False

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> dict | None:
        async with self.reader() as session:
            setting = await session.get(Setting, key)
            return setting.value if setting else None

    async def set_setting(self, key: str, value: dict) -> None:
        async with self.writer() as session:
            setting = await session.get(Setting, key)
            if setting:
                setting.value = value
            else:
                session.add(Setting(key=key, value=value))

    # ------------------------------------------------------------------
    # Range queries
    # ------------------------------------------------------------------

    @staticmethod
    def model_for(table: str):
        try:
            return TIME_SERIES_MODELS[table]
        except KeyError:
            raise NotFoundError(f"Unknown table '{table}'") from None

    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[Any]:
        """
        Rows of a time-series table, ordered by collection time ascending.

        Args:
            table: Table class name (raw_samples, metric_deltas, collection_runs, alert_events)
            filters: Column equality filters
            start: Inclusive lower bound on the table's time column
            end: Exclusive upper bound on the table's time column
            limit: Maximum rows to return
        """
        model = self.model_for(table)
        time_column = getattr(model, model.__time_column__)
        columns = model.__table__.columns

        stmt = select(model)
        for name, value in (filters or {}).items():
            if name not in columns:
                raise ValidationError(f"Table '{table}' has no column '{name}'")
            stmt = stmt.where(columns[name] == value)
        if start is not None:
            stmt = stmt.where(time_column >= start)
        if end is not None:
            stmt = stmt.where(time_column < end)
        stmt = stmt.order_by(time_column, model.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.reader() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def metric_series(
        self,
        server_id: int,
        category: str,
        counter: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        valid_only: bool = False,
        limit: int | None = None,
    ) -> list[MetricDelta]:
        filters: dict[str, Any] = {"server_id": server_id, "category": category}
        if counter is not None:
            filters["counter_name"] = counter
        if valid_only:
            filters["is_valid"] = True
        return await self.query("metric_deltas", filters, start, end, limit)

    async def sample_series(
        self,
        server_id: int,
        category: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[RawSampleRow]:
        filters = {"server_id": server_id, "category": category}
        return await self.query("raw_samples", filters, start, end, limit)

    async def latest_samples(self) -> list[RawSampleRow]:
        """Newest persisted sample per (server, category)."""
        newest = (
            select(
                RawSampleRow.server_id,
                RawSampleRow.category,
                func.max(RawSampleRow.collection_time).label("collection_time"),
            )
            .group_by(RawSampleRow.server_id, RawSampleRow.category)
            .subquery()
        )
        stmt = (
            select(RawSampleRow)
            .join(
                newest,
                and_(
                    RawSampleRow.server_id == newest.c.server_id,
                    RawSampleRow.category == newest.c.category,
                    RawSampleRow.collection_time == newest.c.collection_time,
                ),
            )
            .order_by(RawSampleRow.server_id, RawSampleRow.category, RawSampleRow.id)
        )
        async with self.reader() as session:
            rows = (await session.execute(stmt)).scalars().all()

        # Ties on collection_time keep the last inserted row
        latest: dict[tuple[int, str], RawSampleRow] = {}
        for row in rows:
            latest[(row.server_id, row.category)] = row
        return list(latest.values())

    async def purge_server_history(self, session: AsyncSession, server_id: int) -> int:
        """Delete every time-series and schedule row for a server inside the caller's write."""
        deleted = 0
        for model in TIME_SERIES_MODELS.values():
            result = await session.execute(delete(model).where(model.server_id == server_id))
            deleted += result.rowcount or 0
        await session.execute(delete(AlertDedupState).where(AlertDedupState.server_id == server_id))
        await session.execute(delete(ScheduleState).where(ScheduleState.server_id == server_id))
        return deleted

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def collector_health(
        self,
        now: datetime,
        intervals: dict[str, int],
        hung_multiplier: float,
    ) -> list[dict[str, Any]]:
        """
        Health view: latest terminal status per (server, collector).

        A run stuck in Running longer than hung_multiplier x interval is
        reported with status "hung", distinct from "error".
        """
        since = now - HEALTH_WINDOW
        stats_stmt = (
            select(
                CollectionRun.server_id,
                CollectionRun.collector,
                func.count(CollectionRun.id),
                func.sum(case((CollectionRun.status != RunStatus.SUCCESS.value, 1), else_=0)),
                func.avg(CollectionRun.duration_ms),
            )
            .where(CollectionRun.started_at >= since)
            .group_by(CollectionRun.server_id, CollectionRun.collector)
        )
        state_stmt = (
            select(ScheduleState, ServerTarget.name)
            .join(ServerTarget, ServerTarget.id == ScheduleState.server_id)
            .where(ScheduleState.active.is_(True), ServerTarget.deleted_at.is_(None))
            .order_by(ServerTarget.name, ScheduleState.collector)
        )

        async with self.reader() as session:
            stats = {
                (server_id, collector): (runs, failures or 0, avg_ms)
                for server_id, collector, runs, failures, avg_ms in (await session.execute(stats_stmt)).all()
            }
            states = (await session.execute(state_stmt)).all()

        view = []
        for state, server_name in states:
            interval = intervals.get(state.collector)
            hung = is_hung(state, now, interval, hung_multiplier)
            runs, failures, avg_ms = stats.get((state.server_id, state.collector), (0, 0, None))
            if state.disabled_reason:
                status = "disabled"
            elif hung:
                status = "hung"
            else:
                status = state.last_status or "never_run"
            view.append(
                {
                    "server_id": state.server_id,
                    "server_name": server_name,
                    "collector": state.collector,
                    "status": status,
                    "last_status": state.last_status,
                    "last_run_at": state.last_run_at,
                    "next_due_at": state.next_due_at,
                    "last_success_at": state.last_success_at,
                    "last_error": state.last_error,
                    "last_duration_ms": state.last_duration_ms,
                    "consecutive_failures": state.consecutive_failures,
                    "disabled_reason": state.disabled_reason,
                    "hung": hung,
                    "runs_24h": runs,
                    "failures_24h": failures,
                    "avg_duration_ms_24h": round(avg_ms, 1) if avg_ms is not None else None,
                }
            )
        return view

    async def running_alerts(self, server_id: int | None = None) -> list[dict[str, Any]]:
        """Running-alerts view: every open dedup window with the event that opened it."""
        stmt = (
            select(AlertDedupState, AlertEvent)
            .outerjoin(AlertEvent, AlertEvent.id == AlertDedupState.last_event_id)
            .where(AlertDedupState.active.is_(True))
            .order_by(AlertDedupState.first_seen_at)
        )
        if server_id is not None:
            stmt = stmt.where(AlertDedupState.server_id == server_id)

        async with self.reader() as session:
            rows = (await session.execute(stmt)).all()

        return [
            {
                "dedup_key": state.dedup_key,
                "server_id": state.server_id,
                "kind": state.kind,
                "first_seen_at": state.first_seen_at,
                "last_seen_at": state.last_seen_at,
                "event_id": event.id if event else None,
                "details": (event.details if event else state.details) or {},
                "notification_status": event.notification_status if event else None,
            }
            for state, event in rows
        ]

    async def write_alerts(self, events: list[AlertEvent], windows: list) -> None:
        """
        Persist new alert events and dedup window changes in one write.

        Raises:
            StoreWriteError: neither the events nor the window changes were written
        """
        try:
            async with self.writer() as session:
                session.add_all(events)
                await session.flush()
                for window in windows:
                    state = await session.get(AlertDedupState, window.dedup_key)
                    if state is None:
                        state = AlertDedupState(dedup_key=window.dedup_key)
                        session.add(state)
                    state.server_id = window.server_id
                    state.kind = window.kind.value
                    state.active = window.active
                    state.first_seen_at = window.first_seen_at
                    state.last_seen_at = window.last_seen_at
                    state.cleared_at = window.cleared_at
                    state.details = window.details
                    if window.opening_event is not None and window.opening_event.id is not None:
                        window.last_event_id = window.opening_event.id
                    state.last_event_id = window.last_event_id
        except SQLAlchemyError as e:
            raise StoreWriteError(f"write of {len(events)} alert event(s) failed: {e}") from e

        for window in windows:
            window.opening_event = None

    async def active_dedup_states(self) -> list[AlertDedupState]:
        async with self.reader() as session:
            result = await session.execute(select(AlertDedupState).where(AlertDedupState.active.is_(True)))
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def archive_and_purge(self, policy, now: datetime | None = None):
        """Move rows older than policy.max_age_days to Parquet, then delete them."""
        return await self.archive.archive_and_purge(policy, now)


def is_hung(state: ScheduleState, now: datetime, interval_minutes: int | None, multiplier: float) -> bool:
    if state.last_status != ScheduleStatus.RUNNING or state.running_since is None or not interval_minutes:
        return False
    return now - state.running_since > timedelta(minutes=interval_minutes * multiplier)
