"""
Schedule manager.

Collector definitions (interval, enabled) come from the current
MonitorConfig snapshot; per (server, collector) progress lives in the
schedule_state table. A pair is due when it has never run or its
next_due_at has passed, and it is not Running, disabled or deactivated.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from perfwatch.core.exceptions import ValidationError
from perfwatch.models import ScheduleState, ScheduleStatus, ServerTarget
from perfwatch.services.monitor_config import CollectorDefinition, ConfigService, MonitorConfig
from perfwatch.services.store import LocalStore, is_hung

logger = logging.getLogger(__name__)

FAILURE_STATUSES = (ScheduleStatus.ERROR, ScheduleStatus.TIMEOUT)


class ScheduleManager:
    def __init__(self, store: LocalStore, config_service: ConfigService):
        self.store = store
        self.config_service = config_service

    @property
    def config(self) -> MonitorConfig:
        return self.config_service.current

    async def get_state(self, server_id: int, collector: str) -> ScheduleState | None:
        async with self.store.reader() as session:
            return await session.get(ScheduleState, (server_id, collector))

    async def states_for_server(self, server_id: int) -> dict[str, ScheduleState]:
        async with self.store.reader() as session:
            result = await session.execute(select(ScheduleState).where(ScheduleState.server_id == server_id))
            return {state.collector: state for state in result.scalars()}

    async def due_collectors(self, server: ServerTarget, now: datetime) -> list[CollectorDefinition]:
        """Enabled collectors that should run against this server now."""
        if not server.is_pollable:
            return []

        states = await self.states_for_server(server.id)
        due = []
        for definition in self.config.enabled_collectors():
            state = states.get(definition.name)
            if state is None:
                due.append(definition)
                continue
            if not state.active or state.disabled_reason or state.is_running:
                continue
            if state.next_due_at is None or state.next_due_at <= now:
                due.append(definition)
        return due

    async def mark_running(self, server_id: int, collector: str, now: datetime) -> bool:
        """
        Move a pair to Running.

        Returns:
            False if the pair is already Running (the caller must not dispatch)
        """
        async with self.store.writer() as session:
            state = await session.get(ScheduleState, (server_id, collector))
            if state is None:
                state = ScheduleState(server_id=server_id, collector=collector)
                session.add(state)
            elif state.is_running:
                logger.warning("Collector %s on server %s is already running, not dispatching", collector, server_id)
                return False
            state.last_status = ScheduleStatus.RUNNING
            state.running_since = now
        return True

    async def mark_completed(
        self,
        server_id: int,
        collector: str,
        status: ScheduleStatus,
        started_at: datetime,
        finished_at: datetime,
        error: str | None = None,
        duration_ms: int | None = None,
        counts_as_failure: bool = True,
    ) -> ScheduleState:
        """
        Record a terminal status and compute the next due time.

        next_due_at is started_at + interval for every terminal status except
        Timeout, which makes the pair due again immediately.
        """
        if status == ScheduleStatus.RUNNING:
            raise ValueError("mark_completed needs a terminal status")

        definition = self.config.collectors.get(collector)
        interval = timedelta(minutes=definition.interval_minutes if definition else 1)

        async with self.store.writer() as session:
            state = await session.get(ScheduleState, (server_id, collector))
            if state is None:
                state = ScheduleState(server_id=server_id, collector=collector, total_runs=0, failed_runs=0, consecutive_failures=0)
                session.add(state)

            state.last_run_at = started_at
            state.last_status = status
            state.running_since = None
            state.last_duration_ms = duration_ms
            state.total_runs = (state.total_runs or 0) + 1

            if status == ScheduleStatus.SUCCESS:
                state.consecutive_failures = 0
                state.last_success_at = finished_at
                state.last_error = None
            elif status in FAILURE_STATUSES:
                state.failed_runs = (state.failed_runs or 0) + 1
                state.last_error = error
                if counts_as_failure:
                    state.consecutive_failures = (state.consecutive_failures or 0) + 1
            else:
                state.last_error = error

            if status == ScheduleStatus.TIMEOUT:
                state.next_due_at = finished_at
            else:
                state.next_due_at = started_at + interval
        return state

    async def disable(self, server_id: int, collector: str, reason: str) -> None:
        async with self.store.writer() as session:
            state = await session.get(ScheduleState, (server_id, collector))
            if state is None:
                state = ScheduleState(server_id=server_id, collector=collector)
                session.add(state)
            state.disabled_reason = reason
        logger.error("Collector %s disabled for server %s: %s", collector, server_id, reason)

    async def reenable(self, server_id: int, collector: str) -> bool:
        """Clear a permission disable; the pair becomes due on the next tick."""
        async with self.store.writer() as session:
            state = await session.get(ScheduleState, (server_id, collector))
            if state is None or not state.disabled_reason:
                return False
            state.disabled_reason = None
            state.consecutive_failures = 0
            state.next_due_at = None
        logger.info("Collector %s re-enabled for server %s", collector, server_id)
        return True

    async def update_interval(self, collector: str, minutes: int) -> CollectorDefinition:
        if minutes < 1:
            raise ValidationError(f"Interval for {collector} must be at least 1 minute, got {minutes}")
        return await self.config_service.update_collector(collector, interval_minutes=minutes)

    async def set_enabled(self, collector: str, enabled: bool) -> CollectorDefinition:
        return await self.config_service.update_collector(collector, enabled=enabled)

    async def find_hung(self, now: datetime, multiplier: float | None = None) -> list[ScheduleState]:
        """
        Running states older than multiplier x interval.

        Reporting only: the run is not cancelled here.
        """
        multiplier = multiplier or self.config.scheduler.hung_multiplier
        async with self.store.reader() as session:
            result = await session.execute(
                select(ScheduleState).where(
                    ScheduleState.last_status == ScheduleStatus.RUNNING.value,
                    ScheduleState.active.is_(True),
                )
            )
            running = list(result.scalars())

        hung = []
        for state in running:
            definition = self.config.collectors.get(state.collector)
            if is_hung(state, now, definition.interval_minutes if definition else None, multiplier):
                hung.append(state)
        return hung

    async def recover_orphaned(self, now: datetime) -> int:
        """
        Reset Running states left behind by a process that died mid-run.

        Only called at startup, before anything is dispatched.
        """
        async with self.store.writer() as session:
            result = await session.execute(
                update(ScheduleState)
                .where(ScheduleState.last_status == ScheduleStatus.RUNNING.value)
                .values(
                    last_status=ScheduleStatus.SKIPPED.value,
                    running_since=None,
                    next_due_at=now,
                    last_error="interrupted by restart",
                )
            )
            count = result.rowcount or 0
        if count:
            logger.warning("Reset %d collector run(s) interrupted by a previous shutdown", count)
        return count

    @staticmethod
    async def deactivate_server(session: AsyncSession, server_id: int) -> None:
        """Logically deactivate a deleted server's schedule rows within the caller's write."""
        await session.execute(
            update(ScheduleState)
            .where(ScheduleState.server_id == server_id)
            .values(active=False, running_since=None)
        )
