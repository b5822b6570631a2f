"""
Process wiring.

Both entry points (the API app and the headless worker) build the same
object graph here: one store, one event bus, one config service and one
orchestrator per process.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from perfwatch.collectors.base import CollectorAdapter, load_adapter
from perfwatch.core.config import settings
from perfwatch.services.alerts import AlertService
from perfwatch.services.archive import ArchiveResult
from perfwatch.services.delta import DeltaEngine
from perfwatch.services.events import EventBus
from perfwatch.services.monitor_config import ConfigService
from perfwatch.services.notification import NotificationDispatcher, Notifier, notifier_from_settings
from perfwatch.services.orchestrator import CollectionOrchestrator
from perfwatch.services.schedule import ScheduleManager
from perfwatch.services.scheduler import SchedulerService
from perfwatch.services.servers import ServerService
from perfwatch.services.store import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: LocalStore
    events: EventBus
    config: ConfigService
    delta_engine: DeltaEngine
    schedule: ScheduleManager
    dispatcher: NotificationDispatcher
    alerts: AlertService
    servers: ServerService
    scheduler: SchedulerService
    orchestrator: CollectionOrchestrator
    started: bool = False

    async def start(self, schedule_jobs: bool = True) -> None:
        """
        Bring the store up to date, restore in-memory state and start polling.

        Raises:
            SchemaVersionError: the database was written by a newer build
        """
        await self.store.init()
        await self.config.load()
        self.delta_engine.seed(await self.store.latest_samples())
        await self.alerts.load()

        if schedule_jobs:
            await self.orchestrator.start()
            self.scheduler.schedule_maintenance(self.run_archive, self.run_archive_cleanup)
        self.started = True

    async def stop(self) -> None:
        if self.started:
            await self.orchestrator.stop()
            self.scheduler.stop()
            # Let the deferred scheduler shutdown run before the store goes away
            await asyncio.sleep(0)
        await self.store.dispose()
        self.started = False

    async def archive_all(self, now: datetime | None = None) -> list[ArchiveResult]:
        """Run archive-and-purge for every retention policy, one table at a time."""
        now = now or datetime.now(UTC)
        results = []
        for policy in self.config.current.retention.values():
            results.append(await self.store.archive_and_purge(policy, now))
        return results

    async def run_archive(self) -> None:
        try:
            results = await self.archive_all()
        except Exception as e:
            logger.exception("Archive and purge failed: %s", e)
            return
        total = sum(r.rows_archived for r in results)
        if total:
            logger.info("Archived and purged %d row(s)", total)

    async def run_archive_cleanup(self) -> None:
        try:
            removed = await self.store.archive.cleanup_old_archives(
                datetime.now(UTC), self.config.current.archive_retention_days
            )
        except Exception as e:
            logger.exception("Archive cleanup failed: %s", e)
            return
        if removed:
            logger.info("Removed %d expired archive file(s)", len(removed))


def build_runtime(
    store: LocalStore | None = None,
    adapter: CollectorAdapter | None = None,
    notifier: Notifier | None = None,
    clock=None,
) -> Runtime:
    store = store or LocalStore()
    events = EventBus()
    config = ConfigService(store, events)
    delta_engine = DeltaEngine()
    schedule = ScheduleManager(store, config)
    dispatcher = NotificationDispatcher(notifier or notifier_from_settings(), store)
    alerts = AlertService(store, config, dispatcher, events=events)
    servers = ServerService(store, delta_engine, alerts)
    scheduler = SchedulerService()
    orchestrator = CollectionOrchestrator(
        store,
        adapter or load_adapter(settings.COLLECTOR_ADAPTER),
        delta_engine,
        schedule,
        alerts,
        servers,
        config,
        events=events,
        scheduler=scheduler,
        clock=clock,
    )
    servers.cycle_guard = orchestrator.server_quiesced
    return Runtime(
        store=store,
        events=events,
        config=config,
        delta_engine=delta_engine,
        schedule=schedule,
        dispatcher=dispatcher,
        alerts=alerts,
        servers=servers,
        scheduler=scheduler,
        orchestrator=orchestrator,
    )
