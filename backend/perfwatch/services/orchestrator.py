"""
Collection orchestrator.

A single tick, driven by APScheduler, looks for servers with due collectors
and starts one task per server. Within a server, collectors run one after
another (they share the server's connection context); across servers the
tasks run concurrently, bounded by a semaphore of max_concurrency.

Every collector run is wrapped in a timeout. Adapter and store errors are
caught here and turned into CollectionRun records, so nothing a collector
does can stop the tick loop. After a server's collectors finish, its alerts
are evaluated against the rows just written, and only then does the server
go back to idle.
"""

import asyncio
import logging
import time
from collections import Counter, defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from perfwatch.collectors.base import CollectorAdapter, RawSample, ServerHandle
from perfwatch.core.exceptions import (
    CollectorError,
    CollectorPermissionError,
    ConnectivityError,
    NotFoundError,
    StoreWriteError,
    UnsupportedOnThisServerVersion,
)
from perfwatch.models import (
    AlertEvent,
    AlertKind,
    CollectionRun,
    MetricDelta,
    RawSampleRow,
    RunStatus,
    ScheduleStatus,
    ServerTarget,
)
from perfwatch.services.alerts import CONNECTIVITY_CATEGORY, AlertService
from perfwatch.services.delta import DeltaEngine
from perfwatch.services.events import (
    CollectionRunCompleted,
    CollectorDisabled,
    ConfigChanged,
    EventBus,
    HungCollectorDetected,
    StoreWriteFailed,
)
from perfwatch.services.monitor_config import CollectorDefinition, ConfigService, MonitorConfig
from perfwatch.services.schedule import ScheduleManager
from perfwatch.services.scheduler import SchedulerService
from perfwatch.services.servers import ServerService
from perfwatch.services.store import LocalStore

logger = logging.getLogger(__name__)


class ServerPollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


@dataclass
class RunOutcome:
    collector: str
    status: RunStatus | None  # None when the pair was not dispatched
    sample: RawSample | None = None
    deltas: list[MetricDelta] = field(default_factory=list)
    error: str | None = None
    connectivity_failed: bool = False


@dataclass
class CycleResult:
    server_id: int
    outcomes: list[RunOutcome] = field(default_factory=list)
    alerts: list[AlertEvent] = field(default_factory=list)

    @property
    def status_counts(self) -> Counter:
        return Counter(o.status.value for o in self.outcomes if o.status is not None)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CollectionOrchestrator:
    def __init__(
        self,
        store: LocalStore,
        adapter: CollectorAdapter,
        delta_engine: DeltaEngine,
        schedule: ScheduleManager,
        alerts: AlertService,
        servers: ServerService,
        config_service: ConfigService,
        events: EventBus | None = None,
        scheduler: SchedulerService | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.adapter = adapter
        self.delta_engine = delta_engine
        self.schedule = schedule
        self.alerts = alerts
        self.servers = servers
        self.config_service = config_service
        self.events = events or EventBus()
        self.scheduler = scheduler or SchedulerService()
        self._clock = clock or _utcnow

        self._paused = False
        self._stopping = False
        self._server_locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._queued: Counter = Counter()
        self._tasks: set[asyncio.Task] = set()
        self._concurrency = self.config.scheduler.max_concurrency
        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._unsubscribe = self.events.subscribe(ConfigChanged, self._on_config_changed)

    @property
    def config(self) -> MonitorConfig:
        return self.config_service.current

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Stop scheduled polling from the next tick on. On-demand runs still work."""
        self._paused = True
        logger.info("Collection paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Collection resumed")

    def server_state(self, server_id: int) -> ServerPollState:
        lock = self._server_locks.get(server_id)
        if self._queued[server_id] or (lock is not None and lock.locked()):
            return ServerPollState.POLLING
        return ServerPollState.IDLE

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @asynccontextmanager
    async def server_quiesced(self, server_id: int) -> AsyncIterator[None]:
        """Wait for the server's running cycle and keep new ones out until exit."""
        async with self._server_locks[server_id]:
            yield

    async def start(self) -> None:
        # The persisted config may have been loaded after construction
        self._resize(self.config.scheduler.max_concurrency)
        await self.schedule.recover_orphaned(self.now())
        self.scheduler.schedule_tick(self._tick_job, self.config.scheduler.tick_seconds)
        self.scheduler.start()

    async def stop(self, timeout: float | None = None) -> None:
        """
        Graceful shutdown.

        No new tick starts after this is called. Server tasks already running
        get up to the per-run timeout to finish; whatever is left is cancelled.
        A cancelled run never leaves a partial write behind because each
        store write is a single transaction.
        """
        self._stopping = True
        self.scheduler.remove_tick()
        self._unsubscribe()

        if self._tasks:
            wait_for = timeout if timeout is not None else self.config.scheduler.run_timeout_seconds
            logger.info("Waiting up to %.0fs for %d server task(s)", wait_for, len(self._tasks))
            done, pending = await asyncio.wait(set(self._tasks), timeout=wait_for)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("Abandoned %d server task(s) at shutdown", len(pending))

        await self.alerts.dispatcher.drain()
        logger.info("Collection orchestrator stopped")

    async def _on_config_changed(self, event: ConfigChanged) -> None:
        old, new = event.old.scheduler, event.new.scheduler
        if new.tick_seconds != old.tick_seconds and not self._stopping:
            self.scheduler.reschedule_tick(new.tick_seconds)
        if new.max_concurrency != self._concurrency:
            self._resize(new.max_concurrency)
            logger.info("Max concurrency set to %d", new.max_concurrency)

    def _resize(self, limit: int) -> None:
        if limit == self._concurrency:
            return
        # Tasks already holding the old semaphore finish under the old limit
        self._concurrency = limit
        self._semaphore = asyncio.Semaphore(limit)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _tick_job(self) -> None:
        try:
            await self.tick()
        except Exception as e:
            logger.exception("Collection tick failed: %s", e)

    async def tick(self, now: datetime | None = None) -> list[asyncio.Task]:
        """
        One scheduler pass.

        Returns:
            The server tasks started by this tick (empty when paused)
        """
        if self._stopping:
            return []
        if self._paused:
            logger.debug("Collection paused, skipping tick")
            return []

        now = now or self.now()
        await self._check_hung(now)

        started = []
        for server in await self.servers.list(enabled_only=True):
            if self.server_state(server.id) == ServerPollState.POLLING:
                continue
            due = await self.schedule.due_collectors(server, now)
            if due:
                started.append(self._spawn(server, due))
        return started

    async def run_server_now(self, server_id: int, collectors: list[str] | None = None) -> asyncio.Task:
        """
        Run collectors for one server immediately, ignoring due times and pause.

        The returned task waits for any cycle already running on that server.
        """
        server = await self.servers.get(server_id)
        if collectors:
            definitions = [self.config.collector(name) for name in collectors]
        else:
            definitions = self.config.enabled_collectors()
        logger.info("On-demand collection for %s (%d collectors)", server.name, len(definitions))
        return self._spawn(server, definitions)

    def _spawn(self, server: ServerTarget, collectors: list[CollectorDefinition]) -> asyncio.Task:
        self._queued[server.id] += 1
        task = asyncio.create_task(self._poll_server(server, collectors), name=f"poll:{server.name}")
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            self._queued[server.id] -= 1
            if self._queued[server.id] <= 0:
                del self._queued[server.id]

        task.add_done_callback(_done)
        return task

    # ------------------------------------------------------------------
    # Server cycle
    # ------------------------------------------------------------------

    async def _poll_server(self, server: ServerTarget, collectors: list[CollectorDefinition]) -> CycleResult:
        result = CycleResult(server_id=server.id)
        handle = ServerHandle(id=server.id, name=server.name, connection_ref=server.connection_ref)

        async with self._server_locks[server.id]:
            try:
                await self.servers.get(server.id)
            except NotFoundError:
                logger.info("[%s] deleted while queued, skipping cycle", server.name)
                return result

            async with self._semaphore:
                for definition in collectors:
                    if self._stopping:
                        break
                    result.outcomes.append(await self._run_collector(handle, definition))

                samples = [o.sample for o in result.outcomes if o.sample is not None]
                deltas = [d for o in result.outcomes for d in o.deltas]
                connectivity = await self._record_connectivity(handle, result.outcomes)
                if connectivity is not None:
                    samples.append(connectivity)

                try:
                    result.alerts = await self.alerts.evaluate_cycle(server.id, deltas, samples, self.now())
                except Exception as e:
                    logger.exception("Alert evaluation failed for %s: %s", server.name, e)

        counts = result.status_counts
        if counts:
            logger.info(
                "[%s] cycle finished: %s",
                server.name,
                ", ".join(f"{status}={count}" for status, count in sorted(counts.items())),
            )
        return result

    async def _run_collector(self, server: ServerHandle, definition: CollectorDefinition) -> RunOutcome:
        started = self.now()
        started_clock = time.monotonic()
        if not await self.schedule.mark_running(server.id, definition.name, started):
            return RunOutcome(definition.name, None)

        timeout = self.config.scheduler.run_timeout_seconds
        outcome = RunOutcome(definition.name, RunStatus.SUCCESS)
        counts_as_failure = True
        disable_reason = None
        sample = None

        try:
            sample = await asyncio.wait_for(self.adapter.collect(server, definition.category), timeout)
            if sample.server_id != server.id or sample.category != definition.category:
                raise CollectorError(
                    f"adapter returned a sample for server {sample.server_id}/{sample.category}"
                )
        except TimeoutError:
            outcome.status = RunStatus.TIMEOUT
            outcome.error = f"run exceeded {timeout:g}s timeout"
        except CollectorPermissionError as e:
            outcome.status = RunStatus.ERROR
            outcome.error = e.reason
            counts_as_failure = False
            disable_reason = e.reason
        except UnsupportedOnThisServerVersion as e:
            outcome.status = RunStatus.SKIPPED
            outcome.error = e.reason
        except ConnectivityError as e:
            outcome.status = RunStatus.ERROR
            outcome.error = e.reason
            outcome.connectivity_failed = True
        except CollectorError as e:
            outcome.status = RunStatus.ERROR
            outcome.error = e.reason
        except Exception as e:
            outcome.status = RunStatus.ERROR
            outcome.error = f"{type(e).__name__}: {e}"

        finished = self.now()
        duration_ms = int((time.monotonic() - started_clock) * 1000)

        if outcome.status == RunStatus.SUCCESS:
            await self._store_success(server, definition, sample, outcome, started, finished, duration_ms)
        else:
            if outcome.status == RunStatus.SKIPPED:
                logger.info("[%s] %s skipped: %s", server.name, definition.name, outcome.error)
            else:
                logger.warning("[%s] %s %s: %s", server.name, definition.name, outcome.status.value, outcome.error)
            await self.store.write_run(
                CollectionRun(
                    server_id=server.id,
                    collector=definition.name,
                    started_at=started,
                    ended_at=finished,
                    status=outcome.status.value,
                    duration_ms=duration_ms,
                    rows_collected=0,
                    error_message=outcome.error,
                )
            )

        state = None
        try:
            state = await self.schedule.mark_completed(
                server.id,
                definition.name,
                ScheduleStatus(outcome.status.value),
                started,
                finished,
                error=outcome.error,
                duration_ms=duration_ms,
                counts_as_failure=counts_as_failure,
            )
        except SQLAlchemyError as e:
            # The pair stays Running on disk; the hung check will surface it
            logger.critical("Failed to record schedule state for %s on %s: %s", definition.name, server.name, e)

        await self._after_run(server, definition, outcome, state, disable_reason, finished)
        await self.events.publish(
            CollectionRunCompleted(
                server_id=server.id,
                collector=definition.name,
                status=outcome.status.value,
                started_at=started,
                duration_ms=duration_ms,
                rows_collected=len(outcome.deltas),
                error_message=outcome.error,
            )
        )
        return outcome

    async def _store_success(
        self,
        server: ServerHandle,
        definition: CollectorDefinition,
        sample: RawSample,
        outcome: RunOutcome,
        started: datetime,
        finished: datetime,
        duration_ms: int,
    ) -> None:
        deltas = self.delta_engine.compute(sample, definition.counter_kind)
        run = CollectionRun(
            server_id=server.id,
            collector=definition.name,
            started_at=started,
            ended_at=finished,
            status=RunStatus.SUCCESS.value,
            duration_ms=duration_ms,
            rows_collected=len(sample.counters),
        )
        row = RawSampleRow(
            server_id=server.id,
            category=sample.category,
            collection_time=sample.collected_at,
            counters=dict(sample.counters),
        )
        try:
            await self.store.write_collection(run, row, deltas)
        except StoreWriteError as e:
            logger.critical("[%s] %s collected but not stored: %s", server.name, definition.name, e.reason)
            outcome.status = RunStatus.ERROR
            outcome.error = f"store write failed: {e.reason}"
            await self.store.write_run(
                CollectionRun(
                    server_id=server.id,
                    collector=definition.name,
                    started_at=started,
                    ended_at=finished,
                    status=RunStatus.ERROR.value,
                    duration_ms=duration_ms,
                    rows_collected=0,
                    error_message=outcome.error,
                )
            )
            await self.events.publish(StoreWriteFailed(server.id, definition.name, e.reason, finished))
            await self.alerts.raise_system(
                server.id,
                AlertKind.STORE_WRITE_FAILURE,
                finished.strftime("%Y%m%d%H%M"),
                {"message": f"Data for {definition.name} could not be stored", "error": e.reason},
                finished,
            )
            return

        # Baseline only moves once the deltas computed against it are durable
        self.delta_engine.advance(sample)
        outcome.sample = sample
        outcome.deltas = deltas
        logger.debug("[%s] %s => %d counters, %d deltas", server.name, definition.name, len(sample.counters), len(deltas))

    async def _after_run(
        self,
        server: ServerHandle,
        definition: CollectorDefinition,
        outcome: RunOutcome,
        state,
        disable_reason: str | None,
        now: datetime,
    ) -> None:
        if disable_reason:
            await self.schedule.disable(server.id, definition.name, disable_reason)
            await self.events.publish(CollectorDisabled(server.id, definition.name, disable_reason, now))
            await self.alerts.raise_system(
                server.id,
                AlertKind.COLLECTOR_DISABLED,
                definition.name,
                {"message": f"{definition.name} disabled: {disable_reason}", "collector": definition.name},
                now,
            )
            return

        if outcome.status == RunStatus.SUCCESS:
            await self.alerts.clear_system(server.id, AlertKind.COLLECTOR_FAILURE, definition.name, now)
            await self.alerts.clear_system(server.id, AlertKind.COLLECTOR_DISABLED, definition.name, now)
            return

        threshold = self.config.scheduler.persistent_failure_threshold
        if state is not None and state.consecutive_failures >= threshold:
            await self.alerts.raise_system(
                server.id,
                AlertKind.COLLECTOR_FAILURE,
                definition.name,
                {
                    "message": f"{definition.name} failed {state.consecutive_failures} times in a row",
                    "collector": definition.name,
                    "last_error": outcome.error,
                },
                now,
            )

    async def _record_connectivity(self, server: ServerHandle, outcomes: list[RunOutcome]) -> RawSample | None:
        """
        Derive the server's reachability from this cycle.

        Online if anything succeeded; offline if every attempted run failed to
        connect; no reading otherwise (timeouts and skips say nothing).
        """
        attempted = [o for o in outcomes if o.status is not None]
        if any(o.status == RunStatus.SUCCESS for o in attempted):
            online = 1.0
        elif attempted and all(o.connectivity_failed for o in attempted):
            online = 0.0
        else:
            return None

        sample = RawSample(
            server_id=server.id,
            category=CONNECTIVITY_CATEGORY,
            collected_at=self.now(),
            counters={"online": online},
        )
        try:
            await self.store.append(
                [
                    RawSampleRow(
                        server_id=server.id,
                        category=CONNECTIVITY_CATEGORY,
                        collection_time=sample.collected_at,
                        counters={"online": online},
                    )
                ]
            )
        except StoreWriteError as e:
            logger.error("[%s] failed to store connectivity reading: %s", server.name, e.reason)
        return sample

    async def _check_hung(self, now: datetime) -> None:
        """Report Running states past hung_multiplier x interval. Never cancels them."""
        try:
            hung = await self.schedule.find_hung(now)
        except SQLAlchemyError as e:
            logger.error("Hung collector check failed: %s", e)
            return

        hung_pairs = set()
        for state in hung:
            hung_pairs.add((state.server_id, state.collector))
            event = await self.alerts.raise_system(
                state.server_id,
                AlertKind.HUNG_COLLECTOR,
                state.collector,
                {
                    "message": f"{state.collector} running since {state.running_since.isoformat()}",
                    "collector": state.collector,
                    "running_since": state.running_since.isoformat(),
                },
                now,
            )
            if event is not None:
                logger.error(
                    "Collector %s on server %s hung since %s",
                    state.collector,
                    state.server_id,
                    state.running_since.isoformat(),
                )
                await self.events.publish(
                    HungCollectorDetected(state.server_id, state.collector, state.running_since, now)
                )

        for window in self.alerts.evaluator.active_windows(AlertKind.HUNG_COLLECTOR):
            bucket = window.dedup_key.rsplit(":", 1)[-1]
            if (window.server_id, bucket) not in hung_pairs:
                await self.alerts.clear_system(window.server_id, AlertKind.HUNG_COLLECTOR, bucket, now)
