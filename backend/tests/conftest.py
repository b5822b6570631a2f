"""Pytest fixtures for perfwatch tests."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from perfwatch.collectors.base import RawSample, ServerHandle
from perfwatch.core.exceptions import CollectorError
from perfwatch.runtime import Runtime, build_runtime
from perfwatch.services.events import EventBus
from perfwatch.services.monitor_config import ConfigService
from perfwatch.services.notification import NotifyResult
from perfwatch.services.store import LocalStore

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock injected wherever the code asks for 'now'."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedAdapter:
    """
    Collector adapter driven by the test.

    Each category maps to a list of steps consumed one per call. A step is a
    counters dict, an exception instance to raise, or a coroutine function
    awaited in place of collecting. With no script left, the category's
    default counters are returned.
    """

    def __init__(self, clock: FakeClock, defaults: dict[str, dict[str, float]] | None = None):
        self.clock = clock
        self.defaults = defaults or {}
        self.scripts: dict[str, list] = {}
        self.calls: list[tuple[int, str]] = []

    def script(self, category: str, *steps) -> None:
        self.scripts.setdefault(category, []).extend(steps)

    async def collect(self, server: ServerHandle, category: str) -> RawSample:
        self.calls.append((server.id, category))
        steps = self.scripts.get(category)
        step = steps.pop(0) if steps else self.defaults.get(category, {})
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step = await step()
        if not isinstance(step, dict):
            raise CollectorError(f"bad script step for {category}: {step!r}")
        return RawSample(server_id=server.id, category=category, collected_at=self.clock(), counters=step)

    def calls_for(self, category: str) -> int:
        return sum(1 for _, c in self.calls if c == category)


class RecordingNotifier:
    def __init__(self, results: list[NotifyResult] | None = None):
        self.results = list(results or [])
        self.sent = []

    async def send(self, event) -> NotifyResult:
        self.sent.append(event)
        if self.results:
            return self.results.pop(0)
        return NotifyResult(True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'perfwatch.db'}"


@pytest_asyncio.fixture(scope="function")
async def store(database_url, tmp_path) -> AsyncGenerator[LocalStore, None]:
    """A migrated store on a throwaway SQLite file."""
    store = LocalStore(database_url, archive_dir=tmp_path / "archive", archive_batch_size=100)
    await store.init()
    yield store
    await store.dispose()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def config_service(store, events) -> ConfigService:
    service = ConfigService(store, events)
    await service.load()
    return service


@pytest.fixture
def adapter(clock) -> ScriptedAdapter:
    return ScriptedAdapter(clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def runtime(database_url, tmp_path, adapter, notifier, clock) -> AsyncGenerator[Runtime, None]:
    """Fully wired runtime without the APScheduler jobs; tests drive tick() directly."""
    store = LocalStore(database_url, archive_dir=tmp_path / "archive", archive_batch_size=100)
    runtime = build_runtime(store=store, adapter=adapter, notifier=notifier, clock=clock)
    runtime.dispatcher.retry_delay_seconds = 0
    await runtime.start(schedule_jobs=False)
    yield runtime
    await runtime.orchestrator.stop(timeout=1)
    await runtime.stop()


@pytest_asyncio.fixture
async def client(runtime) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app, sharing the runtime fixture."""
    from perfwatch.main import create_app

    app = create_app()
    app.state.runtime = runtime
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def only_collectors(config_service: ConfigService, *names: str, interval: int = 1) -> None:
    """Disable every collector except the given ones."""
    for name in config_service.current.collectors:
        enabled = name in names
        await config_service.update_collector(
            name, enabled=enabled, interval_minutes=interval if enabled else None
        )
