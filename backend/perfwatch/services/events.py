"""
In-process event bus.

Components publish typed event objects; interested components register a
handler for an event class and get back a callable that removes it again.
Handlers may be plain functions or coroutines. A failing handler is logged
and does not stop delivery to the others.
"""

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")
Handler = Callable[[Any], Awaitable[None] | None]


@dataclass(frozen=True)
class ConfigChanged:
    old: Any
    new: Any


@dataclass(frozen=True)
class CollectionRunCompleted:
    server_id: int
    collector: str
    status: str
    started_at: datetime
    duration_ms: int
    rows_collected: int = 0
    error_message: str | None = None


@dataclass(frozen=True)
class StoreWriteFailed:
    server_id: int
    collector: str
    error: str
    occurred_at: datetime


@dataclass(frozen=True)
class CollectorDisabled:
    server_id: int
    collector: str
    reason: str
    occurred_at: datetime


@dataclass(frozen=True)
class HungCollectorDetected:
    server_id: int
    collector: str
    running_since: datetime
    detected_at: datetime


@dataclass(frozen=True)
class AlertRaised:
    event_id: int | None
    server_id: int
    kind: str
    dedup_key: str
    details: dict = field(default_factory=dict)


class EventBus:
    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None] | None]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass  # already removed

        return unsubscribe

    def subscriber_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, ()))

    async def publish(self, event: object) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Event handler %r failed for %s: %s", handler, type(event).__name__, e)
