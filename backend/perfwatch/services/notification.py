"""
Notification delivery.

A notifier sends one AlertEvent and reports (ok, reason); it never raises for
delivery problems. The dispatcher sends in background tasks so a slow or
dead endpoint never holds up a collection cycle, retries a failed send once,
and records the outcome on the event row.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC
from typing import TYPE_CHECKING, Protocol

import httpx
from sqlalchemy import update

from perfwatch.core.config import settings
from perfwatch.models import AlertEvent, AlertKind, NotificationStatus

if TYPE_CHECKING:
    from perfwatch.services.store import LocalStore

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2  # first try plus a single retry


@dataclass(frozen=True)
class NotifyResult:
    ok: bool
    reason: str | None = None


class Notifier(Protocol):
    async def send(self, event: AlertEvent) -> NotifyResult: ...


def build_payload(event: AlertEvent) -> dict:
    triggered_at = event.triggered_at.astimezone(UTC).isoformat() if event.triggered_at else None
    return {
        "event_id": event.id,
        "server_id": event.server_id,
        "kind": AlertKind(event.kind).value,
        "resolved": bool(event.resolved),
        "triggered_at": triggered_at,
        "dedup_key": event.dedup_key,
        "summary": event.summary,
        "details": event.details or {},
    }


class WebhookNotifier:
    """POST the alert as JSON to a single webhook endpoint."""

    def __init__(
        self,
        url: str,
        header_name: str | None = None,
        header_value: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.header_name = header_name
        self.header_value = header_value
        self.timeout = timeout
        self._transport = transport

    async def send(self, event: AlertEvent) -> NotifyResult:
        headers = {"Content-Type": "application/json"}
        if self.header_value:
            headers[self.header_name or "Authorization"] = self.header_value

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=build_payload(event),
                    headers=headers,
                    timeout=self.timeout,
                )
                if response.is_success:
                    return NotifyResult(True)
                return NotifyResult(False, f"HTTP {response.status_code}")
        except httpx.TimeoutException:
            return NotifyResult(False, "Timeout")
        except httpx.HTTPError as e:
            logger.error("Failed to send alert %s to webhook: %s", event.dedup_key, e)
            return NotifyResult(False, str(e))


class LogNotifier:
    """Fallback when no webhook is configured: the alert only goes to the log."""

    async def send(self, event: AlertEvent) -> NotifyResult:
        logger.warning("ALERT %s", event.summary)
        return NotifyResult(True)


def notifier_from_settings() -> Notifier:
    if settings.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(
            settings.NOTIFY_WEBHOOK_URL,
            header_name=settings.NOTIFY_WEBHOOK_HEADER_NAME,
            header_value=settings.NOTIFY_WEBHOOK_HEADER_VALUE,
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )
    return LogNotifier()


class NotificationDispatcher:
    def __init__(
        self,
        notifier: Notifier,
        store: "LocalStore | None" = None,
        retry_delay_seconds: float | None = None,
    ):
        self.notifier = notifier
        self.store = store
        self.retry_delay_seconds = (
            settings.NOTIFY_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        )
        self._tasks: set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, event: AlertEvent) -> asyncio.Task:
        """Deliver in the background; returns the task for callers that want to wait."""
        task = asyncio.create_task(self.deliver(event), name=f"notify:{event.dedup_key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def deliver(self, event: AlertEvent) -> NotifyResult:
        result = NotifyResult(False, "not attempted")
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                result = await self.notifier.send(event)
            except Exception as e:
                result = NotifyResult(False, str(e))
            if result.ok:
                break
            logger.warning(
                "Notification for %s failed (attempt %d/%d): %s",
                event.dedup_key,
                attempt,
                MAX_ATTEMPTS,
                result.reason,
            )
            if attempt < MAX_ATTEMPTS and self.retry_delay_seconds:
                await asyncio.sleep(self.retry_delay_seconds)

        if result.ok:
            self.sent += 1
            await self._record(event, NotificationStatus.SENT, None)
        else:
            self.failed += 1
            logger.error("Giving up on notification for %s: %s", event.dedup_key, result.reason)
            await self._record(event, NotificationStatus.FAILED, result.reason)
        return result

    async def _record(self, event: AlertEvent, status: NotificationStatus, error: str | None) -> None:
        event.notification_status = status
        event.notification_error = error
        if self.store is None or event.id is None:
            return
        try:
            async with self.store.writer() as session:
                await session.execute(
                    update(AlertEvent)
                    .where(AlertEvent.id == event.id)
                    .values(notification_status=status.value, notification_error=error)
                )
        except Exception as e:
            logger.error("Failed to record notification status for event %s: %s", event.id, e)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight notifications, cancelling what is left after timeout."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d undelivered notification(s) at shutdown", len(pending))
