"""Server target management."""

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, nullcontext
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select

from perfwatch.core.exceptions import NotFoundError, ValidationError
from perfwatch.models import ServerTarget
from perfwatch.services.alerts import AlertService
from perfwatch.services.delta import DeltaEngine
from perfwatch.services.schedule import ScheduleManager
from perfwatch.services.store import LocalStore

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "connection_ref", "enabled", "favorite", "description")


class ServerService:
    def __init__(
        self,
        store: LocalStore,
        delta_engine: DeltaEngine | None = None,
        alerts: AlertService | None = None,
    ):
        self.store = store
        self.delta_engine = delta_engine
        self.alerts = alerts
        # Set by the runtime to the orchestrator's per-server cycle lock
        self.cycle_guard: Callable[[int], AbstractAsyncContextManager] | None = None

    async def list(self, include_deleted: bool = False, enabled_only: bool = False) -> list[ServerTarget]:
        stmt = select(ServerTarget).order_by(ServerTarget.name)
        if not include_deleted:
            stmt = stmt.where(ServerTarget.deleted_at.is_(None))
        if enabled_only:
            stmt = stmt.where(ServerTarget.enabled.is_(True))
        async with self.store.reader() as session:
            return list((await session.execute(stmt)).scalars())

    async def get(self, server_id: int, include_deleted: bool = False) -> ServerTarget:
        async with self.store.reader() as session:
            server = await session.get(ServerTarget, server_id)
        if server is None or (server.is_deleted and not include_deleted):
            raise NotFoundError(f"Server {server_id} not found")
        return server

    async def create(
        self,
        name: str,
        connection_ref: str,
        enabled: bool = True,
        favorite: bool = False,
        description: str | None = None,
    ) -> ServerTarget:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Server name is required")
        if not connection_ref:
            raise ValidationError("Connection reference is required")

        async with self.store.writer() as session:
            await self._ensure_unique(session, name)
            server = ServerTarget(
                name=name,
                connection_ref=connection_ref,
                enabled=enabled,
                favorite=favorite,
                description=description,
            )
            session.add(server)
        logger.info("Added server %s (id %s)", server.name, server.id)
        return server

    async def update(self, server_id: int, **changes: Any) -> ServerTarget:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        async with self.store.writer() as session:
            server = await session.get(ServerTarget, server_id)
            if server is None or server.is_deleted:
                raise NotFoundError(f"Server {server_id} not found")
            if "name" in changes:
                name = (changes["name"] or "").strip()
                if not name:
                    raise ValidationError("Server name is required")
                if name != server.name:
                    await self._ensure_unique(session, name)
                changes["name"] = name
            for field, value in changes.items():
                setattr(server, field, value)
        return server

    async def delete(self, server_id: int, purge: bool = False) -> None:
        """
        Logically delete a server.

        Its schedule state is deactivated and its cached baselines and open
        alert windows are dropped. History stays queryable unless purge is
        set, in which case every row belonging to the server is removed.

        A collection cycle already running for the server is allowed to
        finish first so it cannot restore a baseline or an alert window
        after they have been dropped.
        """
        guard = self.cycle_guard(server_id) if self.cycle_guard is not None else nullcontext()
        async with guard:
            now = datetime.now(UTC)
            async with self.store.writer() as session:
                server = await session.get(ServerTarget, server_id)
                if server is None:
                    raise NotFoundError(f"Server {server_id} not found")

                if purge:
                    deleted = await self.store.purge_server_history(session, server_id)
                    await session.delete(server)
                    logger.info("Purged server %s and %d history row(s)", server_id, deleted)
                else:
                    server.deleted_at = now
                    server.enabled = False
                    await ScheduleManager.deactivate_server(session, server_id)
                    logger.info("Deleted server %s (history retained)", server_id)

            if self.delta_engine is not None:
                self.delta_engine.evict_server(server_id)
            if self.alerts is not None:
                await self.alerts.close_server(server_id, now)

    @staticmethod
    async def _ensure_unique(session, name: str) -> None:
        existing = await session.execute(
            select(func.count()).select_from(ServerTarget).where(ServerTarget.name == name)
        )
        if existing.scalar():
            raise ValidationError(f"A server named '{name}' already exists")
