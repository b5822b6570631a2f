"""Liveness and collector health."""

from datetime import UTC, datetime

from fastapi import APIRouter, Query

from perfwatch.api.deps import RuntimeDep
from perfwatch.core.config import APP_VERSION
from perfwatch.schemas.health import CollectorHealthResponse, LivenessResponse

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=LivenessResponse)
async def liveness(runtime: RuntimeDep):
    return LivenessResponse(
        status="ok",
        version=APP_VERSION,
        schema_version=runtime.store.schema_version,
        paused=runtime.orchestrator.paused,
        in_flight=runtime.orchestrator.in_flight,
        pending_notifications=runtime.dispatcher.pending,
    )


@router.get("/collectors", response_model=list[CollectorHealthResponse])
async def collector_health(
    runtime: RuntimeDep,
    server_id: int | None = Query(None),
    status: str | None = Query(None, description="Filter by status, e.g. error or hung"),
):
    config = runtime.config.current
    view = await runtime.store.collector_health(
        datetime.now(UTC),
        {name: c.interval_minutes for name, c in config.collectors.items()},
        config.scheduler.hung_multiplier,
    )
    if server_id is not None:
        view = [row for row in view if row["server_id"] == server_id]
    if status:
        view = [row for row in view if row["status"] == status]
    return view
