"""Alert views."""

from datetime import datetime

from fastapi import APIRouter, Query

from perfwatch.api.deps import StoreDep
from perfwatch.schemas.alert import AlertEventResponse, RunningAlertResponse

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/active", response_model=list[RunningAlertResponse])
async def running_alerts(store: StoreDep, server_id: int | None = Query(None)):
    return await store.running_alerts(server_id)


@router.get("/history", response_model=list[AlertEventResponse])
async def alert_history(
    store: StoreDep,
    server_id: int | None = Query(None),
    kind: str | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    limit: int = Query(500, ge=1, le=5000),
):
    filters = {}
    if server_id is not None:
        filters["server_id"] = server_id
    if kind:
        filters["kind"] = kind
    return await store.query("alert_events", filters, start, end, limit)
