"""Time-range reads over collected data."""

from datetime import datetime

from fastapi import APIRouter, Query

from perfwatch.api.deps import StoreDep
from perfwatch.schemas.metrics import CollectionRunResponse, MetricDeltaResponse, RawSampleResponse

router = APIRouter(tags=["metrics"])

MAX_ROWS = 10000


@router.get("/metrics/{server_id}/{category}", response_model=list[MetricDeltaResponse])
async def get_metric_series(
    server_id: int,
    category: str,
    store: StoreDep,
    counter: str | None = Query(None, description="Counter name, e.g. CXPACKET.wait_time_ms"),
    start: datetime | None = Query(None, description="Inclusive lower bound"),
    end: datetime | None = Query(None, description="Exclusive upper bound"),
    valid_only: bool = Query(False, description="Drop rows flagged as counter resets"),
):
    return await store.metric_series(
        server_id, category, counter, start, end, valid_only=valid_only, limit=MAX_ROWS
    )


@router.get("/samples/{server_id}/{category}", response_model=list[RawSampleResponse])
async def get_sample_series(
    server_id: int,
    category: str,
    store: StoreDep,
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
):
    return await store.sample_series(server_id, category, start, end, limit=MAX_ROWS)


@router.get("/runs/{server_id}", response_model=list[CollectionRunResponse])
async def get_collection_runs(
    server_id: int,
    store: StoreDep,
    collector: str | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    limit: int = Query(500, ge=1, le=MAX_ROWS),
):
    filters = {"server_id": server_id}
    if collector:
        filters["collector"] = collector
    return await store.query("collection_runs", filters, start, end, limit)
