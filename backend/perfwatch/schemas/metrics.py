from datetime import datetime

from pydantic import BaseModel


class MetricDeltaResponse(BaseModel):
    id: int
    server_id: int
    category: str
    counter_name: str
    interval_start: datetime | None
    interval_end: datetime
    delta_value: float
    is_valid: bool
    rate_per_second: float | None = None

    class Config:
        from_attributes = True


class RawSampleResponse(BaseModel):
    id: int
    server_id: int
    category: str
    collection_time: datetime
    counters: dict[str, float]

    class Config:
        from_attributes = True


class CollectionRunResponse(BaseModel):
    id: int
    server_id: int
    collector: str
    started_at: datetime
    ended_at: datetime
    status: str
    duration_ms: int
    rows_collected: int
    error_message: str | None = None

    class Config:
        from_attributes = True
