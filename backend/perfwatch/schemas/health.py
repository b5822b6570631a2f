from datetime import datetime

from pydantic import BaseModel


class LivenessResponse(BaseModel):
    status: str
    version: str
    schema_version: int | None
    paused: bool
    in_flight: int
    pending_notifications: int


class CollectorHealthResponse(BaseModel):
    server_id: int
    server_name: str
    collector: str
    status: str
    last_status: str | None = None
    last_run_at: datetime | None = None
    next_due_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_duration_ms: int | None = None
    consecutive_failures: int = 0
    disabled_reason: str | None = None
    hung: bool = False
    runs_24h: int = 0
    failures_24h: int = 0
    avg_duration_ms_24h: float | None = None


class ServerPollStatus(BaseModel):
    server_id: int
    name: str
    state: str


class CollectionStatusResponse(BaseModel):
    paused: bool
    in_flight: int
    servers: list[ServerPollStatus]
    jobs: list[dict]


class ArchiveRunResponse(BaseModel):
    table: str
    cutoff: datetime
    rows_archived: int
    files: list[str]
    skipped: bool
