from datetime import datetime
from typing import Any

from pydantic import BaseModel


class AlertEventResponse(BaseModel):
    id: int
    server_id: int
    kind: str
    triggered_at: datetime
    dedup_key: str
    details: dict[str, Any]
    resolved: bool
    notification_status: str
    notification_error: str | None = None

    class Config:
        from_attributes = True


class RunningAlertResponse(BaseModel):
    dedup_key: str
    server_id: int
    kind: str
    first_seen_at: datetime
    last_seen_at: datetime
    event_id: int | None = None
    details: dict[str, Any]
    notification_status: str | None = None
