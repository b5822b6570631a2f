from perfwatch.schemas.alert import AlertEventResponse, RunningAlertResponse
from perfwatch.schemas.config import (
    AlertingUpdate,
    AlertRuleUpdate,
    CollectorUpdate,
    RetentionUpdate,
    SchedulerUpdate,
)
from perfwatch.schemas.health import (
    ArchiveRunResponse,
    CollectionStatusResponse,
    CollectorHealthResponse,
    LivenessResponse,
    ServerPollStatus,
)
from perfwatch.schemas.metrics import CollectionRunResponse, MetricDeltaResponse, RawSampleResponse
from perfwatch.schemas.server import (
    OnDemandRunRequest,
    OnDemandRunResponse,
    ServerCreate,
    ServerResponse,
    ServerUpdate,
)

__all__ = [
    "AlertEventResponse",
    "AlertingUpdate",
    "AlertRuleUpdate",
    "ArchiveRunResponse",
    "CollectionRunResponse",
    "CollectionStatusResponse",
    "CollectorHealthResponse",
    "CollectorUpdate",
    "LivenessResponse",
    "MetricDeltaResponse",
    "OnDemandRunRequest",
    "OnDemandRunResponse",
    "RawSampleResponse",
    "RetentionUpdate",
    "RunningAlertResponse",
    "SchedulerUpdate",
    "ServerCreate",
    "ServerPollStatus",
    "ServerResponse",
    "ServerUpdate",
]
