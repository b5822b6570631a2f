from perfwatch.models.alert import (
    AlertDedupState,
    AlertEvent,
    AlertKind,
    NotificationStatus,
    make_dedup_key,
)
from perfwatch.models.collection_run import CollectionRun, RunStatus
from perfwatch.models.metrics import MetricDelta, RawSampleRow
from perfwatch.models.schedule_state import ScheduleState, ScheduleStatus
from perfwatch.models.server import ServerTarget
from perfwatch.models.setting import Setting

# Tables that carry a time column and can be queried by range, archived and purged
TIME_SERIES_MODELS = {
    RawSampleRow.__tablename__: RawSampleRow,
    MetricDelta.__tablename__: MetricDelta,
    CollectionRun.__tablename__: CollectionRun,
    AlertEvent.__tablename__: AlertEvent,
}

__all__ = [
    "AlertDedupState",
    "AlertEvent",
    "AlertKind",
    "CollectionRun",
    "MetricDelta",
    "NotificationStatus",
    "RawSampleRow",
    "RunStatus",
    "ScheduleState",
    "ScheduleStatus",
    "ServerTarget",
    "Setting",
    "TIME_SERIES_MODELS",
    "make_dedup_key",
]
