from pydantic import BaseModel, Field


class CollectorUpdate(BaseModel):
    interval_minutes: int | None = None
    enabled: bool | None = None


class AlertRuleUpdate(BaseModel):
    enabled: bool | None = None
    threshold: float | None = None
    multiplier: float | None = None


class RetentionUpdate(BaseModel):
    max_age_days: int


class SchedulerUpdate(BaseModel):
    tick_seconds: int | None = None
    max_concurrency: int | None = None
    run_timeout_seconds: float | None = None
    hung_multiplier: float | None = None
    persistent_failure_threshold: int | None = None


class AlertingUpdate(BaseModel):
    notify_cooldown_minutes: int | None = Field(None, ge=0)
    emit_resolved: bool | None = None
