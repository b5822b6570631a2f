"""Runtime monitor configuration endpoints."""

from fastapi import APIRouter, status

from perfwatch.api.deps import ConfigDep, RuntimeDep
from perfwatch.schemas.config import (
    AlertingUpdate,
    AlertRuleUpdate,
    CollectorUpdate,
    RetentionUpdate,
    SchedulerUpdate,
)
from perfwatch.services.monitor_config import (
    AlertingConfig,
    AlertRule,
    CollectorDefinition,
    MonitorConfig,
    RetentionPolicy,
    SchedulerConfig,
)

router = APIRouter(prefix="/config", tags=["config"])


@router.get("", response_model=MonitorConfig)
async def get_config(config: ConfigDep):
    return config.current


@router.patch("/collectors/{name}", response_model=CollectorDefinition)
async def update_collector(name: str, data: CollectorUpdate, runtime: RuntimeDep):
    definition = runtime.config.current.collector(name)
    if data.interval_minutes is not None:
        definition = await runtime.schedule.update_interval(name, data.interval_minutes)
    if data.enabled is not None:
        definition = await runtime.schedule.set_enabled(name, data.enabled)
    return definition


@router.patch("/alert-rules/{kind}", response_model=AlertRule)
async def update_alert_rule(kind: str, data: AlertRuleUpdate, config: ConfigDep):
    return await config.update_alert_rule(kind, **data.model_dump(exclude_unset=True))


@router.patch("/retention/{table}", response_model=RetentionPolicy)
async def update_retention(table: str, data: RetentionUpdate, config: ConfigDep):
    return await config.update_retention(table, data.max_age_days)


@router.patch("/scheduler", response_model=SchedulerConfig)
async def update_scheduler(data: SchedulerUpdate, config: ConfigDep):
    return await config.update_scheduler(**data.model_dump(exclude_none=True))


@router.patch("/alerting", response_model=AlertingConfig)
async def update_alerting(data: AlertingUpdate, config: ConfigDep):
    return await config.update_alerting(**data.model_dump(exclude_none=True))


@router.put("/servers/{server_id}/silence", response_model=AlertingConfig)
async def silence_server(server_id: int, runtime: RuntimeDep):
    await runtime.servers.get(server_id)
    return await runtime.config.set_server_silenced(server_id, True)


@router.delete("/servers/{server_id}/silence", status_code=status.HTTP_204_NO_CONTENT)
async def unsilence_server(server_id: int, config: ConfigDep):
    await config.set_server_silenced(server_id, False)
