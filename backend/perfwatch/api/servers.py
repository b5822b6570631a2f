"""Server target endpoints."""

import logging

from fastapi import APIRouter, Query, status

from perfwatch.api.deps import OrchestratorDep, ServersDep
from perfwatch.schemas.server import (
    OnDemandRunRequest,
    OnDemandRunResponse,
    ServerCreate,
    ServerResponse,
    ServerUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/servers", tags=["servers"])


@router.get("", response_model=list[ServerResponse])
async def list_servers(
    servers: ServersDep,
    include_deleted: bool = Query(False),
):
    return await servers.list(include_deleted=include_deleted)


@router.post("", response_model=ServerResponse, status_code=status.HTTP_201_CREATED)
async def create_server(data: ServerCreate, servers: ServersDep):
    return await servers.create(**data.model_dump())


@router.get("/{server_id}", response_model=ServerResponse)
async def get_server(server_id: int, servers: ServersDep):
    return await servers.get(server_id)


@router.patch("/{server_id}", response_model=ServerResponse)
async def update_server(server_id: int, data: ServerUpdate, servers: ServersDep):
    return await servers.update(server_id, **data.model_dump(exclude_unset=True))


@router.delete("/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    server_id: int,
    servers: ServersDep,
    purge: bool = Query(False, description="Also delete all collected history"),
):
    await servers.delete(server_id, purge=purge)


@router.post("/{server_id}/run", response_model=OnDemandRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_server_now(
    server_id: int,
    orchestrator: OrchestratorDep,
    data: OnDemandRunRequest | None = None,
):
    """Queue an immediate collection cycle. Works while collection is paused."""
    collectors = data.collectors if data else []
    await orchestrator.run_server_now(server_id, collectors or None)
    names = collectors or [c.name for c in orchestrator.config.enabled_collectors()]
    return OnDemandRunResponse(server_id=server_id, collectors=names)
