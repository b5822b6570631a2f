"""Collection control: pause, resume and status."""

from fastapi import APIRouter, HTTPException, status

from perfwatch.api.deps import OrchestratorDep, RuntimeDep
from perfwatch.schemas.health import CollectionStatusResponse, ServerPollStatus

router = APIRouter(prefix="/collection", tags=["collection"])


@router.post("/pause", response_model=CollectionStatusResponse)
async def pause_collection(runtime: RuntimeDep):
    runtime.orchestrator.pause()
    return await _status(runtime)


@router.post("/resume", response_model=CollectionStatusResponse)
async def resume_collection(runtime: RuntimeDep):
    runtime.orchestrator.resume()
    return await _status(runtime)


@router.get("/status", response_model=CollectionStatusResponse)
async def collection_status(runtime: RuntimeDep):
    return await _status(runtime)


@router.post("/schedule/{server_id}/{collector}/reenable", status_code=status.HTTP_204_NO_CONTENT)
async def reenable_collector(server_id: int, collector: str, runtime: RuntimeDep, orchestrator: OrchestratorDep):
    """Clear a permission-disabled collector after access has been granted."""
    await runtime.servers.get(server_id)
    orchestrator.config.collector(collector)
    if not await runtime.schedule.reenable(server_id, collector):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Collector {collector} is not disabled for server {server_id}",
        )


async def _status(runtime) -> CollectionStatusResponse:
    orchestrator = runtime.orchestrator
    servers = await runtime.servers.list()
    return CollectionStatusResponse(
        paused=orchestrator.paused,
        in_flight=orchestrator.in_flight,
        servers=[
            ServerPollStatus(server_id=s.id, name=s.name, state=orchestrator.server_state(s.id).value)
            for s in servers
        ],
        jobs=runtime.scheduler.get_jobs(),
    )
