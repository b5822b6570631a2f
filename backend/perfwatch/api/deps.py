from typing import Annotated

from fastapi import Depends, Request

from perfwatch.runtime import Runtime
from perfwatch.services.monitor_config import ConfigService
from perfwatch.services.orchestrator import CollectionOrchestrator
from perfwatch.services.servers import ServerService
from perfwatch.services.store import LocalStore


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]


def get_store(runtime: RuntimeDep) -> LocalStore:
    return runtime.store


def get_config_service(runtime: RuntimeDep) -> ConfigService:
    return runtime.config


def get_server_service(runtime: RuntimeDep) -> ServerService:
    return runtime.servers


def get_orchestrator(runtime: RuntimeDep) -> CollectionOrchestrator:
    return runtime.orchestrator


StoreDep = Annotated[LocalStore, Depends(get_store)]
ConfigDep = Annotated[ConfigService, Depends(get_config_service)]
ServersDep = Annotated[ServerService, Depends(get_server_service)]
OrchestratorDep = Annotated[CollectionOrchestrator, Depends(get_orchestrator)]
