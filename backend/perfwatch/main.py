import logging
import uuid
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request

from perfwatch.api.alerts import router as alerts_router
from perfwatch.api.archive import router as archive_router
from perfwatch.api.collection import router as collection_router
from perfwatch.api.config import router as config_router
from perfwatch.api.health import router as health_router
from perfwatch.api.metrics import router as metrics_router
from perfwatch.api.servers import router as servers_router
from perfwatch.core.config import APP_VERSION, settings
from perfwatch.core.errors import register_exception_handlers
from perfwatch.core.logging import setup_logging
from perfwatch.runtime import build_runtime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    setup_logging()

    runtime = getattr(app.state, "runtime", None) or build_runtime()
    app.state.runtime = runtime

    logger.info("Starting %s %s", settings.APP_NAME, APP_VERSION)
    await runtime.start()

    yield

    logger.info("Stopping collection")
    await runtime.stop()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        redirect_slashes=False,
    )

    register_exception_handlers(app)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add unique request ID for tracking and debugging."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(servers_router)
    app.include_router(config_router)
    app.include_router(collection_router)
    app.include_router(metrics_router)
    app.include_router(health_router)
    app.include_router(alerts_router)
    app.include_router(archive_router)
    return app


app = create_app()


def run() -> None:
    """Entry point for the perfwatch-api console script."""
    uvicorn.run(
        "perfwatch.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,
    )
