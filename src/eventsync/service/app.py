"""
HTTP surface: health, status and metrics endpoints.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from ..logger import get_logger, set_correlation_id
from .runtime import EventSyncService, configure_logging

logger = get_logger(__name__)


def create_app(
    service: EventSyncService | None = None,
    manage_lifecycle: bool = True,
    setup_logs: bool = False,
) -> FastAPI:
    """
    Create the FastAPI application for an ``EventSyncService``.

    Args:
        service: Service to expose (built from the global config if omitted)
        manage_lifecycle: Start and stop the service with the application
        setup_logs: Configure structured logging from the service config
    """
    service = service or EventSyncService()
    if setup_logs:
        configure_logging(service.config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.stop()

    app = FastAPI(
        title=service.config.service.name,
        version=service.config.service.version,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.service = service

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.get("/health")
    async def health_endpoint():
        """Transport round trip plus cache ping; 503 when the transport is down."""
        result = await service.check_health()
        status_code = 200 if result["healthy"] else 503
        return JSONResponse(content=result, status_code=status_code)

    @app.get("/health/live")
    async def liveness_endpoint():
        return {"status": "alive", "service": service.config.service.name}

    @app.get("/status")
    async def status_endpoint():
        return service.status()

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        return Response(content=service.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    logger.debug("Application created", service=service.config.service.name)
    return app
