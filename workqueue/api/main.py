"""
FastAPI application entry point.

Serve with ``workqueue-api`` or ``uvicorn workqueue.api.main:create_app --factory``.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workqueue import __version__
from workqueue.api.routes import auth_router, health_router, queues_router
from workqueue.config import Settings, get_settings
from workqueue.constants import ADMIN_PREFIX
from workqueue.engine import QueueEngine
from workqueue.errors import (
    HandlerRegistrationError,
    InvalidJobOptionsError,
    JobNotFoundError,
    PersistenceError,
    QueueNotFoundError,
    RepeatableNotFoundError,
)
from workqueue.observability.logging import setup_logging
from workqueue.observability.tracing import instrument_fastapi, setup_tracing
from workqueue.types.api import ErrorResponse

logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine errors to HTTP responses."""

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error(f"Job store unavailable: {exc}", extra={"path": request.url.path})
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "store_unavailable", str(exc))

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "job_not_found", str(exc))

    @app.exception_handler(QueueNotFoundError)
    async def queue_not_found_handler(request: Request, exc: QueueNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "queue_not_found", str(exc))

    @app.exception_handler(RepeatableNotFoundError)
    async def repeatable_not_found_handler(
        request: Request, exc: RepeatableNotFoundError
    ) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "repeatable_not_found", str(exc))

    @app.exception_handler(InvalidJobOptionsError)
    async def invalid_options_handler(
        request: Request, exc: InvalidJobOptionsError
    ) -> JSONResponse:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_options", str(exc))

    @app.exception_handler(HandlerRegistrationError)
    async def registration_error_handler(
        request: Request, exc: HandlerRegistrationError
    ) -> JSONResponse:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_options", str(exc))


def create_app(
    engine: QueueEngine | None = None,
    settings: Settings | None = None,
    manage_engine: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Engine to administer. Built from settings when omitted.
        settings: Application settings.
        manage_engine: Run ``engine.init()``/``engine.shutdown()`` in the
            app lifespan.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = settings or (engine.settings if engine is not None else get_settings())
    if engine is None:
        engine = QueueEngine(settings=settings, run_scheduler=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        setup_logging(settings)
        setup_tracing(settings)
        if manage_engine:
            await engine.init()

        logger.info("Application started")

        yield

        if manage_engine:
            await engine.shutdown()
        logger.info("Application shutdown")

    app = FastAPI(
        title="Work Queue Admin API",
        description="Administration and health for the background job engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.engine = engine
    app.state.settings = settings

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_admin_requests(request: Request, call_next):
        """Count admin API requests by route template and status."""
        response = await call_next(request)
        if request.url.path.startswith(ADMIN_PREFIX):
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)
            engine.metrics.record_api_request(request.method, endpoint, response.status_code)
        return response

    register_exception_handlers(app)

    # Include routers
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(queues_router)

    # Instrument with OpenTelemetry
    if settings.otel_enabled:
        instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app(settings=settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
