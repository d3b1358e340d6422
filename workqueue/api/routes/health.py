"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import Response

from workqueue import __version__
from workqueue.api.deps import Engine
from workqueue.clock import utcnow
from workqueue.types.api import ServiceHealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=ServiceHealthResponse,
    summary="Health check",
    description="Check the health of the API and job store connection.",
)
async def health_check(engine: Engine) -> ServiceHealthResponse:
    """
    Perform a health check.

    Checks job store connectivity and returns service status.
    """
    store_status = "healthy" if await engine.store.ping() else "unhealthy"

    return ServiceHealthResponse(
        status="healthy" if store_status == "healthy" else "degraded",
        version=__version__,
        store=store_status,
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(engine: Engine) -> dict:
    """
    Kubernetes readiness check endpoint.

    Returns:
        Ready status.
    """
    return {"ready": await engine.store.ping()}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """
    Kubernetes liveness check endpoint.

    Returns:
        Alive status.
    """
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(engine: Engine) -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = engine.metrics
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
