"""
Queue administration routes.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Query, Response, status

from workqueue.api.auth import CurrentOperator
from workqueue.api.deps import Admin, Engine
from workqueue.constants import ADMIN_PREFIX, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, JobState
from workqueue.types.api import (
    CleanQueueRequest,
    CleanQueueResponse,
    HealthIssueResponse,
    JobActionResponse,
    JobListResponse,
    JobResponse,
    QueueActionResponse,
    QueueHealthResponse,
    RepeatableJobResponse,
    RepeatableListResponse,
    RetryFailedRequest,
    RetryFailedResponse,
    StatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=ADMIN_PREFIX, tags=["Queues"])

DEFAULT_RETRY_FAILED_LIMIT = 1000


@router.get(
    "/health",
    response_model=QueueHealthResponse,
    summary="Queue health",
    description="Evaluate queue counts against health thresholds. Returns 503 when unhealthy.",
)
async def queue_health(
    response: Response,
    admin: Admin,
    engine: Engine,
    current_operator: CurrentOperator,
) -> QueueHealthResponse:
    report = await admin.health_check()
    if not report.healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return QueueHealthResponse(
        healthy=report.healthy,
        status=report.status,
        issues=[
            HealthIssueResponse(
                queue=issue.queue,
                kind=issue.kind,
                value=issue.value,
                threshold=issue.threshold,
                message=issue.message,
            )
            for issue in report.issues
        ],
        stats=report.stats,
        engine=engine.status(),
    )


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Stats for all queues",
)
async def all_stats(admin: Admin, current_operator: CurrentOperator) -> StatsResponse:
    return StatsResponse(queues=await admin.get_stats())


@router.get(
    "/stats/{queue}",
    response_model=StatsResponse,
    summary="Stats for one queue",
)
async def queue_stats(
    queue: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> StatsResponse:
    return StatsResponse(queues=await admin.get_stats(queue))


@router.get(
    "/{queue}/jobs",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs of a queue with optional state filter and pagination.",
)
async def list_jobs(
    queue: str,
    admin: Admin,
    current_operator: CurrentOperator,
    state: Annotated[JobState | None, Query(alias="status")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE,
) -> JobListResponse:
    """
    List jobs, newest first.

    Args:
        queue: Queue name.
        state: Optional state filter (query parameter ``status``).
        page: Page number (1-indexed).
        page_size: Items per page.
    """
    jobs, total = await admin.list_jobs(queue, state, page, page_size)

    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=page * page_size < total,
    )


@router.get(
    "/{queue}/job/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(
    queue: str,
    job_id: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> JobResponse:
    return JobResponse.from_job(await admin.get_job(job_id, queue))


@router.post(
    "/{queue}/job/{job_id}/retry",
    response_model=JobActionResponse,
    summary="Retry a failed job",
    description="Move a failed job back to waiting. Jobs in any other state are left untouched.",
)
async def retry_job(
    queue: str,
    job_id: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> JobActionResponse:
    job, applied = await admin.retry_job(job_id, queue)

    logger.info(
        "Retry requested",
        extra={
            "job_id": job_id,
            "queue": queue,
            "applied": applied,
            "operator": current_operator.operator,
        },
    )

    return JobActionResponse(id=job.id, action="retry", applied=applied, state=job.state)


@router.delete(
    "/{queue}/job/{job_id}",
    response_model=JobActionResponse,
    summary="Remove a job",
)
async def remove_job(
    queue: str,
    job_id: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> JobActionResponse:
    job = await admin.remove_job(job_id, queue)

    logger.info(
        "Job removal requested",
        extra={"job_id": job_id, "queue": queue, "operator": current_operator.operator},
    )

    return JobActionResponse(id=job.id, action="remove", applied=True, state=job.state)


@router.post(
    "/{queue}/pause",
    response_model=QueueActionResponse,
    summary="Pause a queue",
)
async def pause_queue(
    queue: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> QueueActionResponse:
    config = await admin.pause_queue(queue)
    return QueueActionResponse(queue=config.name, paused=config.is_paused)


@router.post(
    "/{queue}/resume",
    response_model=QueueActionResponse,
    summary="Resume a queue",
)
async def resume_queue(
    queue: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> QueueActionResponse:
    config = await admin.resume_queue(queue)
    return QueueActionResponse(queue=config.name, paused=config.is_paused)


@router.post(
    "/{queue}/clean",
    response_model=CleanQueueResponse,
    summary="Clean finished jobs",
    description="Delete terminal jobs finished more than `grace` milliseconds ago.",
)
async def clean_queue(
    queue: str,
    admin: Admin,
    current_operator: CurrentOperator,
    request: CleanQueueRequest | None = None,
) -> CleanQueueResponse:
    request = request or CleanQueueRequest()
    states: list[JobState] | None
    if request.status is None:
        states = None
    elif isinstance(request.status, list):
        states = request.status
    else:
        states = [request.status]

    removed = await admin.clean_queue(queue, request.grace, states)
    return CleanQueueResponse(queue=queue, removed=removed)


@router.post(
    "/{queue}/jobs/retry-failed",
    response_model=RetryFailedResponse,
    summary="Retry failed jobs",
    description="Move up to `limit` failed jobs of a queue back to waiting.",
)
async def retry_failed_jobs(
    queue: str,
    admin: Admin,
    current_operator: CurrentOperator,
    request: RetryFailedRequest | None = None,
) -> RetryFailedResponse:
    limit = (request.limit if request else None) or DEFAULT_RETRY_FAILED_LIMIT
    retried = await admin.retry_all_failed(queue, limit)
    return RetryFailedResponse(queue=queue, retried=retried)


@router.get(
    "/{queue}/repeatables",
    response_model=RepeatableListResponse,
    summary="List repeatable jobs",
)
async def list_repeatables(
    queue: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> RepeatableListResponse:
    repeatables = await admin.list_repeatables(queue)
    return RepeatableListResponse(
        queue=queue,
        repeatables=[RepeatableJobResponse.from_repeatable(r) for r in repeatables],
    )


@router.delete(
    "/{queue}/repeatables/{name}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a repeatable job",
    description="Stop future runs. Jobs already enqueued are not affected.",
)
async def remove_repeatable(
    queue: str,
    name: str,
    admin: Admin,
    current_operator: CurrentOperator,
) -> Response:
    await admin.remove_repeatable(queue, name)

    logger.info(
        "Repeatable removal requested",
        extra={"queue": queue, "repeatable": name, "operator": current_operator.operator},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
