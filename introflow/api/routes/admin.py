"""Admin endpoints for operators."""

from fastapi import APIRouter, HTTPException, status

from introflow.api.dependencies import Admin
from introflow.api.schemas.admin import (
    CompleteTaskRequest,
    DrainQueueRequest,
    DrainQueueResponse,
    FailTaskRequest,
    ForceCloseRequest,
    ForceCloseResponse,
    PublishEventRequest,
    PublishEventResponse,
    TaskStatusResponse,
)
from introflow.core.errors import BusinessRuleViolation, ExpiredReferenceError, IntroFlowError, NotFoundError

router = APIRouter(prefix="/admin", tags=["admin"])


def _http_error(error: IntroFlowError) -> HTTPException:
    """Map an engine error to its HTTP status."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ExpiredReferenceError):
        code = status.HTTP_410_GONE
    elif isinstance(error, BusinessRuleViolation):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HTTPException(status_code=code, detail=str(error))


# =============================================================================
# Sagas
# =============================================================================


@router.post("/sagas/{variant}/{saga_id}/force-close", response_model=ForceCloseResponse)
async def force_close_saga(
    variant: str,
    saga_id: str,
    data: ForceCloseRequest,
    service: Admin,
) -> ForceCloseResponse:
    """Force a non-terminal saga into expired or cancelled.

    Args:
        variant: opportunity, connection_request or offer
        saga_id: Saga identifier
        data: Close reason and target status
        service: Admin service instance

    Returns:
        ForceCloseResponse: Saga state after the close

    Raises:
        HTTPException: 404 if the saga does not exist
        HTTPException: 409 if the variant is unknown
        HTTPException: 410 if the saga is already terminal
    """
    try:
        closed = await service.force_close_saga(variant, saga_id, data.reason, data.status)
    except IntroFlowError as e:
        raise _http_error(e) from e
    return ForceCloseResponse(**closed)


# =============================================================================
# Queues
# =============================================================================


@router.post("/queues/{queue}/drain", response_model=DrainQueueResponse)
async def drain_queue(queue: str, data: DrainQueueRequest, service: Admin) -> DrainQueueResponse:
    """Cancel all queued work in the tasks, messages or events queue.

    Raises:
        HTTPException: 404 if the queue name is unknown
    """
    try:
        drained = await service.drain_queue(queue, data.reason)
    except IntroFlowError as e:
        raise _http_error(e) from e
    return DrainQueueResponse(queue=queue, drained=drained)


# =============================================================================
# Tasks
# =============================================================================


@router.post("/tasks/{task_id}/complete", response_model=TaskStatusResponse)
async def complete_task(task_id: str, data: CompleteTaskRequest, service: Admin) -> TaskStatusResponse:
    """Complete a task handed off to an external worker.

    Raises:
        HTTPException: 404 if the task does not exist
        HTTPException: 409 if the task is not processing
    """
    try:
        completed = await service.complete_task(task_id, data.result)
    except IntroFlowError as e:
        raise _http_error(e) from e
    return TaskStatusResponse(**completed)


@router.post("/tasks/{task_id}/fail", response_model=TaskStatusResponse)
async def fail_task(task_id: str, data: FailTaskRequest, service: Admin) -> TaskStatusResponse:
    """Record a failed attempt on a task handed off to an external worker.

    The task is retried with backoff while its retry budget lasts.

    Raises:
        HTTPException: 404 if the task does not exist
        HTTPException: 409 if the task is not processing
    """
    try:
        failed = await service.fail_task(task_id, data.error, data.retryable)
    except IntroFlowError as e:
        raise _http_error(e) from e
    return TaskStatusResponse(**failed)


# =============================================================================
# Events
# =============================================================================


@router.post("/events", response_model=PublishEventResponse, status_code=status.HTTP_201_CREATED)
async def publish_event(data: PublishEventRequest, service: Admin) -> PublishEventResponse:
    """Append an event to the log on behalf of an external producer.

    Raises:
        HTTPException: 409 if the event type is unknown or the payload is invalid
    """
    try:
        event_id = await service.publish_event(
            data.event_type, data.aggregate_id, data.aggregate_type, data.payload, data.created_by
        )
    except IntroFlowError as e:
        raise _http_error(e) from e
    return PublishEventResponse(event_id=event_id)
