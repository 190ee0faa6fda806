"""Monitoring and health check endpoints."""

from fastapi import APIRouter, Query

from introflow.api.dependencies import Monitoring
from introflow.api.schemas.monitoring import (
    DeadLetterListResponse,
    DeadLetterResponse,
    HealthResponse,
    PendingTaskCount,
    PendingTasksResponse,
    QueuedMessagesResponse,
)
from introflow.db.models import DeadLetterSource

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


# =============================================================================
# Health Check
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(service: Monitoring) -> HealthResponse:
    """System health check endpoint.

    Args:
        service: Monitoring service instance

    Returns:
        HealthResponse: Database and engine status
    """
    health = await service.get_health()
    return HealthResponse(**health)


# =============================================================================
# Queues
# =============================================================================


@router.get("/tasks/pending", response_model=PendingTasksResponse)
async def pending_tasks(service: Monitoring) -> PendingTasksResponse:
    """Pending task counts grouped by agent type and priority."""
    counts = await service.get_pending_tasks()
    return PendingTasksResponse(
        counts=[PendingTaskCount(**c) for c in counts],
        total=sum(c["count"] for c in counts),
    )


@router.get("/messages/queued", response_model=QueuedMessagesResponse)
async def queued_messages(service: Monitoring) -> QueuedMessagesResponse:
    """Queued message counts grouped by priority."""
    by_priority = await service.get_queued_messages()
    return QueuedMessagesResponse(by_priority=by_priority, total=sum(by_priority.values()))


# =============================================================================
# Dead Letters
# =============================================================================


@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def list_dead_letters(
    service: Monitoring,
    limit: int = Query(50, ge=1, le=500, description="Maximum number of dead letters"),
    source: DeadLetterSource | None = Query(None, description="Filter by source (event or task)"),
) -> DeadLetterListResponse:
    """List dead-lettered work items, newest first.

    Args:
        service: Monitoring service instance
        limit: Maximum number of rows to return (1-500)
        source: Optional source filter

    Returns:
        DeadLetterListResponse: Dead letters with total count
    """
    letters = await service.get_dead_letters(limit=limit, source=source)
    return DeadLetterListResponse(
        dead_letters=[DeadLetterResponse(**d) for d in letters],
        total=len(letters),
    )
