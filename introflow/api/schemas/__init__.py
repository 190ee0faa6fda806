"""Pydantic schemas for API request/response models."""

from introflow.api.schemas.admin import (
    DrainQueueRequest,
    DrainQueueResponse,
    ForceCloseRequest,
    ForceCloseResponse,
    PublishEventRequest,
    PublishEventResponse,
)
from introflow.api.schemas.monitoring import (
    DeadLetterListResponse,
    DeadLetterResponse,
    HealthResponse,
    PendingTaskCount,
    PendingTasksResponse,
    QueuedMessagesResponse,
)

__all__ = [
    "DeadLetterListResponse",
    "DeadLetterResponse",
    "DrainQueueRequest",
    "DrainQueueResponse",
    "ForceCloseRequest",
    "ForceCloseResponse",
    "HealthResponse",
    "PendingTaskCount",
    "PendingTasksResponse",
    "PublishEventRequest",
    "PublishEventResponse",
    "QueuedMessagesResponse",
]
