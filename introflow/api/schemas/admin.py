"""Pydantic schemas for Admin API endpoints."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ForceCloseRequest(BaseModel):
    """Request body for POST /admin/sagas/{variant}/{saga_id}/force-close."""

    reason: str = Field(..., min_length=1, description="Why the saga is being closed")
    status: Literal["expired", "cancelled"] = Field(default="expired", description="Terminal status to apply")

    model_config = ConfigDict(extra="forbid")


class ForceCloseResponse(BaseModel):
    """Saga state after a force-close."""

    variant: str
    saga_id: str
    status: str
    closed_reason: str | None = None

    model_config = ConfigDict(extra="forbid")


class DrainQueueRequest(BaseModel):
    """Request body for POST /admin/queues/{queue}/drain."""

    reason: str = Field(default="drained", description="Reason recorded on each drained item")

    model_config = ConfigDict(extra="forbid")


class DrainQueueResponse(BaseModel):
    """Number of items removed from a queue."""

    queue: str
    drained: int

    model_config = ConfigDict(extra="forbid")


class PublishEventRequest(BaseModel):
    """Request body for POST /admin/events."""

    event_type: str
    aggregate_id: str
    aggregate_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_by: str = "operator"

    model_config = ConfigDict(extra="forbid")


class PublishEventResponse(BaseModel):
    """Identifier of the appended event."""

    event_id: str

    model_config = ConfigDict(extra="forbid")


class CompleteTaskRequest(BaseModel):
    """Request body for POST /admin/tasks/{task_id}/complete."""

    result: dict[str, Any] = Field(default_factory=dict, description="Result recorded on the task")

    model_config = ConfigDict(extra="forbid")


class FailTaskRequest(BaseModel):
    """Request body for POST /admin/tasks/{task_id}/fail."""

    error: str = Field(..., min_length=1, description="What went wrong on the current attempt")
    retryable: bool = Field(default=True, description="Whether another attempt could succeed")

    model_config = ConfigDict(extra="forbid")


class TaskStatusResponse(BaseModel):
    """Task state after an operator report."""

    task_id: str
    status: str
    retry_count: int | None = None

    model_config = ConfigDict(extra="forbid")
