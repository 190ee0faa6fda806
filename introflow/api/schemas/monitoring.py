"""Pydantic schemas for Monitoring API endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /monitoring/health endpoint.

    Attributes:
        status: Overall health status (e.g., "healthy")
        version: API version string
        database: Database connection status
        engine: Coordination engine status ("running" or "unavailable")
        pollers: Status of each polling loop when an engine is attached
        handlers: Subscribed handler descriptions per event type when an engine is attached
        pending_events: Events still awaiting delivery
    """

    status: str
    version: str
    database: str
    engine: str
    pollers: dict[str, str]
    handlers: dict[str, list[str]]
    pending_events: int

    model_config = ConfigDict(extra="forbid")


class PendingTaskCount(BaseModel):
    """Pending tasks for one agent type and priority."""

    agent_type: str
    priority: str
    count: int

    model_config = ConfigDict(extra="forbid")


class PendingTasksResponse(BaseModel):
    """Response model for GET /monitoring/tasks/pending endpoint."""

    counts: list[PendingTaskCount]
    total: int

    model_config = ConfigDict(extra="forbid")


class QueuedMessagesResponse(BaseModel):
    """Response model for GET /monitoring/messages/queued endpoint.

    Attributes:
        by_priority: Queued or approved message count per priority
        total: Sum across priorities
    """

    by_priority: dict[str, int]
    total: int

    model_config = ConfigDict(extra="forbid")


class DeadLetterResponse(BaseModel):
    """A work item that exhausted its retries."""

    id: str
    source: str
    reference_id: str
    item_type: str
    payload: dict[str, Any]
    error_message: str
    error_history: list[dict[str, Any]]
    attempt_count: int
    original_created_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(extra="forbid")


class DeadLetterListResponse(BaseModel):
    """Response model for GET /monitoring/dead-letters endpoint."""

    dead_letters: list[DeadLetterResponse]
    total: int

    model_config = ConfigDict(extra="forbid")
