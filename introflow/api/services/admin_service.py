"""Business logic for operator admin actions."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.core.errors import BusinessRuleViolation, NotFoundError
from introflow.db.models import TaskStatus
from introflow.events.log import EventLog
from introflow.messaging.queue import MessageQueue
from introflow.sagas.expiry import force_close
from introflow.tasks.queue import TaskQueue

logger = logging.getLogger(__name__)

QUEUES = ("tasks", "messages", "events")


class AdminService:
    """Operator actions that change queue or saga state."""

    def __init__(self, session: AsyncSession, config: Config):
        self.session = session
        self.config = config

    async def force_close_saga(
        self, variant: str, saga_id: str, reason: str, status: str = "expired"
    ) -> dict[str, Any]:
        """Close a non-terminal saga and expire its priority items.

        Raises:
            BusinessRuleViolation: Unknown variant or close status.
            NotFoundError: No such saga.
            ExpiredReferenceError: The saga is already terminal.
        """
        saga = await force_close(self.session, variant, saga_id, reason, status, self.config)
        return {
            "variant": variant,
            "saga_id": saga.id,
            "status": saga.status,
            "closed_reason": saga.closed_reason,
        }

    async def drain_queue(self, queue: str, reason: str) -> int:
        """Cancel all queued work in one queue.

        Raises:
            NotFoundError: Unknown queue name.
        """
        if queue == "tasks":
            count = await TaskQueue(self.session, self.config.tasks).drain(reason)
        elif queue == "messages":
            count = await MessageQueue(self.session, self.config).drain(reason)
        elif queue == "events":
            count = await EventLog(self.session).drain(reason)
        else:
            raise NotFoundError(f"Unknown queue: {queue} (expected one of {', '.join(QUEUES)})")
        logger.warning(f"Operator drained {queue} queue: {count} item(s)")
        return count

    async def complete_task(self, task_id: str, result: dict[str, Any]) -> dict[str, Any]:
        """Complete a handed-off task on behalf of its worker.

        Raises:
            NotFoundError: No such task.
            BusinessRuleViolation: The task is not processing.
        """
        queue = TaskQueue(self.session, self.config.tasks)
        if not await queue.complete(task_id, result):
            task = await queue.get(task_id)
            raise BusinessRuleViolation(f"Task {task_id} is {task.status}, not processing")
        logger.warning(f"Operator completed task {task_id}")
        return {"task_id": task_id, "status": TaskStatus.COMPLETED.value}

    async def fail_task(self, task_id: str, error: str, retryable: bool = True) -> dict[str, Any]:
        """Record a failed attempt on a handed-off task.

        Raises:
            NotFoundError: No such task.
            BusinessRuleViolation: The task is not processing.
        """
        queue = TaskQueue(self.session, self.config.tasks)
        task = await queue.get(task_id)
        if task.status != TaskStatus.PROCESSING.value:
            raise BusinessRuleViolation(f"Task {task_id} is {task.status}, not processing")
        status = await queue.fail(task_id, error, retryable=retryable)
        logger.warning(f"Operator failed task {task_id}: {error}")
        return {"task_id": task_id, "status": status, "retry_count": task.retry_count}

    async def publish_event(
        self,
        event_type: str,
        aggregate_id: str,
        aggregate_type: str,
        payload: dict[str, Any],
        created_by: str = "operator",
    ) -> str:
        """Append an event on behalf of an external producer.

        Raises:
            BusinessRuleViolation: Unknown event type or invalid payload.
        """
        event = await EventLog(self.session).publish_event(
            event_type, aggregate_id, aggregate_type, payload, created_by=created_by
        )
        return event.id
