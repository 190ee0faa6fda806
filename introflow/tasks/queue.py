"""Priority-ordered, lease-based task queue."""

import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import TaskQueueConfig
from introflow.core.errors import BusinessRuleViolation, NotFoundError, RetriesExhausted
from introflow.core.ids import new_id
from introflow.core.logging import get_dead_letter_logger
from introflow.core.timezone import utc_now
from introflow.db.models import (
    PRIORITY_RANK,
    AgentTask,
    DeadLetterSource,
    TaskStatus,
)
from introflow.db.repositories.dead_letter_repo import DeadLetterRepository
from introflow.db.repositories.task_repo import TaskRepository
from introflow.domain.payloads import parse_task_payload

logger = logging.getLogger(__name__)
dead_letters = get_dead_letter_logger()


def backoff_delay(retry_count: int, config: TaskQueueConfig) -> timedelta:
    """Exponential backoff before the next attempt, capped.

    Examples:
        >>> backoff_delay(0, TaskQueueConfig()).total_seconds()
        60.0
        >>> backoff_delay(2, TaskQueueConfig()).total_seconds()
        240.0
    """
    seconds = config.initial_backoff_seconds * (2**retry_count)
    return timedelta(seconds=min(seconds, config.max_backoff_seconds))


class TaskQueue:
    """Task queue operations bound to one unit of work."""

    def __init__(self, session: AsyncSession, config: TaskQueueConfig | None = None):
        self.session = session
        self.config = config or TaskQueueConfig()
        self.repo = TaskRepository(session)

    async def enqueue(
        self,
        task_type: str,
        agent_type: str,
        payload: dict[str, Any] | BaseModel | None = None,
        priority: str = "medium",
        scheduled_for: datetime | None = None,
        user_id: str | None = None,
        context_type: str | None = None,
        context_id: str | None = None,
        max_retries: int | None = None,
        created_by: str = "system",
    ) -> str:
        """Enqueue a task.

        Args:
            task_type: Registered task type.
            agent_type: Worker type that owns the task.
            payload: Payload for the task type.
            priority: urgent, high, medium or low.
            scheduled_for: Earliest dispatch time (defaults to now).
            user_id: Optional affected user.
            context_type: Optional kind of the entity the task is about.
            context_id: Optional entity the task is about.
            max_retries: Retry budget (defaults to config).
            created_by: Producing agent or service.

        Returns:
            The new task id.

        Raises:
            BusinessRuleViolation: Unknown task type, invalid payload or priority.
        """
        if priority not in PRIORITY_RANK:
            raise BusinessRuleViolation(f"Invalid priority: {priority}")
        model = parse_task_payload(task_type, payload or {})

        task = AgentTask(
            id=new_id(),
            task_type=task_type,
            agent_type=agent_type,
            user_id=user_id,
            context_type=context_type,
            context_id=context_id,
            scheduled_for=scheduled_for or utc_now(),
            priority=priority,
            status=TaskStatus.PENDING.value,
            retry_count=0,
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            context_payload=model.model_dump(mode="json", exclude={"kind"}),
            created_by=created_by,
            created_at=utc_now(),
        )
        self.session.add(task)
        await self.session.flush()
        logger.info(f"Enqueued task {task.task_type} {task.id} ({priority}) for {task.scheduled_for}")
        return task.id

    async def get(self, task_id: str) -> AgentTask:
        """Get a task or raise NotFoundError."""
        task = await self.repo.get_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    async def claim(self, task_id: str) -> bool:
        """Non-blocking conditional claim (pending to processing)."""
        claimed = await self.repo.claim(task_id, utc_now())
        if claimed:
            logger.debug(f"Claimed task {task_id}")
        return claimed

    async def complete(self, task_id: str, result: dict[str, Any] | None = None) -> bool:
        """Mark a processing task completed.

        Returns:
            False if the task is no longer processing (e.g. cancelled meanwhile).
        """
        task = await self.get(task_id)
        if task.status != TaskStatus.PROCESSING.value:
            logger.warning(f"Task {task_id} is {task.status}, not completing")
            return False
        task.status = TaskStatus.COMPLETED.value
        task.result_payload = result or {}
        task.completed_at = utc_now()
        await self.session.flush()
        logger.info(f"Task {task.task_type} {task_id} completed")
        return True

    async def fail(self, task_id: str, error: str, retryable: bool = True, attempt: int | None = None) -> str:
        """Record a failed attempt on a processing task.

        Retryable failures under the retry budget go back to pending with
        exponential backoff. Anything else is marked failed and, when
        configured, copied to the dead-letter store.

        Args:
            task_id: Task that failed.
            error: What went wrong on this attempt.
            retryable: Whether another attempt could succeed.
            attempt: Attempt the report is about (from ``task.ready``). A
                report for any other attempt is ignored.

        Returns:
            The task's resulting status.
        """
        task = await self.get(task_id)
        if task.status != TaskStatus.PROCESSING.value:
            logger.warning(f"Task {task_id} is {task.status}, ignoring failure: {error}")
            return task.status
        current = task.retry_count + 1
        if attempt is not None and attempt != current:
            logger.warning(f"Task {task_id} failure for attempt {attempt} ignored, attempt {current} holds the lease")
            return task.status

        now = utc_now()
        entry = f"[{now.isoformat()}] attempt {current}: {error}"
        task.error_log = f"{task.error_log}\n{entry}" if task.error_log else entry
        task.error_history = [
            *(task.error_history or []),
            {"attempt": current, "error": error, "at": now.isoformat()},
        ]

        if retryable and current < task.max_retries:
            task.scheduled_for = now + backoff_delay(task.retry_count, self.config)
            task.retry_count = current
            task.status = TaskStatus.PENDING.value
            await self.session.flush()
            logger.info(
                f"Task {task.task_type} {task_id} retry {current}/{task.max_retries} "
                f"at {task.scheduled_for}"
            )
            return task.status

        task.retry_count = current
        task.status = TaskStatus.FAILED.value
        task.completed_at = now
        exhausted = RetriesExhausted(
            f"Task {task.task_type} {task_id} failed after {current} attempt(s)",
            attempts=current,
            error_history=task.error_history,
        )
        if self.config.dead_letter_failed:
            await DeadLetterRepository(self.session).record(
                source=DeadLetterSource.TASK.value,
                reference_id=task.id,
                item_type=task.task_type,
                payload=task.context_payload,
                last_error=error,
                exhausted=exhausted,
                original_created_at=task.created_at,
            )
        await self.session.flush()
        logger.error(f"{exhausted}: {error}")
        if self.config.dead_letter_failed:
            dead_letters.error(f"task {task.task_type} {task_id} after {exhausted.attempts} attempt(s): {error}")
        return task.status

    async def reclaim_stale(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Fail every processing task whose lease outlived ``lease_timeout_seconds``.

        A worker that crashed or never reported back leaves its task in
        processing; reclaiming counts that as a retryable failed attempt,
        so the task is retried or dead-lettered like any other failure.

        Returns:
            Number of tasks reclaimed.
        """
        now = now or utc_now()
        timeout = self.config.lease_timeout_seconds
        stale = await self.repo.list_stale_processing(
            now - timedelta(seconds=timeout), limit or self.config.batch_size
        )
        for task in stale:
            status = await self.fail(task.id, f"lease expired after {timeout}s without a result", retryable=True)
            logger.warning(f"Reclaimed task {task.task_type} {task.id} from {task.agent_type}, now {status}")
        return len(stale)

    async def cancel(self, task_id: str, reason: str) -> bool:
        """Cancel a pending task. Returns False if it already left pending."""
        task = await self.get(task_id)
        if task.status != TaskStatus.PENDING.value:
            return False
        task.status = TaskStatus.CANCELLED.value
        task.result_payload = {"reason": reason}
        task.completed_at = utc_now()
        await self.session.flush()
        logger.info(f"Task {task_id} cancelled: {reason}")
        return True

    async def cancel_matching(
        self,
        task_type: str,
        context_type: str,
        context_id: str,
        reason: str,
    ) -> int:
        """Cancel pending tasks of a type for one context."""
        count = await self.repo.cancel_pending(
            reason, utc_now(), task_type=task_type, context_type=context_type, context_id=context_id
        )
        if count:
            logger.info(f"Cancelled {count} {task_type} task(s) for {context_type}:{context_id} ({reason})")
        return count

    async def pending_counts(self) -> list[dict[str, Any]]:
        """Pending-task counts by agent type and priority."""
        return await self.repo.pending_counts()

    async def drain(self, reason: str = "drained") -> int:
        """Cancel every pending task (test/ops only)."""
        count = await self.repo.cancel_pending(reason, utc_now())
        logger.warning(f"Drained task queue: {count} pending task(s) cancelled")
        return count
