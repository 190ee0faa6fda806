"""Task dispatcher: leases due tasks and runs their handlers."""

import logging
import time
from dataclasses import dataclass

from introflow.core.config import Config
from introflow.core.errors import (
    BusinessRuleViolation,
    DuplicateOperationError,
    ExpiredReferenceError,
    TransientIOError,
)
from introflow.core.timezone import utc_now
from introflow.db.database import DatabaseManager
from introflow.db.models import AgentTask, TaskStatus
from introflow.db.repositories.task_repo import TaskRepository
from introflow.domain.payloads import TASK_TYPES, TaskReady, parse_task_payload
from introflow.events.log import EventLog
from introflow.tasks.queue import TaskQueue
from introflow.tasks.registry import RegisteredTask, TaskContext, TaskHandlerRegistry, TaskResult

logger = logging.getLogger(__name__)


@dataclass
class TaskBatchResult:
    """Outcome counts for one dispatch pass."""

    completed: int = 0
    retried: int = 0
    failed: int = 0
    handed_off: int = 0
    skipped: int = 0
    reclaimed: int = 0


class TaskDispatcher:
    """Selects due tasks, claims each one and executes it.

    Claiming is a conditional update, so a task already taken by another
    dispatcher is skipped rather than waited on. The claim and its
    ``task.ready`` event commit together. A task with an in-process handler
    is then executed here; the handler's writes and the completion commit
    in one transaction. Other known task types stay ``processing`` for the
    external worker that consumes ``task.ready`` and reports back with
    ``task.completed`` or ``task.failed``. A lease with no report within
    ``lease_timeout_seconds`` is reclaimed at the start of the next pass.
    """

    def __init__(self, db_manager: DatabaseManager, registry: TaskHandlerRegistry, config: Config):
        self.db = db_manager
        self.registry = registry
        self.config = config

    async def dispatch_batch(self, limit: int | None = None) -> TaskBatchResult:
        """Dispatch up to ``limit`` due tasks by priority, then scheduled time."""
        limit = limit or self.config.tasks.batch_size
        result = TaskBatchResult()
        async with self.db.session() as session:
            result.reclaimed = await TaskQueue(session, self.config.tasks).reclaim_stale(limit=limit)
        async with self.db.session() as session:
            due = await TaskRepository(session).list_due(utc_now(), limit)

        for task in due:
            outcome = await self._dispatch(task)
            setattr(result, outcome, getattr(result, outcome) + 1)

        if due or result.reclaimed:
            logger.info(
                f"Task batch: {result.completed} completed, {result.retried} retried, "
                f"{result.failed} failed, {result.handed_off} handed off, {result.skipped} skipped, "
                f"{result.reclaimed} reclaimed"
            )
        return result

    async def _dispatch(self, task: AgentTask) -> str:
        if not await self._claim(task):
            logger.debug(f"Task {task.id} already claimed elsewhere, skipping")
            return "skipped"

        if task.task_type not in TASK_TYPES:
            return await self._record_failure(task.id, f"Unknown task type: {task.task_type}", retryable=False)

        registered = self.registry.get(task.task_type)
        if registered is None:
            logger.info(f"Task {task.task_type} {task.id} handed off to {task.agent_type} workers")
            return "handed_off"

        try:
            return await self._execute(task, registered)
        except TransientIOError as e:
            logger.warning(f"Task {task.id} could not be committed: {e}")
            return await self._record_failure(task.id, str(e), retryable=True)

    async def _claim(self, task: AgentTask) -> bool:
        async with self.db.session() as session:
            if not await TaskQueue(session, self.config.tasks).claim(task.id):
                return False
            await EventLog(session).append(
                "task.ready",
                aggregate_id=task.id,
                aggregate_type="agent_task",
                payload=TaskReady(
                    task_id=task.id,
                    task_type=task.task_type,
                    agent_type=task.agent_type,
                    user_id=task.user_id,
                    context_type=task.context_type,
                    context_id=task.context_id,
                    context=task.context_payload,
                    attempt=task.retry_count + 1,
                ),
                created_by="task_dispatcher",
            )
        return True

    async def _execute(self, task: AgentTask, registered: RegisteredTask) -> str:
        async with self.db.session() as session:
            queue = TaskQueue(session, self.config.tasks)
            current = await queue.get(task.id)
            # Cancelled between claim and execution
            if current.status != TaskStatus.PROCESSING.value:
                logger.info(f"Task {task.id} is {current.status}, skipping execution")
                return "skipped"

            started = time.monotonic()
            try:
                async with session.begin_nested():
                    payload = parse_task_payload(current.task_type, current.context_payload)
                    ctx = TaskContext(task=current, payload=payload, session=session, config=self.config)
                    outcome = await registered.handler(ctx) or TaskResult.ok()
            except DuplicateOperationError as e:
                logger.info(f"Task {task.id} duplicate operation, treating as done: {e}")
                outcome = TaskResult.ok(duplicate=e.idempotency_key)
            except (BusinessRuleViolation, ExpiredReferenceError) as e:
                outcome = TaskResult.failed(str(e), retry=False)
            except TransientIOError as e:
                outcome = TaskResult.failed(str(e), retry=True)
            except Exception as e:
                logger.exception(f"Task {task.task_type} {task.id} handler raised")
                outcome = TaskResult.failed(f"{type(e).__name__}: {e}", retry=True)
            duration_ms = int((time.monotonic() - started) * 1000)

            await queue.repo.log_action(
                agent_type=task.agent_type,
                action_type=task.task_type,
                task_id=task.id,
                user_id=task.user_id,
                input_data=task.context_payload,
                output_data=outcome.data if outcome.success else None,
                error=outcome.error,
                duration_ms=duration_ms,
            )

            if outcome.success:
                await queue.complete(task.id, outcome.data)
                return "completed"

            status = await queue.fail(
                task.id, outcome.error or "handler reported failure", retryable=outcome.should_retry
            )
            return "retried" if status == TaskStatus.PENDING.value else "failed"

    async def _record_failure(self, task_id: str, error: str, retryable: bool) -> str:
        async with self.db.session() as session:
            status = await TaskQueue(session, self.config.tasks).fail(task_id, error, retryable=retryable)
        return "retried" if status == TaskStatus.PENDING.value else "failed"
