"""Event handlers through which external workers report on handed-off tasks."""

import logging

from introflow.db.models import TaskStatus
from introflow.events.registry import HandlerContext, HandlerRegistry
from introflow.tasks.queue import TaskQueue

logger = logging.getLogger(__name__)


async def on_task_completed(ctx: HandlerContext) -> None:
    """Close a handed-off task with the worker's result.

    A report for a task that already left processing (replayed, or the
    lease was reclaimed meanwhile) changes nothing.
    """
    queue = TaskQueue(ctx.session, ctx.config.tasks)
    task = await queue.get(ctx.payload.task_id)
    if not await queue.complete(task.id, ctx.payload.result):
        return
    await queue.repo.log_action(
        agent_type=task.agent_type,
        action_type=task.task_type,
        task_id=task.id,
        user_id=task.user_id,
        input_data=task.context_payload,
        output_data=ctx.payload.result,
    )


async def on_task_failed(ctx: HandlerContext) -> None:
    """Record a failed attempt reported by an external worker."""
    queue = TaskQueue(ctx.session, ctx.config.tasks)
    task = await queue.get(ctx.payload.task_id)
    if task.status != TaskStatus.PROCESSING.value:
        logger.info(f"Task {task.id} is {task.status}, failure report from event {ctx.event.id} ignored")
        return
    status = await queue.fail(
        task.id, ctx.payload.error, retryable=ctx.payload.retryable, attempt=ctx.payload.attempt
    )
    if status != TaskStatus.PROCESSING.value:
        await queue.repo.log_action(
            agent_type=task.agent_type,
            action_type=task.task_type,
            task_id=task.id,
            user_id=task.user_id,
            input_data=task.context_payload,
            error=ctx.payload.error,
        )


def register_task_handlers(events: HandlerRegistry) -> None:
    events.register("task.completed", on_task_completed, "Complete a handed-off task")
    events.register("task.failed", on_task_failed, "Record a failed attempt on a handed-off task")
