"""Event and task handlers for the priority ledger."""

import logging

from introflow.core.errors import NotFoundError
from introflow.db.models import PresentationType
from introflow.db.repositories.priority_repo import OPEN_STATUSES
from introflow.events.registry import HandlerContext, HandlerRegistry
from introflow.messaging.queue import MessageQueue
from introflow.priorities.ledger import RE_ENGAGEMENT_TASK, PriorityLedger
from introflow.tasks.registry import TaskContext, TaskHandlerRegistry, TaskResult

logger = logging.getLogger(__name__)


async def on_priority_presented(ctx: HandlerContext) -> None:
    ledger = PriorityLedger(ctx.session, ctx.config.priorities, ctx.config.tasks)
    await ledger.mark_presented(ctx.payload.priority_id, ctx.payload.presentation_type, source_event_id=ctx.event.id)


async def run_re_engagement_check(ctx: TaskContext) -> TaskResult:
    """Surface a still-open priority item to its user with a dedicated message.

    Dormant and resolved items are skipped; the dedicated message counts
    as a presentation.
    """
    ledger = PriorityLedger(ctx.session, ctx.config.priorities, ctx.config.tasks)
    task = ctx.task
    if ctx.payload.priority_id:
        item = await ledger.get(ctx.payload.priority_id)
    elif task.user_id and task.context_type and task.context_id:
        item = await ledger.repo.get_by_key(task.user_id, task.context_type, task.context_id)
        if item is None:
            raise NotFoundError(f"No priority item for {task.context_type}:{task.context_id}")
    else:
        raise NotFoundError("re_engagement_check needs a priority_id or a user and context")

    if item.status not in OPEN_STATUSES:
        logger.info(f"Priority {item.id} is {item.status}, re-engagement skipped")
        return TaskResult.ok(skipped=item.status)

    await MessageQueue(ctx.session, ctx.config).enqueue_message(
        user_id=item.user_id,
        source_agent=task.agent_type,
        message_data={
            "template": "re_engagement",
            "params": {
                "primary_name": item.item_primary_name or "",
                "summary": item.item_summary or "",
                "note": ctx.payload.note or "",
            },
        },
        priority=task.priority,
        requires_fresh_context=True,
        context_type=item.item_type,
        context_id=item.item_id,
        supersede_existing=True,
    )
    item = await ledger.mark_presented(item.id, PresentationType.DEDICATED.value)
    return TaskResult.ok(priority_id=item.id, status=item.status, presentation_count=item.presentation_count)


def register_priority_handlers(events: HandlerRegistry, tasks: TaskHandlerRegistry) -> None:
    events.register("priority.presented", on_priority_presented, "Record a priority presentation")
    tasks.register(RE_ENGAGEMENT_TASK, run_re_engagement_check, "Re-surface an open priority item")
