"""Event and task handlers owned by the message orchestrator."""

import logging

from introflow.db.models import MessageDirection
from introflow.db.repositories.conversation_repo import ConversationRepository
from introflow.events.registry import HandlerContext, HandlerRegistry
from introflow.messaging.queue import MessageQueue
from introflow.tasks.registry import TaskContext, TaskHandlerRegistry, TaskResult

logger = logging.getLogger(__name__)


async def on_user_message_received(ctx: HandlerContext) -> None:
    """Record inbound text so activity, relevance and quiet-hour checks can see it."""
    conversations = ConversationRepository(ctx.session)
    if await conversations.get_by_source_event(ctx.event.id):
        logger.info(f"Inbound message from event {ctx.event.id} already recorded")
        return
    await conversations.record(
        user_id=ctx.payload.user_id,
        direction=MessageDirection.INBOUND.value,
        content=ctx.payload.content,
        created_at=ctx.event.created_at,
        source_event_id=ctx.event.id,
    )


async def on_message_delivery_status(ctx: HandlerContext) -> None:
    await MessageQueue(ctx.session, ctx.config).record_delivery_status(
        ctx.payload.message_id, ctx.payload.status, ctx.payload.error
    )


async def run_reformulate_message(ctx: TaskContext) -> TaskResult:
    """Queue the replacement for a message that went stale.

    The composing agent may attach a ready ``fallback`` (message data for
    the replacement). Without one there is nothing safe to send, so the
    stale message simply stays superseded.
    """
    queue = MessageQueue(ctx.session, ctx.config)
    stale = await queue.get(ctx.payload.message_id)
    fallback = ctx.payload.message_data.get("fallback")
    if not fallback:
        logger.info(f"No fallback for stale message {stale.id}, dropping ({ctx.payload.reason})")
        return TaskResult.ok(replacement=None)

    replacement = (
        await queue.enqueue_message(
            user_id=stale.user_id,
            source_agent=stale.source_agent,
            message_data=fallback,
            priority=stale.priority,
            context_type=stale.context_type,
            context_id=stale.context_id,
        )
    )[0]
    stale.superseded_by = replacement.id
    await ctx.session.flush()
    return TaskResult.ok(replacement=replacement.id)


def register_messaging_handlers(events: HandlerRegistry, tasks: TaskHandlerRegistry) -> None:
    events.register("user.message_received", on_user_message_received, "Record inbound conversation message")
    events.register("message.delivery_status", on_message_delivery_status, "Record gateway delivery outcome")
    tasks.register("reformulate_message", run_reformulate_message, "Replace a stale queued message")
