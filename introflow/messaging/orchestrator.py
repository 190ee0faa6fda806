"""Rate-limited, sequence-aware outbound delivery."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.core.errors import BusinessRuleViolation, TransientIOError
from introflow.core.timezone import utc_now
from introflow.db.database import DatabaseManager
from introflow.db.models import MessageDirection, MessageStatus, QueuedMessage
from introflow.db.repositories.conversation_repo import ConversationRepository
from introflow.db.repositories.message_repo import DISPATCHABLE, MessageRepository
from introflow.domain.payloads import MessageReady, ReformulateMessage
from introflow.events.log import EventLog
from introflow.messaging.queue import MessageQueue
from introflow.messaging.rate_limiter import RateLimiter
from introflow.messaging.relevance import RelevanceChecker, RelevanceClassifier
from introflow.messaging.renderer import MessageRenderer
from introflow.tasks.queue import TaskQueue

logger = logging.getLogger(__name__)

CLOSED = (MessageStatus.CANCELLED.value, MessageStatus.SUPERSEDED.value)


@dataclass
class MessageBatchResult:
    """Outcome counts for one delivery pass, per delivery unit."""

    sent: int = 0
    deferred: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0


class MessageOrchestrator:
    """Drains due messages into ``message.ready`` events.

    Due rows are grouped into delivery units (a standalone message, or all
    members of one sequence). Each unit is handled in its own transaction:
    rate limits are checked once per unit, members are claimed and sent in
    position order, and a member that is cancelled or goes stale before its
    turn cancels the rest of its sequence.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Config,
        classifier: RelevanceClassifier | None = None,
        renderer: MessageRenderer | None = None,
    ):
        self.db = db_manager
        self.config = config
        self.classifier = classifier
        self.renderer = renderer or MessageRenderer()

    async def dispatch_batch(self, limit: int | None = None) -> MessageBatchResult:
        """Send due delivery units, highest priority first."""
        limit = limit or self.config.messaging.batch_size
        async with self.db.session() as session:
            due = await MessageRepository(session).list_due(utc_now(), limit)

        units: dict[str, QueuedMessage] = {}
        for message in due:
            units.setdefault(message.sequence_id or message.id, message)

        result = MessageBatchResult()
        for unit_id, first in units.items():
            try:
                outcome = await self._dispatch_unit(unit_id, first)
            except TransientIOError as e:
                logger.warning(f"Delivery unit {unit_id} hit a store error, will retry next poll: {e}")
                outcome = "errors"
            except Exception:
                logger.exception(f"Delivery unit {unit_id} failed")
                outcome = "errors"
            setattr(result, outcome, getattr(result, outcome) + 1)

        if units:
            logger.info(
                f"Message batch: {result.sent} sent, {result.deferred} deferred, "
                f"{result.cancelled} cancelled, {result.skipped} skipped, {result.errors} errors"
            )
        return result

    async def _dispatch_unit(self, unit_id: str, first: QueuedMessage) -> str:
        async with self.db.session() as session:
            repo = MessageRepository(session)
            queue = MessageQueue(session, self.config)
            if first.sequence_id:
                members = await repo.list_sequence(first.sequence_id)
            else:
                members = [await queue.get(first.id)]

            closed = [m for m in members if m.status in CLOSED]
            if first.sequence_id and closed:
                await queue.cancel_sequence(first.sequence_id, f"member {closed[0].id} {closed[0].status}")
                return "cancelled"

            pending = [m for m in members if m.status in DISPATCHABLE]
            if not pending:
                return "skipped"

            now = utc_now()
            limiter = RateLimiter(session, self.config.rate_limits)
            decision = await limiter.check(first.user_id, now)
            if not decision.allowed:
                await repo.reschedule([m.id for m in pending], decision.retry_at, decision.reason)
                return "deferred"

            outcome = "sent"
            sent_any = False
            for message in pending:
                if not await repo.claim(message.id):
                    # Taken or closed by someone else since selection
                    await session.refresh(message)
                    if message.sequence_id and message.status in CLOSED:
                        await queue.cancel_sequence(message.sequence_id, f"member {message.id} {message.status}")
                        outcome = "cancelled"
                    else:
                        outcome = "skipped"
                    break

                text = await self._prepare(session, queue, message)
                if text is None:
                    outcome = "cancelled"
                    break

                await self._send(session, message, text, unit_id, now)
                sent_any = True

            if sent_any:
                await limiter.record_send(first.user_id, now)
                return "sent"
            return outcome

    async def _prepare(self, session: AsyncSession, queue: MessageQueue, message: QueuedMessage) -> str | None:
        """Relevance-check and render a claimed message. None means it was taken off the send path."""
        if message.requires_fresh_context:
            relevance = await RelevanceChecker(session, self.classifier).check(message)
            if relevance.is_resolved:
                # Nothing left to say about a resolved entity, so no reformulation
                await queue.supersede(message.id, None, f"context_resolved: {relevance.reason}")
                return None
            if relevance.is_stale:
                await queue.supersede(message.id, None, f"stale: {relevance.reason}")
                if self.config.messaging.reformulate_stale:
                    await TaskQueue(session, self.config.tasks).enqueue(
                        "reformulate_message",
                        agent_type=message.source_agent,
                        payload=ReformulateMessage(
                            message_id=message.id,
                            reason=relevance.reason,
                            message_data=message.message_data,
                        ),
                        priority="high",
                        user_id=message.user_id,
                        context_type="queued_message",
                        context_id=message.id,
                        created_by="message_orchestrator",
                    )
                return None

        if message.final_text and not message.requires_fresh_context:
            return message.final_text
        try:
            return self.renderer.render(message)
        except BusinessRuleViolation as e:
            logger.error(f"Message {message.id} cannot be rendered: {e}")
            await queue.cancel(message.id, f"render_failed: {e}")
            return None

    async def _send(
        self, session: AsyncSession, message: QueuedMessage, text: str, unit_id: str, now: datetime
    ) -> None:
        delivered = await ConversationRepository(session).record(
            user_id=message.user_id,
            direction=MessageDirection.OUTBOUND.value,
            content=text,
            delivery_unit_id=unit_id,
            queued_message_id=message.id,
            created_at=now,
        )
        await EventLog(session).append(
            "message.ready",
            aggregate_id=message.id,
            aggregate_type="queued_message",
            payload=MessageReady(
                message_id=message.id,
                user_id=message.user_id,
                text=text,
                conversation_message_id=delivered.id,
                sequence_id=message.sequence_id,
                sequence_position=message.sequence_position,
                sequence_total=message.sequence_total,
            ),
            created_by="message_orchestrator",
        )
        marked = await MessageRepository(session).transition(
            message.id,
            (MessageStatus.PROCESSING.value,),
            MessageStatus.SENT.value,
            final_text=text,
            sent_at=now,
            delivered_message_id=delivered.id,
        )
        if not marked:
            raise BusinessRuleViolation(f"Message {message.id} left processing before send completed")
        logger.info(f"Sent message {message.id} to user {message.user_id} (unit {unit_id})")
