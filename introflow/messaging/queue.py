"""Outbound message queue: enqueue, supersession and cancellation."""

import logging
from datetime import datetime, time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.core.errors import BusinessRuleViolation, NotFoundError
from introflow.core.ids import new_id
from introflow.core.timezone import next_local_time, utc_now
from introflow.db.models import PRIORITY_RANK, MessageStatus, QueuedMessage
from introflow.db.repositories.conversation_repo import ConversationRepository
from introflow.db.repositories.message_repo import UNSENT, MessageRepository
from introflow.db.repositories.user_repo import UserRepository
from introflow.messaging.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class MessageQueue:
    """Message queue operations bound to one unit of work."""

    def __init__(self, session: AsyncSession, config: Config | None = None):
        self.session = session
        self.config = config or Config()
        self.repo = MessageRepository(session)

    async def enqueue_message(
        self,
        user_id: str,
        source_agent: str,
        message_data: dict[str, Any],
        priority: str = "medium",
        scheduled_for: datetime | None = None,
        sequence: list[dict[str, Any]] | None = None,
        requires_fresh_context: bool = False,
        context_type: str | None = None,
        context_id: str | None = None,
        final_text: str | None = None,
        supersede_existing: bool = False,
    ) -> list[QueuedMessage]:
        """Queue a standalone message or a multi-part sequence.

        Args:
            user_id: Recipient.
            source_agent: Agent that composed the message.
            message_data: Template/params or text for the (first) message.
            priority: urgent, high, medium or low.
            scheduled_for: Earliest send time (defaults to now).
            sequence: Further parts sent after ``message_data`` as one
                all-or-nothing delivery unit.
            requires_fresh_context: Re-check relevance and re-render right before send.
            context_type: Kind of entity the message is about.
            context_id: Entity the message is about.
            final_text: Pre-rendered text, used unless fresh context is required.
            supersede_existing: Supersede unsent messages for the same user and context.

        Returns:
            The queued rows in sequence order.
        """
        if priority not in PRIORITY_RANK:
            raise BusinessRuleViolation(f"Invalid priority: {priority}")

        parts = [message_data, *(sequence or [])]
        sequence_id = new_id() if len(parts) > 1 else None
        scheduled_for = scheduled_for or utc_now()

        rows = []
        for position, data in enumerate(parts, start=1):
            row = QueuedMessage(
                id=new_id(),
                user_id=user_id,
                source_agent=source_agent,
                message_data=data,
                final_text=final_text if position == 1 else None,
                scheduled_for=scheduled_for,
                priority=priority,
                status=MessageStatus.QUEUED.value,
                sequence_id=sequence_id,
                sequence_position=position if sequence_id else None,
                sequence_total=len(parts) if sequence_id else None,
                requires_fresh_context=requires_fresh_context,
                context_type=context_type,
                context_id=context_id,
                created_at=utc_now(),
            )
            self.session.add(row)
            rows.append(row)
        await self.session.flush()

        if supersede_existing and context_type and context_id:
            older = await self.repo.find_unsent_for_context(user_id, context_type, context_id)
            new_ids = {row.id for row in rows}
            for message in older:
                if message.id not in new_ids:
                    await self.supersede(message.id, rows[0].id, "replaced by a newer message")

        logger.info(
            f"Queued {len(rows)} message(s) for user {user_id} from {source_agent} "
            f"({priority}, {scheduled_for})"
        )
        return rows

    async def get(self, message_id: str) -> QueuedMessage:
        message = await self.repo.get_by_id(message_id)
        if message is None:
            raise NotFoundError(f"Message not found: {message_id}")
        return message

    async def supersede(self, message_id: str, by: str | None, reason: str) -> bool:
        """Take an unsent message off the send path, keeping it for audit.

        A superseded sequence member cancels the rest of its sequence.

        Returns:
            False if the message was already sent or closed.
        """
        message = await self.get(message_id)
        if message.status not in UNSENT:
            return False
        message.status = MessageStatus.SUPERSEDED.value
        message.superseded_by = by
        message.status_reason = reason
        await self.session.flush()
        logger.info(f"Message {message_id} superseded: {reason}")
        if message.sequence_id:
            await self.cancel_sequence(message.sequence_id, f"sequence member superseded: {reason}")
        return True

    async def cancel(self, message_id: str, reason: str) -> bool:
        """Cancel an unsent message; a sequence member cancels its whole sequence."""
        message = await self.get(message_id)
        if message.status not in UNSENT:
            return False
        if message.sequence_id:
            await self.cancel_sequence(message.sequence_id, reason)
            return True
        message.status = MessageStatus.CANCELLED.value
        message.status_reason = reason
        await self.session.flush()
        logger.info(f"Message {message_id} cancelled: {reason}")
        return True

    async def cancel_sequence(self, sequence_id: str, reason: str) -> int:
        """Cancel every unsent member of a sequence.

        If any member was already delivered the sequence is flagged
        incomplete; it is never retried as a new sequence.

        Returns:
            Number of members cancelled.
        """
        members = await self.repo.list_sequence(sequence_id)
        partially_sent = any(m.status == MessageStatus.SENT.value for m in members)
        count = await self.repo.cancel_unsent_in_sequence(sequence_id, reason, incomplete=partially_sent)
        # Core update above bypasses the identity map
        for member in members:
            await self.session.refresh(member)
        if partially_sent:
            logger.warning(f"Sequence {sequence_id} incomplete, {count} unsent part(s) cancelled: {reason}")
        else:
            logger.info(f"Sequence {sequence_id} cancelled ({count} part(s)): {reason}")
        return count

    async def withdraw_for_context(
        self, context_type: str, context_id: str, reason: str, user_id: str | None = None
    ) -> int:
        """Cancel unsent fresh-context messages about an entity that was resolved.

        Close-loop notifications (which do not require fresh context) are
        left alone so they can still report the outcome.

        Returns:
            Number of delivery units cancelled.
        """
        messages = await self.repo.find_unsent_for_context(user_id, context_type, context_id, fresh_only=True)
        count = 0
        for message in messages:
            await self.session.refresh(message)
            if await self.cancel(message.id, reason):
                count += 1
        if count:
            logger.info(f"Withdrew {count} queued message(s) about {context_type}:{context_id}: {reason}")
        return count

    async def record_delivery_status(self, message_id: str, status: str, error: str | None = None) -> bool:
        """Store the gateway's delivery outcome on the sent conversation message.

        Reporting the outcome already stored is a no-op. Once a final
        outcome is stored a conflicting report is logged and ignored.

        Returns:
            True if the outcome was stored.

        Raises:
            NotFoundError: Unknown message.
            BusinessRuleViolation: The message was never sent.
        """
        message = await self.get(message_id)
        if message.status != MessageStatus.SENT.value or message.delivered_message_id is None:
            raise BusinessRuleViolation(f"Message {message_id} is {message.status}, no delivery to report")
        sent = await ConversationRepository(self.session).get_by_id(message.delivered_message_id)
        if sent is None:
            raise NotFoundError(f"Conversation message not found: {message.delivered_message_id}")

        if sent.delivery_status == status:
            logger.debug(f"Message {message_id} already marked {status}")
            return False
        if sent.delivery_status is not None:
            logger.warning(
                f"Message {message_id} already marked {sent.delivery_status}, ignoring {status} report"
            )
            return False

        sent.delivery_status = status
        sent.delivery_error = error
        sent.delivery_status_at = utc_now()
        await self.session.flush()
        if status == "failed":
            logger.warning(f"Delivery of message {message_id} to user {message.user_id} failed: {error}")
        else:
            logger.info(f"Message {message_id} delivered to user {message.user_id}")
        return True

    async def calculate_optimal_send_time(
        self, user_id: str, can_delay: bool = True, now: datetime | None = None
    ) -> datetime:
        """Best time to reach a user.

        Now if the message cannot wait or the user is active; otherwise the
        next of the user's best response hours (local), defaulting to the
        configured send hour.
        """
        now = now or utc_now()
        limiter = RateLimiter(self.session, self.config.rate_limits)
        if not can_delay or await limiter.is_user_active(user_id, now):
            return now

        user = await UserRepository(self.session).get_by_id(user_id)
        tz = limiter.timezone_for(user)
        pattern = (user.response_pattern if user else None) or {}
        best_hours = pattern.get("best_hours") or [self.config.messaging.default_send_hour]
        candidates = [
            next_local_time(now, tz, time(int(hour) % 24, 0))
            for hour in best_hours
        ]
        return min(candidates)

    async def queued_counts(self) -> dict[str, int]:
        """Queued or approved messages by priority."""
        return await self.repo.queued_counts()

    async def drain(self, reason: str = "drained") -> int:
        """Cancel every queued or approved message (test/ops only)."""
        count = await self.repo.drain(reason)
        logger.warning(f"Drained message queue: {count} message(s) cancelled")
        return count

