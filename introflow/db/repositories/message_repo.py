"""Repository for the outbound message queue."""

from datetime import datetime

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import PRIORITY_RANK, MessageStatus, QueuedMessage
from introflow.db.repositories.base import BaseRepository

DISPATCHABLE = (MessageStatus.QUEUED.value, MessageStatus.APPROVED.value)
UNSENT = (MessageStatus.QUEUED.value, MessageStatus.APPROVED.value, MessageStatus.PROCESSING.value)

MESSAGE_PRIORITY_ORDER = case(PRIORITY_RANK, value=QueuedMessage.priority, else_=len(PRIORITY_RANK) + 1)


class MessageRepository(BaseRepository[QueuedMessage]):
    """Repository for message queue operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, QueuedMessage)

    async def list_due(self, now: datetime, limit: int) -> list[QueuedMessage]:
        """List queued or approved messages that are due.

        Ordered by priority rank, then scheduled time, then sequence position.
        """
        stmt = (
            select(QueuedMessage)
            .where(
                QueuedMessage.status.in_(DISPATCHABLE),
                QueuedMessage.scheduled_for <= now,
            )
            .order_by(
                MESSAGE_PRIORITY_ORDER,
                QueuedMessage.scheduled_for.asc(),
                QueuedMessage.sequence_position.asc(),
            )
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_sequence(self, sequence_id: str) -> list[QueuedMessage]:
        """List all members of a sequence in position order."""
        stmt = (
            select(QueuedMessage)
            .where(QueuedMessage.sequence_id == sequence_id)
            .order_by(QueuedMessage.sequence_position.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def claim(self, message_id: str) -> bool:
        """Conditionally move a message from queued/approved to processing.

        Returns:
            True if this caller now owns the send.
        """
        stmt = (
            update(QueuedMessage)
            .where(QueuedMessage.id == message_id, QueuedMessage.status.in_(DISPATCHABLE))
            .values(status=MessageStatus.PROCESSING.value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def transition(
        self,
        message_id: str,
        from_statuses: tuple[str, ...],
        to_status: str,
        **values: object,
    ) -> bool:
        """Conditionally change a message status.

        Args:
            message_id: Message to update.
            from_statuses: Statuses the row must currently hold.
            to_status: New status.
            **values: Extra column values to set.

        Returns:
            True if the row was updated.
        """
        stmt = (
            update(QueuedMessage)
            .where(QueuedMessage.id == message_id, QueuedMessage.status.in_(from_statuses))
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reschedule(self, message_ids: list[str], scheduled_for: datetime, reason: str) -> int:
        """Move queued or approved messages to a new scheduled time."""
        if not message_ids:
            return 0
        stmt = (
            update(QueuedMessage)
            .where(QueuedMessage.id.in_(message_ids), QueuedMessage.status.in_(DISPATCHABLE))
            .values(
                scheduled_for=scheduled_for,
                status_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def cancel_unsent_in_sequence(
        self,
        sequence_id: str,
        reason: str,
        incomplete: bool,
    ) -> int:
        """Cancel every unsent member of a sequence.

        Args:
            sequence_id: Sequence to cancel.
            reason: Stored as status_reason.
            incomplete: Flag the whole sequence as partially delivered.

        Returns:
            Number of members cancelled.
        """
        stmt = (
            update(QueuedMessage)
            .where(QueuedMessage.sequence_id == sequence_id, QueuedMessage.status.in_(UNSENT))
            .values(status=MessageStatus.CANCELLED.value, status_reason=reason)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if incomplete:
            await self.session.execute(
                update(QueuedMessage)
                .where(QueuedMessage.sequence_id == sequence_id)
                .values(sequence_incomplete=True)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    async def find_unsent_for_context(
        self,
        user_id: str | None,
        context_type: str,
        context_id: str,
        exclude_id: str | None = None,
        fresh_only: bool = False,
    ) -> list[QueuedMessage]:
        """Find not-yet-sent messages about one context.

        Args:
            user_id: Restrict to one recipient; None matches every recipient.
            context_type: Kind of entity the messages are about.
            context_id: Entity the messages are about.
            exclude_id: Message to leave out.
            fresh_only: Only messages that require fresh context at send time.
        """
        stmt = select(QueuedMessage).where(
            QueuedMessage.context_type == context_type,
            QueuedMessage.context_id == context_id,
            QueuedMessage.status.in_(DISPATCHABLE),
        )
        if user_id is not None:
            stmt = stmt.where(QueuedMessage.user_id == user_id)
        if fresh_only:
            stmt = stmt.where(QueuedMessage.requires_fresh_context.is_(True))
        if exclude_id is not None:
            stmt = stmt.where(QueuedMessage.id != exclude_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def queued_counts(self) -> dict[str, int]:
        """Count queued or approved messages grouped by priority."""
        stmt = (
            select(QueuedMessage.priority, func.count(QueuedMessage.id))
            .where(QueuedMessage.status.in_(DISPATCHABLE))
            .group_by(QueuedMessage.priority)
        )
        result = await self.session.execute(stmt)
        return {priority: count for priority, count in result.all()}

    async def list_for_user(self, user_id: str, status: str | None = None) -> list[QueuedMessage]:
        """List a user's messages, oldest first."""
        stmt = select(QueuedMessage).where(QueuedMessage.user_id == user_id)
        if status is not None:
            stmt = stmt.where(QueuedMessage.status == status)
        stmt = stmt.order_by(QueuedMessage.created_at.asc(), QueuedMessage.sequence_position.asc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def drain(self, reason: str) -> int:
        """Cancel every queued or approved message."""
        stmt = (
            update(QueuedMessage)
            .where(QueuedMessage.status.in_(DISPATCHABLE))
            .values(status=MessageStatus.CANCELLED.value, status_reason=reason)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0
