"""Repository for conversation messages exchanged with users."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.errors import DuplicateOperationError
from introflow.db.models import ConversationMessage, MessageDirection
from introflow.db.repositories.base import BaseRepository


class ConversationRepository(BaseRepository[ConversationMessage]):
    """Repository for conversation history lookups."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ConversationMessage)

    async def record(
        self,
        user_id: str,
        direction: str,
        content: str,
        delivery_unit_id: str | None = None,
        queued_message_id: str | None = None,
        created_at: datetime | None = None,
        source_event_id: str | None = None,
    ) -> ConversationMessage:
        """Append a conversation message.

        Raises:
            DuplicateOperationError: A message was already recorded from ``source_event_id``.
        """
        message = ConversationMessage(
            user_id=user_id,
            direction=direction,
            content=content,
            delivery_unit_id=delivery_unit_id,
            queued_message_id=queued_message_id,
            source_event_id=source_event_id,
        )
        if created_at is not None:
            message.created_at = created_at
        try:
            async with self.session.begin_nested():
                self.session.add(message)
        except IntegrityError as e:
            raise DuplicateOperationError(
                f"Message from event {source_event_id} already recorded", idempotency_key=source_event_id
            ) from e
        return message

    async def get_by_source_event(self, event_id: str) -> ConversationMessage | None:
        stmt = select(ConversationMessage).where(ConversationMessage.source_event_id == event_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def inbound_since(self, user_id: str, since: datetime, limit: int = 5) -> list[ConversationMessage]:
        """Most recent inbound messages at or after a timestamp, newest first."""
        stmt = (
            select(ConversationMessage)
            .where(
                ConversationMessage.user_id == user_id,
                ConversationMessage.direction == MessageDirection.INBOUND.value,
                ConversationMessage.created_at >= since,
            )
            .order_by(ConversationMessage.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_outbound_units_since(self, user_id: str, since: datetime) -> int:
        """Count distinct delivery units sent to a user since a timestamp.

        A multi-part sequence shares one delivery unit id and counts once.
        """
        stmt = select(func.count(func.distinct(ConversationMessage.delivery_unit_id))).where(
            ConversationMessage.user_id == user_id,
            ConversationMessage.direction == MessageDirection.OUTBOUND.value,
            ConversationMessage.created_at >= since,
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0
