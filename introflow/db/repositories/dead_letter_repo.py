"""Repository for dead-lettered events and tasks."""

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.errors import RetriesExhausted
from introflow.db.models import DeadLetter
from introflow.db.repositories.base import BaseRepository


class DeadLetterRepository(BaseRepository[DeadLetter]):
    """Repository for dead-letter store operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, DeadLetter)

    async def record(
        self,
        source: str,
        reference_id: str,
        item_type: str,
        payload: dict[str, Any],
        last_error: str,
        exhausted: RetriesExhausted,
        original_created_at: datetime | None = None,
    ) -> DeadLetter:
        """Copy a work item that ran out of attempts into the dead-letter store.

        Args:
            source: "event" or "task".
            reference_id: Event or task id.
            item_type: Event type or task type.
            payload: Original payload, for manual replay.
            last_error: Error from the final attempt.
            exhausted: Attempt count and per-attempt history.
            original_created_at: When the work item was created.

        Returns:
            The new DeadLetter row.
        """
        letter = DeadLetter(
            source=source,
            reference_id=reference_id,
            item_type=item_type,
            payload=payload,
            error_message=last_error,
            error_history=list(exhausted.error_history),
            attempt_count=exhausted.attempts,
            original_created_at=original_created_at,
        )
        await self.add(letter)
        return letter

    async def list_recent(self, limit: int = 50, source: str | None = None) -> list[DeadLetter]:
        """List dead letters, newest first.

        Args:
            limit: Maximum number of rows.
            source: Optional filter ("event" or "task").

        Returns:
            List of DeadLetter rows.
        """
        stmt = select(DeadLetter).order_by(DeadLetter.created_at.desc()).limit(limit)
        if source:
            stmt = stmt.where(DeadLetter.source == source)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_reference(self, source: str, reference_id: str) -> DeadLetter | None:
        """Get the dead letter recorded for one event or task."""
        stmt = select(DeadLetter).where(
            DeadLetter.source == source,
            DeadLetter.reference_id == reference_id,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()
