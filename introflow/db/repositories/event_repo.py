"""Repository for the event log and its delivery bookkeeping."""

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import DeliveryStatus, Event, EventDelivery
from introflow.db.repositories.base import BaseRepository


class EventRepository(BaseRepository[Event]):
    """Repository for event append, delivery polling and replay queries."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Event)

    async def append(self, event: Event) -> Event:
        """Insert an event together with its pending delivery row.

        Args:
            event: Fully populated Event instance.

        Returns:
            The persisted Event.
        """
        await self.add(event)
        await self.add(EventDelivery(event_id=event.id))
        return event

    async def list_pending(self, limit: int) -> list[tuple[Event, EventDelivery]]:
        """List undelivered events in creation order.

        Args:
            limit: Maximum number of events to return.

        Returns:
            List of (Event, EventDelivery) pairs, oldest first.
        """
        stmt = (
            select(Event, EventDelivery)
            .join(EventDelivery, EventDelivery.event_id == Event.id)
            .where(EventDelivery.status == DeliveryStatus.PENDING.value)
            .order_by(Event.created_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def get_delivery(self, event_id: str) -> EventDelivery | None:
        """Get the delivery row for an event."""
        return await self.session.get(EventDelivery, event_id)

    async def list_by_type(self, event_type: str, limit: int = 100) -> list[Event]:
        """List events of one type, newest first."""
        stmt = (
            select(Event)
            .where(Event.event_type == event_type)
            .order_by(Event.created_at.desc())
            .limit(limit)
        )
        return await self._all(stmt)

    async def list_by_aggregate(self, aggregate_type: str, aggregate_id: str) -> list[Event]:
        """List the history of one aggregate, oldest first."""
        stmt = (
            select(Event)
            .where(Event.aggregate_type == aggregate_type, Event.aggregate_id == aggregate_id)
            .order_by(Event.created_at.asc())
        )
        return await self._all(stmt)

    async def count_pending(self) -> int:
        """Count events still awaiting delivery."""
        stmt = select(func.count()).where(EventDelivery.status == DeliveryStatus.PENDING.value)
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def drain_pending(self, now: datetime) -> int:
        """Mark every pending delivery processed without running handlers.

        Returns:
            Number of deliveries drained.
        """
        stmt = (
            update(EventDelivery)
            .where(EventDelivery.status == DeliveryStatus.PENDING.value)
            .values(status=DeliveryStatus.PROCESSED.value, processed_at=now, last_error="drained")
        )
        return await self._rowcount(stmt)
