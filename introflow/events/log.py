"""Append-only event log."""

import logging
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.errors import NotFoundError
from introflow.core.ids import new_id
from introflow.core.timezone import utc_now
from introflow.db.models import DeliveryStatus, Event
from introflow.db.repositories.event_repo import EventRepository
from introflow.domain.payloads import parse_event_payload

logger = logging.getLogger(__name__)


class EventLog:
    """Event log bound to one unit of work.

    Appending an event also creates its delivery row, so the event becomes
    visible to the event processor when the surrounding transaction commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = EventRepository(session)

    async def append(
        self,
        event_type: str,
        aggregate_id: str,
        aggregate_type: str,
        payload: dict[str, Any] | BaseModel,
        metadata: dict[str, Any] | None = None,
        created_by: str = "system",
    ) -> Event:
        """Validate and append an immutable event.

        Args:
            event_type: Registered event type (e.g. "intro.offer_accepted").
            aggregate_id: Identifier of the entity the event is about.
            aggregate_type: Kind of that entity.
            payload: Payload dict or model for the event type.
            metadata: Free-form producer metadata (trace ids, source).
            created_by: Producing agent or service.

        Returns:
            The appended Event.

        Raises:
            BusinessRuleViolation: Unknown event type or invalid payload.
        """
        model = parse_event_payload(event_type, payload)
        event = Event(
            id=new_id(),
            event_type=event_type,
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            payload=model.model_dump(mode="json", exclude={"kind"}),
            event_metadata=metadata or {},
            created_at=utc_now(),
            created_by=created_by,
        )
        await self.repo.append(event)
        logger.debug(f"Appended event {event.event_type} {event.id} for {aggregate_type}:{aggregate_id}")
        return event

    # Boundary name used by producers outside the engine
    publish_event = append

    async def redeliver(self, event_id: str) -> None:
        """Reset an event's delivery so handlers run again (manual replay)."""
        delivery = await self.repo.get_delivery(event_id)
        if delivery is None:
            raise NotFoundError(f"Event not found: {event_id}")
        delivery.status = DeliveryStatus.PENDING.value
        delivery.retry_count = 0
        delivery.processed_at = None
        await self.session.flush()
        logger.info(f"Event {event_id} queued for redelivery")

    async def history(self, aggregate_type: str, aggregate_id: str) -> list[Event]:
        """Events recorded for one aggregate, oldest first."""
        return await self.repo.list_by_aggregate(aggregate_type, aggregate_id)

    async def pending_count(self) -> int:
        """Events still awaiting delivery."""
        return await self.repo.count_pending()

    async def drain(self, reason: str = "drained") -> int:
        """Mark every pending delivery processed without running handlers (test/ops only)."""
        count = await self.repo.drain_pending(utc_now())
        logger.warning(f"Drained event queue ({reason}): {count} delivery(ies) skipped")
        return count
