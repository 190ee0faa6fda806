"""Event processor: at-least-once delivery of logged events to handlers."""

import logging
from dataclasses import dataclass

from introflow.core.config import Config
from introflow.core.errors import (
    BusinessRuleViolation,
    DuplicateOperationError,
    ExpiredReferenceError,
    RetriesExhausted,
)
from introflow.core.logging import get_dead_letter_logger
from introflow.core.timezone import utc_now
from introflow.db.database import DatabaseManager
from introflow.db.models import DeadLetterSource, DeliveryStatus, Event, EventDelivery
from introflow.db.repositories.dead_letter_repo import DeadLetterRepository
from introflow.db.repositories.event_repo import EventRepository
from introflow.domain.payloads import parse_event_payload
from introflow.events.registry import HandlerContext, HandlerRegistry

logger = logging.getLogger(__name__)
dead_letters = get_dead_letter_logger()


@dataclass
class EventBatchResult:
    """Outcome counts for one processing pass."""

    processed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0


class EventProcessor:
    """Polls pending deliveries and runs every handler subscribed to each event.

    Delivery is at-least-once: handlers and the delivery update commit in
    the same transaction, and a failed attempt is retried on a later poll
    until ``max_retries`` is reached, after which the event is copied to the
    dead-letter store.
    """

    def __init__(self, db_manager: DatabaseManager, registry: HandlerRegistry, config: Config):
        self.db = db_manager
        self.registry = registry
        self.config = config

    async def process_batch(self, limit: int | None = None) -> EventBatchResult:
        """Deliver up to ``limit`` pending events, oldest first."""
        limit = limit or self.config.events.batch_size
        async with self.db.session() as session:
            pending = await EventRepository(session).list_pending(limit)

        result = EventBatchResult()
        for event, _ in pending:
            outcome = await self._deliver(event)
            setattr(result, outcome, getattr(result, outcome) + 1)

        if pending:
            logger.info(
                f"Event batch: {result.processed} processed, {result.failed} failed, "
                f"{result.dead_lettered} dead-lettered, {result.skipped} skipped"
            )
        return result

    async def _deliver(self, event: Event) -> str:
        try:
            async with self.db.session() as session:
                delivery = await EventRepository(session).get_delivery(event.id)
                if delivery is None or delivery.status != DeliveryStatus.PENDING.value:
                    return "skipped"

                handlers = self.registry.handlers_for(event.event_type)
                if not handlers:
                    logger.debug(f"No handler for {event.event_type}, marking {event.id} processed")
                else:
                    payload = parse_event_payload(event.event_type, event.payload)
                    ctx = HandlerContext(event=event, payload=payload, session=session, config=self.config)
                    for registered in handlers:
                        try:
                            async with session.begin_nested():
                                await registered.handler(ctx)
                        except (ExpiredReferenceError, DuplicateOperationError) as e:
                            logger.info(
                                f"Handler '{registered.description}' no-op for {event.event_type} "
                                f"{event.id}: {e}"
                            )

                delivery.status = DeliveryStatus.PROCESSED.value
                delivery.processed_at = utc_now()
            return "processed"
        except BusinessRuleViolation as e:
            logger.error(f"Event {event.id} ({event.event_type}) violates a business rule: {e}")
            await self._dead_letter(event, str(e))
            return "dead_lettered"
        except Exception as e:
            logger.warning(f"Event {event.id} ({event.event_type}) handler failed: {e}")
            return await self._record_failure(event, str(e))

    async def _record_failure(self, event: Event, error: str) -> str:
        max_retries = self.config.events.max_retries
        async with self.db.session() as session:
            delivery = await EventRepository(session).get_delivery(event.id)
            if delivery is None or delivery.status != DeliveryStatus.PENDING.value:
                return "skipped"
            self._append_error(delivery, error)
            if delivery.retry_count < max_retries:
                logger.info(f"Event {event.id} will retry ({delivery.retry_count}/{max_retries})")
                return "failed"
            exhausted = RetriesExhausted(
                f"Event {event.id} failed {delivery.retry_count} times",
                attempts=delivery.retry_count,
                error_history=delivery.error_history,
            )

        await self._dead_letter(event, error, exhausted)
        return "dead_lettered"

    async def _dead_letter(self, event: Event, error: str, exhausted: RetriesExhausted | None = None) -> None:
        """Move an event to the dead-letter store.

        Without ``exhausted`` the failure was not retryable: this attempt is
        recorded and is the last one.
        """
        async with self.db.session() as session:
            delivery = await EventRepository(session).get_delivery(event.id)
            if delivery is None:
                return
            if exhausted is None:
                self._append_error(delivery, error)
                exhausted = RetriesExhausted(
                    f"Event {event.id} is not retryable",
                    attempts=delivery.retry_count,
                    error_history=delivery.error_history,
                )
            await DeadLetterRepository(session).record(
                source=DeadLetterSource.EVENT.value,
                reference_id=event.id,
                item_type=event.event_type,
                payload=event.payload,
                last_error=error,
                exhausted=exhausted,
                original_created_at=event.created_at,
            )
            delivery.status = DeliveryStatus.DEAD_LETTERED.value
            delivery.processed_at = utc_now()
        logger.error(f"{exhausted}, moved to dead-letter store ({event.event_type})")
        dead_letters.error(f"event {event.event_type} {event.id} after {exhausted.attempts} attempt(s): {error}")

    @staticmethod
    def _append_error(delivery: EventDelivery, error: str) -> None:
        now = utc_now()
        delivery.retry_count += 1
        delivery.last_error = error
        delivery.last_error_at = now
        delivery.error_history = [
            *delivery.error_history,
            {"attempt": delivery.retry_count, "error": error, "at": now.isoformat()},
        ]
