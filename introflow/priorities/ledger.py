"""Per-user priority ledger with presentation and dormancy tracking."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import PriorityConfig, TaskQueueConfig
from introflow.core.errors import DuplicateOperationError, ExpiredReferenceError, NotFoundError
from introflow.core.timezone import utc_now
from introflow.db.models import PresentationType, PriorityItem, PriorityPresentation, PriorityStatus
from introflow.db.repositories.priority_repo import OPEN_STATUSES, TERMINAL_STATUSES, PriorityRepository
from introflow.messaging.queue import MessageQueue
from introflow.tasks.queue import TaskQueue

logger = logging.getLogger(__name__)

NEW_ITEM_RANK = 999

# Task type cancelled when an item stops being surfaced
RE_ENGAGEMENT_TASK = "re_engagement_check"


def clamp_score(score: float) -> int:
    """Clamp a heuristic score into [0, 100]."""
    return int(max(0, min(100, round(score))))


class PriorityLedger:
    """Priority ledger operations bound to one unit of work.

    State machine per item::

        active -> presented -> dormant   (after ``dormancy_threshold`` presentations)
        active|presented|dormant -> actioned | expired   (terminal)
        dormant -> active                 (new signal via upsert_priority)
    """

    def __init__(
        self,
        session: AsyncSession,
        config: PriorityConfig | None = None,
        task_config: TaskQueueConfig | None = None,
    ):
        self.session = session
        self.config = config or PriorityConfig()
        self.task_config = task_config
        self.repo = PriorityRepository(session)

    async def get(self, priority_id: str) -> PriorityItem:
        item = await self.repo.get_by_id(priority_id)
        if item is None:
            raise NotFoundError(f"Priority item not found: {priority_id}")
        return item

    async def upsert_priority(
        self,
        user_id: str,
        item_type: str,
        item_id: str,
        value_score: float,
        metadata: dict[str, Any] | None = None,
        summary: str | None = None,
        primary_name: str | None = None,
        secondary_name: str | None = None,
        context: str | None = None,
        expires_at: datetime | None = None,
    ) -> PriorityItem:
        """Insert or refresh the item for (user_id, item_type, item_id).

        A dormant item is reactivated. An actioned or expired item is left
        untouched and returned as is.

        Args:
            user_id: Owner of the item.
            item_type: Kind of entity (e.g. "intro_opportunity").
            item_id: Entity identifier.
            value_score: Heuristic score, clamped to [0, 100].
            metadata: Free-form item metadata.
            summary: Denormalized one-line summary.
            primary_name: Denormalized main name shown to the user.
            secondary_name: Denormalized secondary name (e.g. company).
            context: Denormalized context text.
            expires_at: Optional expiry of the underlying entity.

        Returns:
            The PriorityItem row.
        """
        score = clamp_score(value_score)
        item = await self.repo.get_by_key(user_id, item_type, item_id)

        if item is None:
            item = PriorityItem(
                user_id=user_id,
                item_type=item_type,
                item_id=item_id,
                rank=NEW_ITEM_RANK,
                value_score=score,
                status=PriorityStatus.ACTIVE.value,
                presentation_count=0,
                item_metadata=metadata or {},
                item_summary=summary,
                item_primary_name=primary_name,
                item_secondary_name=secondary_name,
                item_context=context,
                expires_at=expires_at,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(item)
            except IntegrityError:
                # Concurrent insert of the same key: fall through to the update path
                item = await self.repo.get_by_key(user_id, item_type, item_id)
                if item is None:
                    raise
            else:
                logger.info(f"Added priority {item_type}:{item_id} for user {user_id} (score {score})")
                await self.rerank(user_id)
                return item

        if item.status in TERMINAL_STATUSES:
            logger.info(f"Priority {item_type}:{item_id} for user {user_id} is {item.status}, upsert ignored")
            return item

        if item.status == PriorityStatus.DORMANT.value:
            item.status = PriorityStatus.ACTIVE.value
            item.presentation_count = 0
            item.dormant_at = None
            logger.info(f"Reactivated dormant priority {item.id} ({item_type}:{item_id})")

        item.value_score = score
        if metadata is not None:
            item.item_metadata = metadata
        if summary is not None:
            item.item_summary = summary
        if primary_name is not None:
            item.item_primary_name = primary_name
        if secondary_name is not None:
            item.item_secondary_name = secondary_name
        if context is not None:
            item.item_context = context
        if expires_at is not None:
            item.expires_at = expires_at
        item.updated_at = utc_now()
        await self.session.flush()
        await self.rerank(user_id)
        return item

    async def mark_presented(
        self,
        priority_id: str,
        presentation_type: str = PresentationType.NATURAL.value,
        source_event_id: str | None = None,
    ) -> PriorityItem:
        """Record that the item was surfaced to its user.

        Args:
            priority_id: Item that was surfaced.
            presentation_type: natural or dedicated.
            source_event_id: Event reporting the presentation. A presentation
                already recorded for it is not counted again.

        Raises:
            ExpiredReferenceError: The item is dormant, actioned or expired.
            DuplicateOperationError: A concurrent writer recorded the same event.
        """
        item = await self.get(priority_id)
        if source_event_id and await self.repo.presentation_for_event(source_event_id):
            logger.info(f"Presentation of {priority_id} from event {source_event_id} already recorded")
            return item
        if item.status not in OPEN_STATUSES:
            raise ExpiredReferenceError(
                f"Priority {priority_id} is {item.status}, not presentable",
                current_status=item.status,
            )

        now = utc_now()
        try:
            async with self.session.begin_nested():
                self.session.add(
                    PriorityPresentation(
                        priority_id=item.id,
                        presentation_type=presentation_type,
                        source_event_id=source_event_id,
                        presented_at=now,
                    )
                )
        except IntegrityError as e:
            raise DuplicateOperationError(
                f"Presentation from event {source_event_id} already recorded", idempotency_key=source_event_id
            ) from e

        item.presentation_count += 1
        item.last_presented_at = now
        item.last_presentation_type = presentation_type
        item.status = PriorityStatus.PRESENTED.value

        if item.presentation_count >= self.config.dormancy_threshold:
            item.status = PriorityStatus.DORMANT.value
            item.dormant_at = now
            logger.info(
                f"Priority {priority_id} dormant after {item.presentation_count} presentations"
            )
            await TaskQueue(self.session, self.task_config).cancel_matching(
                RE_ENGAGEMENT_TASK,
                context_type=item.item_type,
                context_id=item.item_id,
                reason="item_marked_dormant",
            )
        else:
            logger.info(f"Priority {priority_id} presented ({presentation_type}, #{item.presentation_count})")

        await self.session.flush()
        await self.rerank(item.user_id)
        return item

    async def mark_actioned(self, priority_id: str) -> PriorityItem:
        """Mark the item acted upon. Repeating the call is a no-op.

        Raises:
            ExpiredReferenceError: The item already expired.
        """
        item = await self.get(priority_id)
        if item.status == PriorityStatus.ACTIONED.value:
            return item
        if item.status == PriorityStatus.EXPIRED.value:
            raise ExpiredReferenceError(f"Priority {priority_id} already expired", current_status=item.status)
        item.status = PriorityStatus.ACTIONED.value
        item.actioned_at = utc_now()
        await self.session.flush()
        await self._withdraw_messages(item, "item actioned")
        await self.rerank(item.user_id)
        logger.info(f"Priority {priority_id} actioned")
        return item

    async def mark_expired(self, priority_id: str) -> PriorityItem:
        """Expire the item. Repeating the call is a no-op.

        Raises:
            ExpiredReferenceError: The item was already actioned.
        """
        item = await self.get(priority_id)
        if item.status == PriorityStatus.EXPIRED.value:
            return item
        if item.status == PriorityStatus.ACTIONED.value:
            raise ExpiredReferenceError(f"Priority {priority_id} already actioned", current_status=item.status)
        item.status = PriorityStatus.EXPIRED.value
        await self.session.flush()
        await self._withdraw_messages(item, "item expired")
        await self.rerank(item.user_id)
        logger.info(f"Priority {priority_id} expired")
        return item

    async def _withdraw_messages(self, item: PriorityItem, reason: str) -> None:
        # Re-surfacing messages about a resolved item must not go out
        await MessageQueue(self.session).withdraw_for_context(
            item.item_type, item.item_id, f"priority {reason}", user_id=item.user_id
        )

    async def action_for_item(self, item_type: str, item_id: str, user_id: str | None = None) -> int:
        """Mark every non-terminal item pointing at an entity as actioned.

        Returns:
            Number of items changed.
        """
        changed = 0
        for item in await self.repo.list_for_item(item_type, item_id):
            if user_id is not None and item.user_id != user_id:
                continue
            if item.status not in TERMINAL_STATUSES:
                await self.mark_actioned(item.id)
                changed += 1
        return changed

    async def expire_for_item(self, item_type: str, item_id: str, user_id: str | None = None) -> int:
        """Expire every non-terminal item pointing at an entity.

        Returns:
            Number of items changed.
        """
        changed = 0
        for item in await self.repo.list_for_item(item_type, item_id):
            if user_id is not None and item.user_id != user_id:
                continue
            if item.status not in TERMINAL_STATUSES:
                await self.mark_expired(item.id)
                changed += 1
        return changed

    async def rerank(self, user_id: str) -> None:
        """Re-rank a user's open items 1..n by score, best first."""
        for rank, item in enumerate(await self.repo.list_open_for_user(user_id), start=1):
            item.rank = rank
        await self.session.flush()

    async def presentable_for_user(self, user_id: str, limit: int | None = None) -> list[PriorityItem]:
        """Items that may be surfaced proactively, in rank order."""
        items = await self.repo.list_open_for_user(user_id)
        return items[:limit] if limit is not None else items
