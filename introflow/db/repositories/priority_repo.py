"""Repository for per-user priority items."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import PriorityItem, PriorityPresentation, PriorityStatus
from introflow.db.repositories.base import BaseRepository

OPEN_STATUSES = (PriorityStatus.ACTIVE.value, PriorityStatus.PRESENTED.value)
TERMINAL_STATUSES = (PriorityStatus.ACTIONED.value, PriorityStatus.EXPIRED.value)


class PriorityRepository(BaseRepository[PriorityItem]):
    """Repository for priority ledger lookups."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, PriorityItem)

    async def get_by_key(self, user_id: str, item_type: str, item_id: str) -> PriorityItem | None:
        """Get the unique item for (user_id, item_type, item_id)."""
        stmt = select(PriorityItem).where(
            PriorityItem.user_id == user_id,
            PriorityItem.item_type == item_type,
            PriorityItem.item_id == item_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_open_for_user(self, user_id: str) -> list[PriorityItem]:
        """Active or presented items for a user, best score first."""
        stmt = (
            select(PriorityItem)
            .where(PriorityItem.user_id == user_id, PriorityItem.status.in_(OPEN_STATUSES))
            .order_by(PriorityItem.value_score.desc(), PriorityItem.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_user(self, user_id: str, status: str | None = None) -> list[PriorityItem]:
        """All items for a user ordered by rank."""
        stmt = select(PriorityItem).where(PriorityItem.user_id == user_id)
        if status is not None:
            stmt = stmt.where(PriorityItem.status == status)
        stmt = stmt.order_by(PriorityItem.rank.asc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_item(self, item_type: str, item_id: str) -> list[PriorityItem]:
        """Every user's item pointing at one entity."""
        stmt = select(PriorityItem).where(
            PriorityItem.item_type == item_type,
            PriorityItem.item_id == item_id,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def presentation_for_event(self, event_id: str) -> PriorityPresentation | None:
        """The presentation recorded by a ``priority.presented`` event, if already applied."""
        stmt = select(PriorityPresentation).where(PriorityPresentation.source_event_id == event_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_presentations(self, priority_id: str) -> list[PriorityPresentation]:
        """Presentation history of one item, oldest first."""
        stmt = (
            select(PriorityPresentation)
            .where(PriorityPresentation.priority_id == priority_id)
            .order_by(PriorityPresentation.presented_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
