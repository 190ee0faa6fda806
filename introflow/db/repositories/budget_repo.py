"""Repository for per-user daily message budgets."""

from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import MessageBudget
from introflow.db.repositories.base import BaseRepository


class BudgetRepository(BaseRepository[MessageBudget]):
    """Repository for message budget rows keyed by (user_id, budget_date)."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, MessageBudget)

    async def get(self, user_id: str, budget_date: date) -> MessageBudget | None:
        """Get the budget row for a user and local date."""
        stmt = select(MessageBudget).where(
            MessageBudget.user_id == user_id,
            MessageBudget.budget_date == budget_date,
        ).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        user_id: str,
        budget_date: date,
        daily_limit: int,
        hourly_limit: int,
    ) -> MessageBudget:
        """Get or create the budget row for a user and local date.

        Args:
            user_id: User identifier.
            budget_date: Local calendar date.
            daily_limit: Limit stored on a newly created row.
            hourly_limit: Limit stored on a newly created row.

        Returns:
            Existing or newly created MessageBudget.
        """
        budget = await self.get(user_id, budget_date)
        if budget:
            return budget

        budget = MessageBudget(
            user_id=user_id,
            budget_date=budget_date,
            messages_sent=0,
            daily_limit=daily_limit,
            hourly_limit=hourly_limit,
            quiet_hours_enabled=True,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(budget)
        except IntegrityError:
            # Another dispatcher created the row first
            existing = await self.get(user_id, budget_date)
            if existing is None:
                raise
            return existing
        return budget

    async def increment(self, user_id: str, budget_date: date, sent_at: datetime) -> None:
        """Count one delivery unit against the day's budget."""
        stmt = (
            update(MessageBudget)
            .where(MessageBudget.user_id == user_id, MessageBudget.budget_date == budget_date)
            .values(messages_sent=MessageBudget.messages_sent + 1, last_message_at=sent_at)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
