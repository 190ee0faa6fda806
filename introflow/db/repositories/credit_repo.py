"""Repository for the credit ledger and cached balances."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import CreditBalance, CreditEvent
from introflow.db.repositories.base import BaseRepository


class CreditRepository(BaseRepository[CreditEvent]):
    """Repository for credit ledger lines."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, CreditEvent)

    async def get_by_key(self, idempotency_key: str) -> CreditEvent | None:
        """Get the ledger line recorded under an idempotency key."""
        stmt = select(CreditEvent).where(CreditEvent.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[CreditEvent]:
        """Ledger lines for a user, oldest first."""
        stmt = (
            select(CreditEvent)
            .where(CreditEvent.user_id == user_id)
            .order_by(CreditEvent.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def sum_processed(self, user_id: str) -> int:
        """Sum of processed ledger amounts for a user."""
        stmt = select(func.coalesce(func.sum(CreditEvent.amount), 0)).where(
            CreditEvent.user_id == user_id,
            CreditEvent.processed.is_(True),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar() or 0)

    async def get_balance(self, user_id: str) -> CreditBalance | None:
        """Get the cached balance row."""
        return await self.session.get(CreditBalance, user_id)

    async def set_balance(self, user_id: str, balance: int) -> CreditBalance:
        """Create or overwrite the cached balance row."""
        row = await self.get_balance(user_id)
        if row is None:
            row = CreditBalance(user_id=user_id, balance=balance)
            self.session.add(row)
        else:
            row.balance = balance
        await self.session.flush()
        return row
