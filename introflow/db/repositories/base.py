"""Base repository shared by the IntroFlow repositories."""

from typing import Any, Generic, TypeVar

from sqlalchemy import Select, Update
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import Base

T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """Primary-key lookup, inserts and conditional updates for one model.

    Repositories never commit. The caller's unit of work (see
    ``DatabaseManager.session``) owns the transaction.
    """

    def __init__(self, session: AsyncSession, model_class: type[T]):
        self.session = session
        self.model_class = model_class

    async def get_by_id(self, id: str) -> T | None:
        """Get entity by primary key."""
        return await self.session.get(self.model_class, id)

    async def add(self, *entities: Base) -> None:
        """Stage new rows and flush so defaults and constraints apply now."""
        self.session.add_all(entities)
        await self.session.flush()

    async def _all(self, stmt: Select[Any]) -> list[Any]:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _rowcount(self, stmt: Update) -> int:
        """Execute a conditional update and return how many rows it matched.

        Core updates bypass the identity map; callers that hold loaded
        instances must refresh them.
        """
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0
