"""Repository for user records read by the engine."""

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import User
from introflow.db.repositories.base import BaseRepository


class UserRepository(BaseRepository[User]):
    """Repository for user lookups."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, User)
