"""Repositories for the introduction saga variants."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import (
    ConnectionRequest,
    ConnectionRequestStatus,
    IntroOffer,
    IntroOpportunity,
    OfferStatus,
    OpportunityStatus,
)
from introflow.db.repositories.base import BaseRepository

# Statuses after which a saga accepts no further transitions (shared by every variant)
SAGA_TERMINAL_STATUSES = frozenset({"completed", "declined", "cancelled", "expired"})

# Message and priority context types that point at a saga row
SAGA_CONTEXT_MODELS: dict[str, type[IntroOpportunity | ConnectionRequest | IntroOffer]] = {
    "intro_opportunity": IntroOpportunity,
    "connection_request": ConnectionRequest,
    "intro_offer": IntroOffer,
    "intro_offer_confirmation": IntroOffer,
}


async def saga_status(session: AsyncSession, context_type: str, context_id: str) -> str | None:
    """Current status of the saga a context points at, or None if it is not a saga context."""
    model = SAGA_CONTEXT_MODELS.get(context_type)
    if model is None:
        return None
    saga = await session.get(model, context_id, populate_existing=True)
    return saga.status if saga is not None else None


class OpportunityRepository(BaseRepository[IntroOpportunity]):
    """Repository for intro opportunities."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, IntroOpportunity)

    async def list_open_for_subject(self, subject_name: str, exclude_id: str) -> list[IntroOpportunity]:
        """Other open opportunities for the same subject (case-insensitive exact name match)."""
        stmt = select(IntroOpportunity).where(
            func.lower(IntroOpportunity.subject_name) == subject_name.lower(),
            IntroOpportunity.id != exclude_id,
            IntroOpportunity.status == OpportunityStatus.OPEN.value,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_declines_since(self, connector_user_id: str, since: datetime) -> int:
        """Count opportunities the connector declined since a timestamp."""
        stmt = select(func.count(IntroOpportunity.id)).where(
            IntroOpportunity.connector_user_id == connector_user_id,
            IntroOpportunity.status == OpportunityStatus.DECLINED.value,
            IntroOpportunity.updated_at >= since,
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def list_past_expiry(self, now: datetime) -> list[IntroOpportunity]:
        """Open or accepted opportunities whose expiry has passed."""
        stmt = select(IntroOpportunity).where(
            IntroOpportunity.status.in_((OpportunityStatus.OPEN.value, OpportunityStatus.ACCEPTED.value)),
            IntroOpportunity.expires_at.is_not(None),
            IntroOpportunity.expires_at <= now,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class ConnectionRequestRepository(BaseRepository[ConnectionRequest]):
    """Repository for connection requests."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ConnectionRequest)

    async def count_open_for_introducee(self, introducee_user_id: str) -> int:
        """Count open requests waiting on one introducee."""
        stmt = select(func.count(ConnectionRequest.id)).where(
            ConnectionRequest.introducee_user_id == introducee_user_id,
            ConnectionRequest.status == ConnectionRequestStatus.OPEN.value,
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def list_past_expiry(self, now: datetime) -> list[ConnectionRequest]:
        """Open or accepted requests whose expiry has passed."""
        stmt = select(ConnectionRequest).where(
            ConnectionRequest.status.in_(
                (ConnectionRequestStatus.OPEN.value, ConnectionRequestStatus.ACCEPTED.value)
            ),
            ConnectionRequest.expires_at.is_not(None),
            ConnectionRequest.expires_at <= now,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class OfferRepository(BaseRepository[IntroOffer]):
    """Repository for intro offers."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, IntroOffer)

    async def list_past_expiry(self, now: datetime) -> list[IntroOffer]:
        """Offers still awaiting the introducee whose expiry has passed.

        Offers awaiting connector confirmation expire through the
        reminder/expiry-check handshake instead.
        """
        stmt = select(IntroOffer).where(
            IntroOffer.status == OfferStatus.PENDING_INTRODUCEE_RESPONSE.value,
            IntroOffer.expires_at.is_not(None),
            IntroOffer.expires_at <= now,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
