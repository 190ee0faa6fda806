"""Expiry sweep and operator force-close across saga variants."""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.core.errors import BusinessRuleViolation
from introflow.core.timezone import utc_now
from introflow.sagas.base import SagaService
from introflow.sagas.connection_requests import ConnectionRequestSaga
from introflow.sagas.offers import OfferSaga
from introflow.sagas.opportunities import OpportunitySaga

logger = logging.getLogger(__name__)

# Public variant names accepted by force_close
VARIANTS: dict[str, type[SagaService]] = {
    "opportunity": OpportunitySaga,
    "connection_request": ConnectionRequestSaga,
    "offer": OfferSaga,
}


def saga_for(variant: str, session: AsyncSession, config: Config | None = None) -> SagaService:
    """Service for a variant name.

    Raises:
        BusinessRuleViolation: Unknown variant.
    """
    service = VARIANTS.get(variant)
    if service is None:
        raise BusinessRuleViolation(f"Unknown saga variant: {variant}")
    return service(session, config)


async def sweep_expired(
    session: AsyncSession, config: Config | None = None, now: datetime | None = None
) -> dict[str, int]:
    """Expire every non-terminal saga past its expiry time.

    Returns:
        Number of sagas expired per variant.
    """
    now = now or utc_now()
    counts: dict[str, int] = {}
    for variant in VARIANTS:
        saga = saga_for(variant, session, config)
        expired = await saga.repo.list_past_expiry(now)
        for instance in expired:
            await saga.close(instance.id, "expired", "expired")
        counts[variant] = len(expired)
    if any(counts.values()):
        logger.info(f"Expiry sweep: {counts}")
    return counts


async def force_close(
    session: AsyncSession,
    variant: str,
    saga_id: str,
    reason: str,
    status: str = "expired",
    config: Config | None = None,
):
    """Operator close of a non-terminal saga.

    Raises:
        BusinessRuleViolation: Unknown variant or status.
        NotFoundError: No such saga.
        ExpiredReferenceError: The saga is already terminal.
    """
    saga = await saga_for(variant, session, config).close(saga_id, status, reason)
    logger.warning(f"Force-closed {variant} {saga_id} as {status}: {reason}")
    return saga
