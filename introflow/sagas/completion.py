"""Saga completion: the side effects that make a completed intro count.

Each completion runs as one unit of work inside the caller's transaction:

1. the saga moves to ``completed``;
2. the originating priority items are marked actioned;
3. for opportunities, other open opportunities for the same subject expire;
4. the bounty is credited under the key ``(completion type, saga id)``;
5. close-loop messages are queued for every party.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.core.timezone import utc_now
from introflow.credits.ledger import (
    CONNECTION_REQUEST_COMPLETED,
    INTRO_COMPLETED,
    INTRO_OFFER_COMPLETED,
    CreditLedger,
)
from introflow.db.models import (
    ConnectionRequest,
    ConnectionRequestStatus,
    IntroOffer,
    IntroOpportunity,
    OfferStatus,
    OpportunityStatus,
)
from introflow.sagas.connection_requests import ConnectionRequestSaga
from introflow.sagas.offers import CONFIRMATION_ITEM, EXPIRY_CHECK_TASK, REMINDER_TASK, OfferSaga
from introflow.sagas.opportunities import OpportunitySaga

logger = logging.getLogger(__name__)


class CompletionCoordinator:
    """Applies completion side effects for every saga variant."""

    def __init__(self, session: AsyncSession, config: Config | None = None):
        self.session = session
        self.config = config or Config()
        self.credits = CreditLedger(session)
        self.opportunities = OpportunitySaga(session, self.config)
        self.requests = ConnectionRequestSaga(session, self.config)
        self.offers = OfferSaga(session, self.config)

    async def complete_opportunity(self, opportunity_id: str) -> IntroOpportunity:
        """Complete an accepted opportunity and pay the connector."""
        saga = self.opportunities
        opportunity = await saga.transition(
            opportunity_id, OpportunityStatus.COMPLETED.value, completed_at=utc_now()
        )
        await saga.priorities.action_for_item(saga.item_type, opportunity.id)
        await saga.withdraw_messages(opportunity.id, OpportunityStatus.COMPLETED.value)

        # The subject is now introduced; competing asks for the same person are moot
        others = await saga.repo.list_open_for_subject(opportunity.subject_name, exclude_id=opportunity.id)
        for other in others:
            await saga.close(
                other.id, OpportunityStatus.EXPIRED.value, f"subject introduced via opportunity {opportunity.id}"
            )
        if others:
            logger.info(f"Expired {len(others)} competing opportunity(ies) for {opportunity.subject_name}")

        if opportunity.bounty_credits:
            await self.credits.append_credit(
                opportunity.connector_user_id,
                INTRO_COMPLETED,
                opportunity.bounty_credits,
                reference_type=saga.variant,
                reference_id=opportunity.id,
                description=f"Introduced {opportunity.subject_name}",
            )

        params = {
            "subject_name": opportunity.subject_name,
            "connector_name": await saga.user_name(opportunity.connector_user_id),
            "bounty": opportunity.bounty_credits,
        }
        await saga.notify(opportunity.connector_user_id, "opportunity_completed_connector", params, opportunity.id)
        await saga.notify(
            opportunity.requestor_user_id, "opportunity_completed_requestor", params, opportunity.id, "medium"
        )
        return opportunity

    async def complete_connection_request(self, request_id: str) -> ConnectionRequest:
        """Complete an accepted connection request and pay the introducee."""
        saga = self.requests
        request = await saga.transition(request_id, ConnectionRequestStatus.COMPLETED.value, completed_at=utc_now())
        await saga.priorities.action_for_item(saga.item_type, request.id)
        await saga.withdraw_messages(request.id, ConnectionRequestStatus.COMPLETED.value)

        if request.bounty_credits:
            await self.credits.append_credit(
                request.introducee_user_id,
                CONNECTION_REQUEST_COMPLETED,
                request.bounty_credits,
                reference_type=saga.variant,
                reference_id=request.id,
                description=f"Connected with {request.subject_name}",
            )

        params = {
            "subject_name": request.subject_name,
            "introducee_name": await saga.user_name(request.introducee_user_id),
            "bounty": request.bounty_credits,
        }
        await saga.notify(request.introducee_user_id, "connection_request_completed_introducee", params, request.id)
        await saga.notify(
            request.requestor_user_id, "connection_request_completed_requestor", params, request.id, "medium"
        )
        return request

    async def complete_offer(self, offer_id: str, confirmation: str | None = None) -> IntroOffer:
        """Connector confirms the intro: complete the offer and pay the connector."""
        saga = self.offers
        offer = await saga.transition(
            offer_id,
            OfferStatus.COMPLETED.value,
            connector_confirmation=confirmation,
            completed_at=utc_now(),
        )
        await saga.priorities.action_for_item(saga.item_type, offer.id)
        await saga.priorities.action_for_item(CONFIRMATION_ITEM, offer.id)
        await saga.withdraw_messages(offer.id, OfferStatus.COMPLETED.value)
        for task_type in (REMINDER_TASK, EXPIRY_CHECK_TASK):
            await saga.tasks.cancel_matching(task_type, saga.variant, offer.id, reason="offer completed")

        if offer.bounty_credits:
            await self.credits.append_credit(
                offer.offering_user_id,
                INTRO_OFFER_COMPLETED,
                offer.bounty_credits,
                reference_type=saga.variant,
                reference_id=offer.id,
                description=f"Introduced {offer.subject_name}",
            )

        params = await saga.close_loop_params(offer)
        await saga.notify(offer.offering_user_id, "offer_completed_connector", params, offer.id)
        await saga.notify(offer.introducee_user_id, "offer_completed_introducee", params, offer.id, "medium")
        return offer
