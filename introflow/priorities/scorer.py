"""Bounded heuristic scores for priority items."""

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.timezone import utc_now
from introflow.credits.ledger import CreditLedger
from introflow.db.models import (
    AccountType,
    ConnectionRequest,
    IntroOffer,
    IntroOpportunity,
    User,
)
from introflow.db.repositories.saga_repo import ConnectionRequestRepository, OpportunityRepository
from introflow.db.repositories.user_repo import UserRepository
from introflow.priorities.ledger import clamp_score

logger = logging.getLogger(__name__)

DECLINE_LOOKBACK = timedelta(days=30)
RICH_CONTEXT_CHARS = 100
BASE_CONNECTION_REQUEST_SCORE = 60
BASE_OFFER_SCORE = 70
DEFAULT_OFFER_BOUNTY = 25


def interests_match(user: User | None, company: str | None) -> bool:
    """True if any of the user's interests appears in the company name."""
    if user is None or not company or not user.interests:
        return False
    company = company.lower()
    return any(interest and interest.lower() in company for interest in user.interests)


def has_rich_context(context: str | None) -> bool:
    return len(context or "") > RICH_CONTEXT_CHARS


class PriorityScorer:
    """Scores saga instances for the priority ledger.

    Each score is a base value plus additive bonuses and penalties,
    clamped to [0, 100].
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.users = UserRepository(session)

    async def score_opportunity(self, opportunity: IntroOpportunity) -> int:
        """Score an opportunity for its connector.

        Base is the bounty; +20 when a connector interest matches the
        prospect company; +10 for a connector success rate above 0.7;
        -10 if the connector declined an opportunity in the last 30 days.
        """
        connector = await self.users.get_by_id(opportunity.connector_user_id)
        score = opportunity.bounty_credits
        if interests_match(connector, opportunity.subject_company):
            score += 20
        if connector is not None and (connector.intro_success_rate or 0) > 0.7:
            score += 10
        declines = await OpportunityRepository(self.session).count_declines_since(
            opportunity.connector_user_id, utc_now() - DECLINE_LOOKBACK
        )
        if declines:
            score -= 10
        return clamp_score(score)

    async def score_connection_request(self, request: ConnectionRequest) -> int:
        """Score a connection request for its introducee.

        Base 60; +10 per voucher up to +30; +10 for a requestor reputation
        above 80; +10 for a rich intro context; -5 when the introducee
        already has three or more open requests.
        """
        score = BASE_CONNECTION_REQUEST_SCORE
        score += min(10 * len(request.vouched_by_user_ids or []), 30)
        if request.requestor_user_id:
            requestor = await self.users.get_by_id(request.requestor_user_id)
            if requestor is not None and (requestor.reputation_score or 0) > 80:
                score += 10
        if has_rich_context(request.subject_context):
            score += 10
        backlog = await ConnectionRequestRepository(self.session).count_open_for_introducee(
            request.introducee_user_id
        )
        if backlog >= 3:
            score -= 5
        return clamp_score(score)

    async def score_offer(self, offer: IntroOffer) -> int:
        """Score an offer for its introducee.

        Base 70; +15 for an expert connector holding more than 100
        credits; +10 on an interest match; +10 for a rich prospect context;
        plus the bounty above the default when the introducee is a
        solution provider.
        """
        score = BASE_OFFER_SCORE
        connector = await self.users.get_by_id(offer.offering_user_id)
        if connector is not None and connector.expert_connector:
            balance = await CreditLedger(self.session).get_balance(connector.id)
            if balance > 100:
                score += 15
        introducee = await self.users.get_by_id(offer.introducee_user_id)
        if interests_match(introducee, offer.subject_company):
            score += 10
        if has_rich_context(offer.subject_context):
            score += 10
        if introducee is not None and introducee.account_type == AccountType.SOLUTION_PROVIDER.value:
            score += offer.bounty_credits - DEFAULT_OFFER_BOUNTY
        return clamp_score(score)
