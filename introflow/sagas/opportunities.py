"""Intro opportunity saga: a connector is asked to introduce a prospect."""

import logging
from datetime import datetime, timedelta

from introflow.core.timezone import utc_now
from introflow.db.models import IntroOpportunity, OpportunityStatus
from introflow.db.repositories.saga_repo import OpportunityRepository
from introflow.sagas.base import SagaService

logger = logging.getLogger(__name__)

_S = OpportunityStatus


class OpportunitySaga(SagaService[IntroOpportunity]):
    """open -> accepted | declined | expired | cancelled; accepted -> completed | cancelled | expired."""

    variant = "intro_opportunity"
    item_type = "intro_opportunity"
    repository = OpportunityRepository
    transitions = {
        _S.OPEN.value: frozenset({_S.ACCEPTED.value, _S.DECLINED.value, _S.EXPIRED.value, _S.CANCELLED.value}),
        _S.ACCEPTED.value: frozenset({_S.COMPLETED.value, _S.CANCELLED.value, _S.EXPIRED.value}),
    }

    async def create(
        self,
        connector_user_id: str,
        subject_name: str,
        subject_company: str | None = None,
        subject_title: str | None = None,
        subject_context: str | None = None,
        requestor_user_id: str | None = None,
        bounty_credits: int | None = None,
        expires_at: datetime | None = None,
    ) -> IntroOpportunity:
        """Open an opportunity and surface it in the connector's priorities."""
        sagas = self.config.sagas
        opportunity = IntroOpportunity(
            connector_user_id=connector_user_id,
            requestor_user_id=requestor_user_id,
            subject_name=subject_name,
            subject_company=subject_company,
            subject_title=subject_title,
            subject_context=subject_context,
            bounty_credits=sagas.opportunity_bounty if bounty_credits is None else bounty_credits,
            status=_S.OPEN.value,
            expires_at=expires_at or utc_now() + timedelta(days=sagas.opportunity_expiry_days),
        )
        self.session.add(opportunity)
        await self.session.flush()

        await self.priorities.upsert_priority(
            connector_user_id,
            self.item_type,
            opportunity.id,
            await self.scorer.score_opportunity(opportunity),
            metadata={"bounty": opportunity.bounty_credits},
            summary=f"Introduce {subject_name}" + (f" ({subject_company})" if subject_company else ""),
            primary_name=subject_name,
            secondary_name=subject_company,
            context=subject_context,
            expires_at=opportunity.expires_at,
        )
        logger.info(f"Opened opportunity {opportunity.id} for connector {connector_user_id}: {subject_name}")
        return opportunity

    async def accept(self, opportunity_id: str, response: str | None = None) -> IntroOpportunity:
        return await self.transition(opportunity_id, _S.ACCEPTED.value, connector_response=response)

    async def decline(self, opportunity_id: str, response: str | None = None) -> IntroOpportunity:
        """Connector declines. The declined choice counts as the user's action on the item."""
        opportunity = await self.transition(opportunity_id, _S.DECLINED.value, connector_response=response)
        await self.priorities.action_for_item(self.item_type, opportunity.id)
        return opportunity
