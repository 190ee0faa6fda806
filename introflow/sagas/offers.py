"""Intro offer saga with the two-step introducee/connector handshake."""

import logging
from datetime import datetime, timedelta

from introflow.core.timezone import utc_now
from introflow.db.models import AccountType, IntroOffer, OfferStatus
from introflow.db.repositories.saga_repo import OfferRepository
from introflow.domain.payloads import OfferConfirmationReminder, OfferExpiryCheck
from introflow.sagas.base import SagaService

logger = logging.getLogger(__name__)

_S = OfferStatus

CONFIRMATION_ITEM = "intro_offer_confirmation"
REMINDER_TASK = "intro_offer_confirmation_reminder"
EXPIRY_CHECK_TASK = "intro_offer_expiry_check"


class OfferSaga(SagaService[IntroOffer]):
    """Two-step handshake.

    ``pending_introducee_response`` -> (introducee accepts) ->
    ``pending_connector_confirmation`` -> (connector confirms) -> ``completed``.
    A decline ends in ``declined``. An unconfirmed acceptance gets one
    reminder after the first grace period and expires after the second.
    """

    variant = "intro_offer"
    item_type = "intro_offer"
    repository = OfferRepository
    transitions = {
        _S.PENDING_INTRODUCEE_RESPONSE.value: frozenset(
            {
                _S.PENDING_CONNECTOR_CONFIRMATION.value,
                _S.DECLINED.value,
                _S.EXPIRED.value,
                _S.CANCELLED.value,
            }
        ),
        _S.PENDING_CONNECTOR_CONFIRMATION.value: frozenset(
            {_S.COMPLETED.value, _S.EXPIRED.value, _S.CANCELLED.value}
        ),
    }

    async def resolve_bounty(self, introducee_user_id: str) -> int:
        """Bounty for a new offer.

        A solution-provider introducee with a configured warm intro rate
        sets the bounty; everyone else gets the default.
        """
        introducee = await self.users.get_by_id(introducee_user_id)
        if (
            introducee is not None
            and introducee.account_type == AccountType.SOLUTION_PROVIDER.value
            and introducee.warm_intro_bounty is not None
        ):
            return introducee.warm_intro_bounty
        return self.config.sagas.offer_bounty

    async def create(
        self,
        offering_user_id: str,
        introducee_user_id: str,
        subject_name: str,
        subject_company: str | None = None,
        subject_title: str | None = None,
        subject_context: str | None = None,
        context_type: str | None = None,
        context_id: str | None = None,
        bounty_credits: int | None = None,
        expires_at: datetime | None = None,
    ) -> IntroOffer:
        """Create an offer and surface it in the introducee's priorities."""
        if bounty_credits is None:
            bounty_credits = await self.resolve_bounty(introducee_user_id)
        offer = IntroOffer(
            offering_user_id=offering_user_id,
            introducee_user_id=introducee_user_id,
            subject_name=subject_name,
            subject_company=subject_company,
            subject_title=subject_title,
            subject_context=subject_context,
            context_type=context_type,
            context_id=context_id,
            bounty_credits=bounty_credits,
            status=_S.PENDING_INTRODUCEE_RESPONSE.value,
            expires_at=expires_at or utc_now() + timedelta(days=self.config.sagas.offer_expiry_days),
        )
        self.session.add(offer)
        await self.session.flush()

        await self.priorities.upsert_priority(
            introducee_user_id,
            self.item_type,
            offer.id,
            await self.scorer.score_offer(offer),
            metadata={"bounty": offer.bounty_credits, "offering_user_id": offering_user_id},
            summary=f"Offer of an intro to {subject_name}",
            primary_name=subject_name,
            secondary_name=subject_company,
            context=subject_context,
            expires_at=offer.expires_at,
        )
        logger.info(f"Created offer {offer.id} ({bounty_credits} credits) for introducee {introducee_user_id}")
        return offer

    async def close_loop_params(self, offer: IntroOffer) -> dict[str, str | int]:
        return {
            "subject_name": offer.subject_name,
            "introducee_name": await self.user_name(offer.introducee_user_id),
            "connector_name": await self.user_name(offer.offering_user_id),
            "bounty": offer.bounty_credits,
        }

    async def accept(self, offer_id: str, response: str | None = None) -> IntroOffer:
        """Introducee accepts: hand the offer to the connector for confirmation."""
        now = utc_now()
        offer = await self.transition(
            offer_id,
            _S.PENDING_CONNECTOR_CONFIRMATION.value,
            introducee_response=response,
            accepted_at=now,
        )
        await self.priorities.action_for_item(self.item_type, offer.id, user_id=offer.introducee_user_id)
        await self.priorities.upsert_priority(
            offer.offering_user_id,
            CONFIRMATION_ITEM,
            offer.id,
            await self.scorer.score_offer(offer),
            metadata={"introducee_user_id": offer.introducee_user_id},
            summary=f"Confirm your intro of {await self.user_name(offer.introducee_user_id)} to {offer.subject_name}",
            primary_name=offer.subject_name,
            secondary_name=offer.subject_company,
        )
        await self.tasks.enqueue(
            REMINDER_TASK,
            agent_type=self.config.sagas.notifying_agent,
            payload=OfferConfirmationReminder(offer_id=offer.id),
            scheduled_for=now + timedelta(days=self.config.sagas.confirmation_grace_days),
            user_id=offer.offering_user_id,
            context_type=self.variant,
            context_id=offer.id,
            created_by="offer_saga",
        )
        params = await self.close_loop_params(offer)
        await self.notify(offer.offering_user_id, "offer_accepted_connector", params, offer.id, "medium")
        return offer

    async def decline(self, offer_id: str, response: str | None = None) -> IntroOffer:
        offer = await self.transition(offer_id, _S.DECLINED.value, introducee_response=response)
        await self.priorities.action_for_item(self.item_type, offer.id)
        params = await self.close_loop_params(offer)
        await self.notify(offer.offering_user_id, "offer_declined_connector", params, offer.id)
        return offer

    async def send_confirmation_reminder(self, offer_id: str) -> bool:
        """Remind the connector once, then schedule the final expiry check.

        Returns:
            False if the offer no longer awaits confirmation or was already reminded.
        """
        offer = await self.get(offer_id)
        if offer.status != _S.PENDING_CONNECTOR_CONFIRMATION.value or offer.reminder_sent_at is not None:
            logger.info(f"Offer {offer_id} is {offer.status}, no reminder needed")
            return False

        now = utc_now()
        offer.reminder_sent_at = now
        await self.session.flush()
        params = await self.close_loop_params(offer)
        await self.notify(offer.offering_user_id, "offer_confirmation_reminder", params, offer.id, "medium")
        await self.tasks.enqueue(
            EXPIRY_CHECK_TASK,
            agent_type=self.config.sagas.notifying_agent,
            payload=OfferExpiryCheck(offer_id=offer.id),
            scheduled_for=now + timedelta(days=self.config.sagas.confirmation_final_grace_days),
            user_id=offer.offering_user_id,
            context_type=self.variant,
            context_id=offer.id,
            created_by="offer_saga",
        )
        logger.info(f"Sent confirmation reminder for offer {offer_id}")
        return True

    async def expire_unconfirmed(self, offer_id: str) -> bool:
        """Expire an offer the connector never confirmed.

        Returns:
            False if the offer was confirmed or closed in the meantime.
        """
        offer = await self.get(offer_id)
        if offer.status != _S.PENDING_CONNECTOR_CONFIRMATION.value:
            logger.info(f"Offer {offer_id} is {offer.status}, expiry check skipped")
            return False
        await self.close(offer_id, _S.EXPIRED.value, "connector_confirmation_timeout")
        params = await self.close_loop_params(offer)
        await self.notify(offer.offering_user_id, "offer_expired_connector", params, offer.id)
        return True

    async def _expire_items(self, saga: IntroOffer) -> None:
        await self.priorities.expire_for_item(self.item_type, saga.id)
        await self.priorities.expire_for_item(CONFIRMATION_ITEM, saga.id)
        for task_type in (REMINDER_TASK, EXPIRY_CHECK_TASK):
            await self.tasks.cancel_matching(task_type, self.variant, saga.id, reason=f"offer {saga.status}")
