"""Tests for the introduction sagas, completion side effects and expiry."""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from introflow.core.errors import BusinessRuleViolation, DuplicateOperationError, ExpiredReferenceError, NotFoundError
from introflow.core.timezone import utc_now
from introflow.credits.ledger import CreditLedger
from introflow.db.models import (
    AgentTask,
    ConnectionRequest,
    ConversationMessage,
    IntroOffer,
    IntroOpportunity,
    PriorityItem,
    QueuedMessage,
)
from introflow.db.repositories.priority_repo import PriorityRepository
from introflow.events.log import EventLog
from introflow.events.processor import EventProcessor
from introflow.messaging.orchestrator import MessageOrchestrator
from introflow.runtime.engine import build_registries
from introflow.sagas import (
    CompletionCoordinator,
    ConnectionRequestSaga,
    OfferSaga,
    OpportunitySaga,
    force_close,
    sweep_expired,
)
from introflow.tasks.dispatcher import TaskDispatcher
from introflow.tasks.queue import TaskQueue


async def publish(db_manager, event_type, aggregate_id, aggregate_type, payload):
    async with db_manager.session() as session:
        await EventLog(session).publish_event(event_type, aggregate_id, aggregate_type, payload)


async def process_events(db_manager, config):
    events, _ = build_registries()
    return await EventProcessor(db_manager, events, config).process_batch()


async def run_due_tasks(db_manager, config, task_type):
    """Pull a scheduled task forward and dispatch it."""
    async with db_manager.session() as session:
        await session.execute(
            update(AgentTask)
            .where(AgentTask.task_type == task_type, AgentTask.status == "pending")
            .values(scheduled_for=utc_now() - timedelta(minutes=1))
        )
    _, tasks = build_registries()
    return await TaskDispatcher(db_manager, tasks, config).dispatch_batch()


async def templates_for(db_manager, user_id) -> list[str]:
    async with db_manager.session() as session:
        result = await session.execute(select(QueuedMessage).where(QueuedMessage.user_id == user_id))
        return sorted(m.message_data.get("template") for m in result.scalars().all())


async def priority_status(db_manager, user_id, item_type, item_id) -> str:
    async with db_manager.session() as session:
        result = await session.execute(
            select(PriorityItem.status).where(
                PriorityItem.user_id == user_id,
                PriorityItem.item_type == item_type,
                PriorityItem.item_id == item_id,
            )
        )
        return result.scalar_one()


async def balance(db_manager, user_id) -> int:
    async with db_manager.session() as session:
        return await CreditLedger(session).get_balance(user_id)


class TestOpportunitySaga:
    """Test the opportunity state machine."""

    async def test_create_surfaces_priority(self, db_manager, config, add_user):
        connector = await add_user(name="Cora")
        async with db_manager.session() as session:
            opportunity = await OpportunitySaga(session, config).create(connector, "Sam", "Acme")

        assert opportunity.bounty_credits == 50
        assert opportunity.expires_at is not None
        assert await priority_status(db_manager, connector, "intro_opportunity", opportunity.id) == "active"

    async def test_transition_rules(self, db_manager, config, add_user):
        connector = await add_user()
        async with db_manager.session() as session:
            saga = OpportunitySaga(session, config)
            opportunity = await saga.create(connector, "Sam")

            with pytest.raises(BusinessRuleViolation):
                await saga.transition(opportunity.id, "completed")
            await saga.accept(opportunity.id)
            with pytest.raises(DuplicateOperationError):
                await saga.accept(opportunity.id)
            await saga.close(opportunity.id, "cancelled", "requestor withdrew")
            with pytest.raises(ExpiredReferenceError) as exc_info:
                await saga.accept(opportunity.id)
        assert exc_info.value.current_status == "cancelled"

    async def test_unknown_opportunity(self, db_manager, config):
        with pytest.raises(NotFoundError):
            async with db_manager.session() as session:
                await OpportunitySaga(session, config).accept("missing")

    async def test_decline_actions_priority(self, db_manager, config, add_user):
        connector = await add_user()
        async with db_manager.session() as session:
            saga = OpportunitySaga(session, config)
            opportunity = await saga.create(connector, "Sam")
            await saga.decline(opportunity.id, "not a fit")

        assert await priority_status(db_manager, connector, "intro_opportunity", opportunity.id) == "actioned"

    async def test_completion_via_events(self, db_manager, config, add_user):
        """Accept and complete: bounty paid once, competitors expired, both parties told."""
        connector = await add_user(name="Cora")
        rival = await add_user(name="Rex")
        requestor = await add_user(name="Rita")
        async with db_manager.session() as session:
            saga = OpportunitySaga(session, config)
            opportunity = await saga.create(connector, "Sam Lee", "Acme", requestor_user_id=requestor)
            competitor = await saga.create(rival, "sam lee", "Acme")

        await publish(
            db_manager, "intro.opportunity_accepted", opportunity.id, "intro_opportunity",
            {"opportunity_id": opportunity.id},
        )
        await process_events(db_manager, config)
        await publish(
            db_manager, "intro.opportunity_completed", opportunity.id, "intro_opportunity",
            {"opportunity_id": opportunity.id},
        )
        await process_events(db_manager, config)

        async with db_manager.session() as session:
            done = await session.get(IntroOpportunity, opportunity.id)
            lost = await session.get(IntroOpportunity, competitor.id)
        assert done.status == "completed"
        assert done.completed_at is not None
        assert lost.status == "expired"
        assert lost.closed_reason == f"subject introduced via opportunity {opportunity.id}"
        assert await balance(db_manager, connector) == 50
        assert await priority_status(db_manager, connector, "intro_opportunity", opportunity.id) == "actioned"
        assert await priority_status(db_manager, rival, "intro_opportunity", competitor.id) == "expired"
        assert await templates_for(db_manager, connector) == ["opportunity_completed_connector"]
        assert await templates_for(db_manager, requestor) == ["opportunity_completed_requestor"]

    async def test_completion_twice_rejected(self, db_manager, config, add_user):
        connector = await add_user()
        async with db_manager.session() as session:
            opportunity = await OpportunitySaga(session, config).create(connector, "Sam")
            await OpportunitySaga(session, config).accept(opportunity.id)
            coordinator = CompletionCoordinator(session, config)
            await coordinator.complete_opportunity(opportunity.id)
            with pytest.raises(ExpiredReferenceError):
                await coordinator.complete_opportunity(opportunity.id)

        assert await balance(db_manager, connector) == 50

    async def test_completion_withdraws_competitor_re_engagement(self, db_manager, config, add_user):
        """A nudge queued about a competing opportunity never goes out once the subject is introduced."""
        connector = await add_user(name="Cora")
        rival = await add_user(name="Rex")
        async with db_manager.session() as session:
            saga = OpportunitySaga(session, config)
            opportunity = await saga.create(connector, "Jane Doe")
            competitor = await saga.create(rival, "Jane Doe")
            item = await PriorityRepository(session).get_by_key(rival, "intro_opportunity", competitor.id)
            await TaskQueue(session).enqueue(
                "re_engagement_check", "matcher", {"priority_id": item.id},
                user_id=rival, context_type="intro_opportunity", context_id=competitor.id,
            )
        _, tasks = build_registries()
        await TaskDispatcher(db_manager, tasks, config).dispatch_batch()
        assert await templates_for(db_manager, rival) == ["re_engagement"]

        async with db_manager.session() as session:
            await OpportunitySaga(session, config).accept(opportunity.id)
            await CompletionCoordinator(session, config).complete_opportunity(opportunity.id)
        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        async with db_manager.session() as session:
            nudge = (await session.execute(select(QueuedMessage).where(QueuedMessage.user_id == rival))).scalar_one()
            sent_to = (await session.execute(select(ConversationMessage.user_id))).scalars().all()
        assert nudge.status == "cancelled"
        assert nudge.status_reason == "priority item expired"
        assert result.sent == 1
        assert sent_to == [connector]

    async def test_completion_does_not_match_name_patterns(self, db_manager, config, add_user):
        """Underscores and percent signs in a subject name are literal characters."""
        connector = await add_user()
        rival = await add_user()
        async with db_manager.session() as session:
            saga = OpportunitySaga(session, config)
            opportunity = await saga.create(connector, "Sam_Lee")
            lookalike = await saga.create(rival, "SamXLee")
            wildcard = await saga.create(rival, "%")
            same = await saga.create(rival, "SAM_LEE")
            await saga.accept(opportunity.id)
            await CompletionCoordinator(session, config).complete_opportunity(opportunity.id)

        async with db_manager.session() as session:
            statuses = {
                row.id: row.status
                for row in (await session.execute(select(IntroOpportunity))).scalars().all()
            }
        assert statuses[lookalike.id] == "open"
        assert statuses[wildcard.id] == "open"
        assert statuses[same.id] == "expired"


    async def test_cancel_via_event(self, db_manager, config, add_user):
        """A cancellation closes the saga once and expires its priority item."""
        connector = await add_user()
        async with db_manager.session() as session:
            opportunity = await OpportunitySaga(session, config).create(connector, "Sam")
        payload = {"opportunity_id": opportunity.id, "reason": "requestor withdrew"}

        await publish(db_manager, "intro.opportunity_cancelled", opportunity.id, "intro_opportunity", payload)
        assert (await process_events(db_manager, config)).processed == 1
        await publish(db_manager, "intro.opportunity_cancelled", opportunity.id, "intro_opportunity", payload)
        replay = await process_events(db_manager, config)

        assert replay.processed == 1
        assert replay.dead_lettered == 0
        async with db_manager.session() as session:
            cancelled = await session.get(IntroOpportunity, opportunity.id)
        assert cancelled.status == "cancelled"
        assert cancelled.closed_reason == "requestor withdrew"
        assert await priority_status(db_manager, connector, "intro_opportunity", opportunity.id) == "expired"


class TestOfferSaga:
    """Test the two-step offer handshake."""

    async def create_offer(self, db_manager, config, add_user, **introducee_fields):
        connector = await add_user(name="Cora")
        introducee = await add_user(name="Ivan", **introducee_fields)
        async with db_manager.session() as session:
            offer = await OfferSaga(session, config).create(connector, introducee, "Sam", "Acme")
        return connector, introducee, offer

    async def test_default_bounty(self, db_manager, config, add_user):
        _, introducee, offer = await self.create_offer(db_manager, config, add_user)
        assert offer.bounty_credits == 25
        assert offer.status == "pending_introducee_response"
        assert await priority_status(db_manager, introducee, "intro_offer", offer.id) == "active"

    async def test_solution_provider_bounty(self, db_manager, config, add_user):
        _, _, offer = await self.create_offer(
            db_manager, config, add_user, account_type="solution_provider", warm_intro_bounty=40
        )
        assert offer.bounty_credits == 40

    async def test_accept_hands_off_to_connector(self, db_manager, config, add_user):
        connector, introducee, offer = await self.create_offer(db_manager, config, add_user)
        async with db_manager.session() as session:
            accepted = await OfferSaga(session, config).accept(offer.id, "yes please")

        assert accepted.status == "pending_connector_confirmation"
        assert accepted.accepted_at is not None
        assert await priority_status(db_manager, introducee, "intro_offer", offer.id) == "actioned"
        assert await priority_status(db_manager, connector, "intro_offer_confirmation", offer.id) == "active"
        assert await templates_for(db_manager, connector) == ["offer_accepted_connector"]
        async with db_manager.session() as session:
            task = (await session.execute(select(AgentTask))).scalar_one()
        assert task.task_type == "intro_offer_confirmation_reminder"
        assert task.scheduled_for - accepted.accepted_at == timedelta(days=3)

    async def test_unconfirmed_offer_reminded_once_then_expired(self, db_manager, config, add_user):
        connector, _, offer = await self.create_offer(db_manager, config, add_user)
        async with db_manager.session() as session:
            await OfferSaga(session, config).accept(offer.id)

        result = await run_due_tasks(db_manager, config, "intro_offer_confirmation_reminder")
        assert result.completed == 1
        async with db_manager.session() as session:
            assert not await OfferSaga(session, config).send_confirmation_reminder(offer.id)

        result = await run_due_tasks(db_manager, config, "intro_offer_expiry_check")
        assert result.completed == 1

        async with db_manager.session() as session:
            expired = await session.get(IntroOffer, offer.id)
        assert expired.status == "expired"
        assert expired.reminder_sent_at is not None
        assert expired.closed_reason == "connector_confirmation_timeout"
        assert await templates_for(db_manager, connector) == [
            "offer_accepted_connector",
            "offer_confirmation_reminder",
            "offer_expired_connector",
        ]
        assert await priority_status(db_manager, connector, "intro_offer_confirmation", offer.id) == "expired"

    async def test_confirmation_completes_and_pays(self, db_manager, config, add_user):
        connector, introducee, offer = await self.create_offer(db_manager, config, add_user)
        await publish(db_manager, "intro.offer_accepted", offer.id, "intro_offer", {"offer_id": offer.id})
        await process_events(db_manager, config)
        await publish(
            db_manager, "intro.offer_confirmed", offer.id, "intro_offer",
            {"offer_id": offer.id, "confirmation": "sent the email"},
        )
        await process_events(db_manager, config)

        async with db_manager.session() as session:
            completed = await session.get(IntroOffer, offer.id)
            tasks = (await session.execute(select(AgentTask))).scalars().all()
        assert completed.status == "completed"
        assert completed.connector_confirmation == "sent the email"
        assert await balance(db_manager, connector) == 25
        assert [t.status for t in tasks] == ["cancelled"]
        assert await priority_status(db_manager, connector, "intro_offer_confirmation", offer.id) == "actioned"
        assert "offer_completed_introducee" in await templates_for(db_manager, introducee)

    async def test_reminder_skipped_after_completion(self, db_manager, config, add_user):
        _, _, offer = await self.create_offer(db_manager, config, add_user)
        async with db_manager.session() as session:
            await OfferSaga(session, config).accept(offer.id)
            await CompletionCoordinator(session, config).complete_offer(offer.id)
            assert not await OfferSaga(session, config).send_confirmation_reminder(offer.id)
            assert not await OfferSaga(session, config).expire_unconfirmed(offer.id)

    async def test_decline(self, db_manager, config, add_user):
        connector, introducee, offer = await self.create_offer(db_manager, config, add_user)
        async with db_manager.session() as session:
            declined = await OfferSaga(session, config).decline(offer.id, "no thanks")

        assert declined.status == "declined"
        assert await priority_status(db_manager, introducee, "intro_offer", offer.id) == "actioned"
        assert await templates_for(db_manager, connector) == ["offer_declined_connector"]


    async def test_cancel_via_event_drops_pending_tasks(self, db_manager, config, add_user):
        connector, _, offer = await self.create_offer(db_manager, config, add_user)
        async with db_manager.session() as session:
            await OfferSaga(session, config).accept(offer.id)

        await publish(
            db_manager, "intro.offer_cancelled", offer.id, "intro_offer", {"offer_id": offer.id, "reason": "duplicate"}
        )
        await process_events(db_manager, config)

        async with db_manager.session() as session:
            cancelled = await session.get(IntroOffer, offer.id)
            task = (await session.execute(select(AgentTask))).scalar_one()
        assert cancelled.status == "cancelled"
        assert cancelled.closed_reason == "duplicate"
        assert task.status == "cancelled"
        assert await priority_status(db_manager, connector, "intro_offer_confirmation", offer.id) == "expired"
        assert await balance(db_manager, connector) == 0


class TestConnectionRequestSaga:
    """Test connection requests."""

    async def test_complete_without_bounty_writes_no_credit(self, db_manager, config, add_user):
        introducee = await add_user(name="Ivan")
        requestor = await add_user(name="Rita")
        async with db_manager.session() as session:
            saga = ConnectionRequestSaga(session, config)
            request = await saga.create(introducee, "Sam", requestor_user_id=requestor, vouched_by_user_ids=["v1"])
            await saga.accept(request.id)
            await CompletionCoordinator(session, config).complete_connection_request(request.id)
            assert await CreditLedger(session).history(introducee) == []

        assert await templates_for(db_manager, introducee) == ["connection_request_completed_introducee"]
        assert await templates_for(db_manager, requestor) == ["connection_request_completed_requestor"]

    async def test_complete_with_bounty(self, db_manager, config, add_user):
        introducee = await add_user()
        async with db_manager.session() as session:
            saga = ConnectionRequestSaga(session, config)
            request = await saga.create(introducee, "Sam", bounty_credits=10)
            await saga.accept(request.id)
            await CompletionCoordinator(session, config).complete_connection_request(request.id)

        assert await balance(db_manager, introducee) == 10

    async def test_decline(self, db_manager, config, add_user):
        introducee = await add_user()
        async with db_manager.session() as session:
            saga = ConnectionRequestSaga(session, config)
            request = await saga.create(introducee, "Sam")
            declined = await saga.decline(request.id)

        assert declined.status == "declined"
        assert await priority_status(db_manager, introducee, "connection_request", request.id) == "actioned"


    async def test_cancel_via_event(self, db_manager, config, add_user):
        introducee = await add_user()
        async with db_manager.session() as session:
            request = await ConnectionRequestSaga(session, config).create(introducee, "Sam")

        await publish(
            db_manager, "connection.request_cancelled", request.id, "connection_request",
            {"request_id": request.id, "reason": "requestor found another path"},
        )
        await process_events(db_manager, config)

        async with db_manager.session() as session:
            cancelled = await session.get(ConnectionRequest, request.id)
        assert cancelled.status == "cancelled"
        assert cancelled.closed_reason == "requestor found another path"
        assert await priority_status(db_manager, introducee, "connection_request", request.id) == "expired"


class TestExpiry:
    """Test the expiry sweep and operator force-close."""

    async def test_sweep_expires_past_due_sagas(self, db_manager, config, add_user):
        connector = await add_user()
        introducee = await add_user()
        past = utc_now() - timedelta(hours=1)
        async with db_manager.session() as session:
            stale = await OpportunitySaga(session, config).create(connector, "Sam", expires_at=past)
            fresh = await OpportunitySaga(session, config).create(connector, "Pat")
            await ConnectionRequestSaga(session, config).create(introducee, "Sam", expires_at=past)

        async with db_manager.session() as session:
            counts = await sweep_expired(session, config)

        assert counts == {"opportunity": 1, "connection_request": 1, "offer": 0}
        async with db_manager.session() as session:
            assert (await session.get(IntroOpportunity, stale.id)).status == "expired"
            assert (await session.get(IntroOpportunity, fresh.id)).status == "open"
        assert await priority_status(db_manager, connector, "intro_opportunity", stale.id) == "expired"

    async def test_sweep_task(self, db_manager, config, add_user):
        connector = await add_user()
        async with db_manager.session() as session:
            await OpportunitySaga(session, config).create(connector, "Sam", expires_at=utc_now() - timedelta(days=1))
            await TaskQueue(session).enqueue("saga_expiry_sweep", "coordination_engine")

        result = await run_due_tasks(db_manager, config, "saga_expiry_sweep")
        assert result.completed == 1
        async with db_manager.session() as session:
            task = (await session.execute(select(AgentTask))).scalar_one()
        assert task.result_payload["opportunity"] == 1

    async def test_force_close(self, db_manager, config, add_user):
        connector = await add_user()
        async with db_manager.session() as session:
            opportunity = await OpportunitySaga(session, config).create(connector, "Sam")

        async with db_manager.session() as session:
            closed = await force_close(session, "opportunity", opportunity.id, "spam", status="cancelled")
        assert closed.status == "cancelled"
        assert closed.closed_reason == "spam"

        with pytest.raises(ExpiredReferenceError):
            async with db_manager.session() as session:
                await force_close(session, "opportunity", opportunity.id, "again")

    @pytest.mark.parametrize("variant,status", [("meeting", "expired"), ("opportunity", "completed")])
    async def test_force_close_rejects_bad_input(self, db_manager, config, add_user, variant, status):
        connector = await add_user()
        async with db_manager.session() as session:
            opportunity = await OpportunitySaga(session, config).create(connector, "Sam")

        with pytest.raises(BusinessRuleViolation):
            async with db_manager.session() as session:
                await force_close(session, variant, opportunity.id, "bad", status=status)
