"""Tests for the outbound message queue and orchestrator."""

from datetime import datetime, timedelta

from sqlalchemy import select, update

from introflow.core.timezone import local_date, utc_now
from introflow.db.models import (
    AgentTask,
    ConversationMessage,
    Event,
    IntroOpportunity,
    MessageDirection,
    PriorityItem,
    QueuedMessage,
)
from introflow.db.repositories.budget_repo import BudgetRepository
from introflow.db.repositories.conversation_repo import ConversationRepository
from introflow.events.log import EventLog
from introflow.events.processor import EventProcessor
from introflow.messaging.orchestrator import MessageOrchestrator
from introflow.messaging.queue import MessageQueue
from introflow.messaging.relevance import Relevance, RelevanceResult
from introflow.priorities.ledger import PriorityLedger
from introflow.runtime.engine import build_registries
from introflow.sagas import OpportunitySaga
from introflow.tasks.dispatcher import TaskDispatcher


async def enqueue(db_manager, config, user_id, data, **kwargs) -> list[str]:
    async with db_manager.session() as session:
        rows = await MessageQueue(session, config).enqueue_message(user_id, "matcher", data, **kwargs)
        return [row.id for row in rows]


async def load(db_manager, message_ids) -> list[QueuedMessage]:
    async with db_manager.session() as session:
        return [await session.get(QueuedMessage, message_id) for message_id in message_ids]


async def outbound_texts(db_manager, user_id) -> list[str]:
    async with db_manager.session() as session:
        result = await session.execute(
            select(ConversationMessage.content)
            .outerjoin(QueuedMessage, QueuedMessage.id == ConversationMessage.queued_message_id)
            .where(
                ConversationMessage.user_id == user_id,
                ConversationMessage.direction == MessageDirection.OUTBOUND.value,
            )
            .order_by(ConversationMessage.created_at, QueuedMessage.sequence_position)
        )
        return list(result.scalars().all())


async def reply(db_manager, user_id, content, at):
    async with db_manager.session() as session:
        await ConversationRepository(session).record(user_id, MessageDirection.INBOUND.value, content, created_at=at)


class TestMessageQueue:
    """Test enqueue, supersession and cancellation."""

    async def test_sequence_rows(self, db_manager, config, add_user):
        user_id = await add_user()
        ids = await enqueue(db_manager, config, user_id, {"text": "one"}, sequence=[{"text": "two"}, {"text": "three"}])

        messages = await load(db_manager, ids)
        assert len({m.sequence_id for m in messages}) == 1
        assert [m.sequence_position for m in messages] == [1, 2, 3]
        assert all(m.sequence_total == 3 for m in messages)

    async def test_supersede_existing_for_context(self, db_manager, config, add_user):
        user_id = await add_user()
        [old] = await enqueue(
            db_manager, config, user_id, {"text": "old"}, context_type="intro_offer", context_id="offer-1"
        )
        [new] = await enqueue(
            db_manager, config, user_id, {"text": "new"},
            context_type="intro_offer", context_id="offer-1", supersede_existing=True,
        )

        old_row, new_row = await load(db_manager, [old, new])
        assert old_row.status == "superseded"
        assert old_row.superseded_by == new
        assert new_row.status == "queued"

    async def test_cancel_member_cancels_sequence(self, db_manager, config, add_user):
        user_id = await add_user()
        ids = await enqueue(db_manager, config, user_id, {"text": "one"}, sequence=[{"text": "two"}])

        async with db_manager.session() as session:
            assert await MessageQueue(session, config).cancel(ids[1], "no longer needed")

        assert [m.status for m in await load(db_manager, ids)] == ["cancelled", "cancelled"]

    async def test_cancel_after_first_part_sent_marks_incomplete(self, db_manager, config, add_user):
        """Once part 1 went out, the rest is cancelled and the sequence flagged incomplete."""
        user_id = await add_user()
        ids = await enqueue(db_manager, config, user_id, {"text": "one"}, sequence=[{"text": "two"}, {"text": "three"}])
        async with db_manager.session() as session:
            first = await session.get(QueuedMessage, ids[0])
            first.status = "sent"

        async with db_manager.session() as session:
            assert await MessageQueue(session, config).cancel(ids[1], "opportunity resolved")

        messages = await load(db_manager, ids)
        assert [m.status for m in messages] == ["sent", "cancelled", "cancelled"]
        assert all(m.sequence_incomplete for m in messages[1:])

    async def test_optimal_send_time_uses_best_hours(self, db_manager, config, add_user):
        user_id = await add_user(response_pattern={"best_hours": [9, 17]})
        now = datetime(2026, 3, 10, 12, 0)
        async with db_manager.session() as session:
            queue = MessageQueue(session, config)
            assert await queue.calculate_optimal_send_time(user_id, now=now) == datetime(2026, 3, 10, 17, 0)
            assert await queue.calculate_optimal_send_time(user_id, can_delay=False, now=now) == now


class TestMessageOrchestrator:
    """Test delivery units, rate limits and pre-send checks."""

    async def test_sequence_sent_as_one_unit(self, db_manager, config, add_user):
        """All parts go out in order and the budget is charged once."""
        user_id = await add_user()
        ids = await enqueue(db_manager, config, user_id, {"text": "one"}, sequence=[{"text": "two"}, {"text": "three"}])

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.sent == 1
        assert await outbound_texts(db_manager, user_id) == ["one", "two", "three"]
        assert all(m.status == "sent" for m in await load(db_manager, ids))
        async with db_manager.session() as session:
            budget = await BudgetRepository(session).get(user_id, local_date(utc_now(), "UTC"))
            events = (await session.execute(select(Event).where(Event.event_type == "message.ready"))).scalars().all()
        assert budget.messages_sent == 1
        assert sorted(e.payload["sequence_position"] for e in events) == [1, 2, 3]

    async def test_closed_member_blocks_whole_sequence(self, db_manager, config, add_user):
        """If one part was closed, no part of the sequence is sent."""
        user_id = await add_user()
        ids = await enqueue(db_manager, config, user_id, {"text": "one"}, sequence=[{"text": "two"}, {"text": "three"}])
        async with db_manager.session() as session:
            member = await session.get(QueuedMessage, ids[1])
            member.status = "superseded"

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.cancelled == 1
        assert await outbound_texts(db_manager, user_id) == []
        assert [m.status for m in await load(db_manager, ids)] == ["cancelled", "superseded", "cancelled"]

    async def test_rate_limited_unit_deferred(self, db_manager, config, add_user):
        user_id = await add_user()
        now = utc_now()
        for unit in ("unit-1", "unit-2"):
            async with db_manager.session() as session:
                await ConversationRepository(session).record(
                    user_id, MessageDirection.OUTBOUND.value, "earlier", delivery_unit_id=unit,
                    created_at=now - timedelta(minutes=5),
                )
        [message_id] = await enqueue(db_manager, config, user_id, {"text": "later"})

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.deferred == 1
        [message] = await load(db_manager, [message_id])
        assert message.status == "queued"
        assert message.status_reason == "hourly_limit"
        assert message.scheduled_for > now

    async def test_final_text_used_without_fresh_context(self, db_manager, config, add_user):
        user_id = await add_user()
        await enqueue(db_manager, config, user_id, {"template": "re_engagement"}, final_text="pre-rendered")

        await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert await outbound_texts(db_manager, user_id) == ["pre-rendered"]

    async def test_template_rendered_at_send(self, db_manager, config, add_user):
        user_id = await add_user()
        await enqueue(
            db_manager, config, user_id,
            {"template": "offer_expired_connector", "params": {"introducee_name": "Ana", "subject_name": "Sam"}},
        )

        await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert await outbound_texts(db_manager, user_id) == ["Your offer to introduce Ana to Sam has expired."]

    async def test_render_failure_cancels(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(db_manager, config, user_id, {"template": "no_such_template"})

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.cancelled == 1
        [message] = await load(db_manager, [message_id])
        assert message.status == "cancelled"
        assert message.status_reason.startswith("render_failed")

    async def test_stale_message_superseded_and_reformulated(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(
            db_manager, config, user_id,
            {"text": "Want an intro to Sam?", "stale_if_reply_contains": ["already met"]},
            requires_fresh_context=True,
        )
        [queued] = await load(db_manager, [message_id])
        await reply(db_manager, user_id, "Actually I already met Sam", queued.created_at + timedelta(seconds=1))

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.cancelled == 1
        [message] = await load(db_manager, [message_id])
        assert message.status == "superseded"
        assert message.status_reason.startswith("stale")
        async with db_manager.session() as session:
            task = (await session.execute(select(AgentTask))).scalar_one()
        assert task.task_type == "reformulate_message"
        assert task.context_id == message_id
        assert task.priority == "high"

    async def test_contextual_reply_still_sent(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(
            db_manager, config, user_id,
            {"text": "Want an intro to Sam?", "stale_if_reply_contains": ["already met"]},
            requires_fresh_context=True,
        )
        [queued] = await load(db_manager, [message_id])
        await reply(db_manager, user_id, "thanks for yesterday", queued.created_at + timedelta(seconds=1))

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.sent == 1
        assert await outbound_texts(db_manager, user_id) == ["Want an intro to Sam?"]

    async def test_custom_classifier(self, db_manager, config, add_user):
        """A pluggable classifier decides staleness."""

        class AlwaysStale:
            async def classify(self, message, inbound):
                return RelevanceResult(Relevance.STALE, "model says stale")

        config.messaging.reformulate_stale = False
        user_id = await add_user()
        [message_id] = await enqueue(db_manager, config, user_id, {"text": "hi"}, requires_fresh_context=True)
        [queued] = await load(db_manager, [message_id])
        await reply(db_manager, user_id, "hello", queued.created_at + timedelta(seconds=1))

        await MessageOrchestrator(db_manager, config, classifier=AlwaysStale()).dispatch_batch()

        [message] = await load(db_manager, [message_id])
        assert message.status_reason == "stale: model says stale"
        async with db_manager.session() as session:
            assert (await session.execute(select(AgentTask))).first() is None

    async def test_message_about_resolved_saga_dropped(self, db_manager, config, add_user):
        """The entity is re-read before send, even when nothing withdrew the message."""
        user_id = await add_user()
        async with db_manager.session() as session:
            opportunity = await OpportunitySaga(session, config).create(user_id, "Jane Doe")
        [message_id] = await enqueue(
            db_manager, config, user_id, {"text": "Still keen to introduce Jane?"},
            requires_fresh_context=True, context_type="intro_opportunity", context_id=opportunity.id,
        )
        async with db_manager.session() as session:
            await session.execute(
                update(IntroOpportunity).where(IntroOpportunity.id == opportunity.id).values(status="declined")
            )

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.cancelled == 1
        [message] = await load(db_manager, [message_id])
        assert message.status == "superseded"
        assert message.status_reason == f"context_resolved: intro_opportunity {opportunity.id} is declined"
        assert await outbound_texts(db_manager, user_id) == []
        async with db_manager.session() as session:
            assert (await session.execute(select(AgentTask))).first() is None

    async def test_message_about_expired_priority_dropped(self, db_manager, config, add_user):
        user_id = await add_user()
        async with db_manager.session() as session:
            item = await PriorityLedger(session).upsert_priority(user_id, "community_request", "req-1", 60)
        [message_id] = await enqueue(
            db_manager, config, user_id, {"text": "Can you help with this request?"},
            requires_fresh_context=True, context_type="community_request", context_id="req-1",
        )
        async with db_manager.session() as session:
            await session.execute(update(PriorityItem).where(PriorityItem.id == item.id).values(status="expired"))

        await MessageOrchestrator(db_manager, config).dispatch_batch()

        [message] = await load(db_manager, [message_id])
        assert message.status_reason == "context_resolved: priority item for community_request:req-1 is expired"

    async def test_future_message_not_sent(self, db_manager, config, add_user):
        user_id = await add_user()
        await enqueue(db_manager, config, user_id, {"text": "later"}, scheduled_for=utc_now() + timedelta(hours=1))

        result = await MessageOrchestrator(db_manager, config).dispatch_batch()

        assert result.sent == 0
        assert await outbound_texts(db_manager, user_id) == []


class TestMessagingHandlers:
    """Test the inbound-message and reformulate handlers."""

    async def test_inbound_message_recorded(self, db_manager, config, add_user):
        user_id = await add_user()
        async with db_manager.session() as session:
            await EventLog(session).publish_event(
                "user.message_received", user_id, "user", {"user_id": user_id, "content": "hi there"}
            )

        events, _ = build_registries()
        await EventProcessor(db_manager, events, config).process_batch()

        async with db_manager.session() as session:
            inbound = await ConversationRepository(session).inbound_since(user_id, utc_now() - timedelta(minutes=1))
        assert [m.content for m in inbound] == ["hi there"]

    async def test_stale_message_replaced_by_fallback(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(
            db_manager, config, user_id,
            {
                "text": "Want an intro to Sam?",
                "stale_if_reply_contains": ["already met"],
                "fallback": {"text": "Glad you and Sam connected."},
            },
            requires_fresh_context=True, context_type="intro_opportunity", context_id="opp-1",
        )
        [queued] = await load(db_manager, [message_id])
        await reply(db_manager, user_id, "I already met Sam", queued.created_at + timedelta(seconds=1))

        await MessageOrchestrator(db_manager, config).dispatch_batch()
        _, tasks = build_registries()
        result = await TaskDispatcher(db_manager, tasks, config).dispatch_batch()

        assert result.completed == 1
        [stale] = await load(db_manager, [message_id])
        [replacement] = await load(db_manager, [stale.superseded_by])
        assert replacement.message_data == {"text": "Glad you and Sam connected."}
        assert replacement.context_id == "opp-1"
        assert replacement.status == "queued"

    async def test_stale_message_without_fallback_dropped(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(
            db_manager, config, user_id, {"text": "Still keen?", "stale_if_reply_contains": ["stop"]},
            requires_fresh_context=True,
        )
        [queued] = await load(db_manager, [message_id])
        await reply(db_manager, user_id, "please stop", queued.created_at + timedelta(seconds=1))

        await MessageOrchestrator(db_manager, config).dispatch_batch()
        _, tasks = build_registries()
        await TaskDispatcher(db_manager, tasks, config).dispatch_batch()

        async with db_manager.session() as session:
            rows = (await session.execute(select(QueuedMessage))).scalars().all()
        assert [(m.id, m.status) for m in rows] == [(message_id, "superseded")]

    async def report_delivery(self, db_manager, config, message_id, status, error=None):
        payload = {"message_id": message_id, "status": status, "error": error}
        async with db_manager.session() as session:
            await EventLog(session).publish_event("message.delivery_status", message_id, "queued_message", payload)
        events, _ = build_registries()
        return await EventProcessor(db_manager, events, config).process_batch()

    async def sent_row(self, db_manager, message_id) -> ConversationMessage:
        async with db_manager.session() as session:
            result = await session.execute(
                select(ConversationMessage).where(ConversationMessage.queued_message_id == message_id)
            )
            return result.scalar_one()

    async def test_delivery_outcome_recorded(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(db_manager, config, user_id, {"text": "Hello"})
        await MessageOrchestrator(db_manager, config).dispatch_batch()

        result = await self.report_delivery(db_manager, config, message_id, "delivered")

        assert result.dead_lettered == 0
        sent = await self.sent_row(db_manager, message_id)
        assert sent.delivery_status == "delivered"
        assert sent.delivery_error is None
        assert sent.delivery_status_at is not None

    async def test_failed_delivery_keeps_error(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(db_manager, config, user_id, {"text": "Hello"})
        await MessageOrchestrator(db_manager, config).dispatch_batch()

        await self.report_delivery(db_manager, config, message_id, "failed", "recipient blocked sender")

        sent = await self.sent_row(db_manager, message_id)
        assert sent.delivery_status == "failed"
        assert sent.delivery_error == "recipient blocked sender"

    async def test_conflicting_delivery_report_ignored(self, db_manager, config, add_user):
        """The first final outcome wins; replays and late contradictions change nothing."""
        user_id = await add_user()
        [message_id] = await enqueue(db_manager, config, user_id, {"text": "Hello"})
        await MessageOrchestrator(db_manager, config).dispatch_batch()

        await self.report_delivery(db_manager, config, message_id, "delivered")
        first = (await self.sent_row(db_manager, message_id)).delivery_status_at
        await self.report_delivery(db_manager, config, message_id, "delivered")
        result = await self.report_delivery(db_manager, config, message_id, "failed", "timeout")

        assert result.dead_lettered == 0
        sent = await self.sent_row(db_manager, message_id)
        assert sent.delivery_status == "delivered"
        assert sent.delivery_error is None
        assert sent.delivery_status_at == first

    async def test_delivery_report_for_unsent_message_dead_letters(self, db_manager, config, add_user):
        user_id = await add_user()
        [message_id] = await enqueue(
            db_manager, config, user_id, {"text": "Later"}, scheduled_for=utc_now() + timedelta(days=1)
        )

        result = await self.report_delivery(db_manager, config, message_id, "delivered")

        assert result.dead_lettered == 1
        [queued] = await load(db_manager, [message_id])
        assert queued.status == "queued"
