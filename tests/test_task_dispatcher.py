"""Tests for the task queue and dispatcher."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from introflow.core.config import TaskQueueConfig
from introflow.core.errors import BusinessRuleViolation, DuplicateOperationError
from introflow.core.timezone import utc_now
from introflow.db.models import AgentActionLog, AgentTask, DeadLetter, Event, User
from introflow.events.log import EventLog
from introflow.events.processor import EventProcessor
from introflow.runtime.engine import build_registries
from introflow.tasks.dispatcher import TaskDispatcher
from introflow.tasks.queue import TaskQueue, backoff_delay
from introflow.tasks.registry import TaskHandlerRegistry, TaskResult

SWEEP = "saga_expiry_sweep"


async def enqueue(db_manager, task_type=SWEEP, payload=None, **kwargs) -> str:
    async with db_manager.session() as session:
        return await TaskQueue(session).enqueue(task_type, "test_agent", payload, **kwargs)


async def get_task(db_manager, task_id) -> AgentTask:
    async with db_manager.session() as session:
        return await session.get(AgentTask, task_id)


class TestBackoff:
    """Test exponential backoff."""

    def test_doubles_per_retry(self):
        """Each retry waits twice as long as the previous one."""
        config = TaskQueueConfig(initial_backoff_seconds=60, max_backoff_seconds=3600)
        assert [backoff_delay(n, config).total_seconds() for n in range(4)] == [60, 120, 240, 480]

    def test_capped(self):
        """Backoff never exceeds the configured maximum."""
        config = TaskQueueConfig(initial_backoff_seconds=60, max_backoff_seconds=300)
        assert backoff_delay(10, config) == timedelta(seconds=300)


class TestTaskQueue:
    """Test enqueue validation and cancellation."""

    async def test_enqueue_defaults(self, db_manager):
        """New tasks are pending, due now, with the configured retry budget."""
        task_id = await enqueue(db_manager)

        task = await get_task(db_manager, task_id)
        assert task.status == "pending"
        assert task.retry_count == 0
        assert task.max_retries == 3
        assert task.scheduled_for <= utc_now()

    async def test_enqueue_rejects_unknown_type(self, db_manager):
        """Unknown task types are refused at the boundary."""
        with pytest.raises(BusinessRuleViolation, match="Unknown task type"):
            await enqueue(db_manager, task_type="fold_laundry")

    async def test_enqueue_rejects_invalid_priority(self, db_manager):
        """Priorities outside urgent/high/medium/low are refused."""
        with pytest.raises(BusinessRuleViolation, match="Invalid priority"):
            await enqueue(db_manager, priority="whenever")

    async def test_cancel_matching(self, db_manager):
        """Pending tasks for one context can be cancelled together."""
        keep = await enqueue(
            db_manager, "intro_offer_expiry_check", {"offer_id": "o-2"}, context_type="intro_offer",
            context_id="o-2",
        )
        drop = await enqueue(
            db_manager, "intro_offer_expiry_check", {"offer_id": "o-1"}, context_type="intro_offer",
            context_id="o-1",
        )

        async with db_manager.session() as session:
            count = await TaskQueue(session).cancel_matching(
                "intro_offer_expiry_check", "intro_offer", "o-1", reason="offer completed"
            )

        assert count == 1
        assert (await get_task(db_manager, drop)).status == "cancelled"
        assert (await get_task(db_manager, keep)).status == "pending"


class TestTaskDispatcher:
    """Test claiming and execution."""

    async def test_completes_task_and_publishes_task_ready(self, db_manager, config):
        """A successful handler completes the task; the claim publishes task.ready."""
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            return TaskResult.ok(expired=0)

        task_id = await enqueue(db_manager)
        result = await TaskDispatcher(db_manager, registry, config).dispatch_batch()

        assert result.completed == 1
        task = await get_task(db_manager, task_id)
        assert task.status == "completed"
        assert task.result_payload == {"expired": 0}
        assert task.completed_at is not None

        async with db_manager.session() as session:
            events = (await session.execute(select(Event).where(Event.event_type == "task.ready"))).scalars().all()
            actions = (await session.execute(select(AgentActionLog))).scalars().all()
        assert [e.aggregate_id for e in events] == [task_id]
        assert len(actions) == 1
        assert actions[0].task_id == task_id
        assert actions[0].error is None

    async def test_concurrent_dispatchers_claim_once(self, db_manager, config):
        """Two dispatchers racing for one task execute it exactly once."""
        calls = []
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            calls.append(ctx.task.id)
            await asyncio.sleep(0)

        task_id = await enqueue(db_manager)
        first, second = await asyncio.gather(
            TaskDispatcher(db_manager, registry, config).dispatch_batch(),
            TaskDispatcher(db_manager, registry, config).dispatch_batch(),
        )

        assert calls == [task_id]
        assert first.completed + second.completed == 1
        assert first.skipped + second.skipped == 1

    async def test_retry_with_backoff(self, db_manager, config):
        """A retryable failure goes back to pending after the backoff delay."""
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            return TaskResult.failed("upstream timeout", retry=True)

        task_id = await enqueue(db_manager)
        before = utc_now()
        result = await TaskDispatcher(db_manager, registry, config).dispatch_batch()

        assert result.retried == 1
        task = await get_task(db_manager, task_id)
        assert task.status == "pending"
        assert task.retry_count == 1
        assert task.scheduled_for >= before + timedelta(seconds=config.tasks.initial_backoff_seconds)
        assert "upstream timeout" in task.error_log

        # Not due again until the backoff passes
        assert (await TaskDispatcher(db_manager, registry, config).dispatch_batch()).retried == 0

    async def test_exhausted_retries_dead_letter(self, db_manager, config):
        """A task failing on its last attempt is failed and dead-lettered."""
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            raise RuntimeError("still broken")

        task_id = await enqueue(db_manager, max_retries=1)
        result = await TaskDispatcher(db_manager, registry, config).dispatch_batch()

        assert result.failed == 1
        task = await get_task(db_manager, task_id)
        assert task.status == "failed"
        async with db_manager.session() as session:
            letter = (await session.execute(select(DeadLetter))).scalar_one()
        assert letter.source == "task"
        assert letter.reference_id == task_id
        assert "still broken" in letter.error_message
        assert letter.attempt_count == 1
        assert [h["attempt"] for h in letter.error_history] == [1]
        assert "still broken" in letter.error_history[0]["error"]
        assert task.error_history == letter.error_history

    async def test_handler_writes_roll_back_on_failure(self, db_manager, config):
        """A failing handler's writes are discarded while the action log is kept."""
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            ctx.session.add(User(id="half-done"))
            await ctx.session.flush()
            raise RuntimeError("boom")

        await enqueue(db_manager)
        await TaskDispatcher(db_manager, registry, config).dispatch_batch()

        async with db_manager.session() as session:
            assert await session.get(User, "half-done") is None
            action = (await session.execute(select(AgentActionLog))).scalar_one()
        assert "boom" in action.error

    async def test_business_rule_violation_fails_without_retry(self, db_manager, config):
        """Business-rule violations are not retried even with budget left."""
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            raise BusinessRuleViolation("offer already closed")

        task_id = await enqueue(db_manager)
        result = await TaskDispatcher(db_manager, registry, config).dispatch_batch()

        assert result.failed == 1
        task = await get_task(db_manager, task_id)
        assert task.status == "failed"
        assert task.retry_count == 1

    async def test_duplicate_operation_completes(self, db_manager, config):
        """A duplicate operation is a successful no-op."""
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            raise DuplicateOperationError("already swept", idempotency_key="sweep:1")

        task_id = await enqueue(db_manager)
        await TaskDispatcher(db_manager, registry, config).dispatch_batch()

        task = await get_task(db_manager, task_id)
        assert task.status == "completed"
        assert task.result_payload == {"duplicate": "sweep:1"}

    async def test_task_without_local_handler_is_handed_off(self, db_manager, config):
        """Known task types with no in-process handler stay processing for external workers."""
        task_id = await enqueue(db_manager, "re_engagement_check", {"note": "nudge"})
        result = await TaskDispatcher(db_manager, TaskHandlerRegistry(), config).dispatch_batch()

        assert result.handed_off == 1
        assert (await get_task(db_manager, task_id)).status == "processing"
        async with db_manager.session() as session:
            event = (await session.execute(select(Event))).scalar_one()
        assert event.event_type == "task.ready"
        assert event.payload["context"] == {"priority_id": None, "note": "nudge"}

    async def test_unknown_task_type_fails_without_retry(self, db_manager, config):
        """A row with an unregistered task type is failed on first dispatch."""
        async with db_manager.session() as session:
            session.add(AgentTask(id="odd", task_type="fold_laundry", agent_type="butler"))

        result = await TaskDispatcher(db_manager, TaskHandlerRegistry(), config).dispatch_batch()

        assert result.failed == 1
        task = await get_task(db_manager, "odd")
        assert task.status == "failed"
        assert "Unknown task type" in task.error_log

    async def test_priority_order(self, db_manager, config):
        """Urgent tasks are dispatched before lower priorities."""
        order = []
        registry = TaskHandlerRegistry()

        @registry.task(SWEEP, "sweep")
        async def sweep(ctx):
            order.append(ctx.task.priority)

        for priority in ("low", "urgent", "medium"):
            await enqueue(db_manager, priority=priority)
        await TaskDispatcher(db_manager, registry, config).dispatch_batch()

        assert order == ["urgent", "medium", "low"]


async def backdate_lease(db_manager, task_id, seconds):
    async with db_manager.session() as session:
        await session.execute(
            update(AgentTask)
            .where(AgentTask.id == task_id)
            .values(last_attempted_at=utc_now() - timedelta(seconds=seconds))
        )


async def make_due(db_manager, task_id):
    async with db_manager.session() as session:
        await session.execute(update(AgentTask).where(AgentTask.id == task_id).values(scheduled_for=utc_now()))


async def report(db_manager, config, event_type, payload):
    async with db_manager.session() as session:
        await EventLog(session).publish_event(event_type, payload["task_id"], "agent_task", payload)
    events, _ = build_registries()
    return await EventProcessor(db_manager, events, config).process_batch()


class TestAgentTasks:
    """Test task types owned by external agents."""

    async def test_agent_task_is_accepted_and_handed_off(self, db_manager, config):
        """Agent work types validate their payload and go out on task.ready."""
        task_id = await enqueue(db_manager, "research_solution", {"query": "x"})
        _, tasks = build_registries()
        result = await TaskDispatcher(db_manager, tasks, config).dispatch_batch()

        assert result.handed_off == 1
        assert (await get_task(db_manager, task_id)).status == "processing"
        async with db_manager.session() as session:
            event = (await session.execute(select(Event))).scalar_one()
        assert event.payload["task_type"] == "research_solution"
        assert event.payload["context"]["query"] == "x"
        assert event.payload["attempt"] == 1

    async def test_agent_payload_keeps_extra_context(self, db_manager):
        """Fields beyond the checked ones are passed through to the agent."""
        task_id = await enqueue(
            db_manager, "update_user_profile", {"field": "company", "value": "Acme", "source": "chat"}
        )

        task = await get_task(db_manager, task_id)
        assert task.context_payload == {"field": "company", "value": "Acme", "source": "chat"}

    async def test_invalid_agent_payload_rejected(self, db_manager):
        """Agent work is still validated at enqueue."""
        with pytest.raises(BusinessRuleViolation, match="Invalid payload"):
            await enqueue(db_manager, "research_solution", {"query": ""})
        with pytest.raises(BusinessRuleViolation, match="Invalid payload"):
            await enqueue(db_manager, "update_user_profile", {"field": "password", "value": "x"})


class TestExternalReports:
    """Test task.completed and task.failed from external workers."""

    async def hand_off(self, db_manager, config, **kwargs) -> str:
        task_id = await enqueue(db_manager, "research_solution", {"query": "pricing"}, **kwargs)
        await TaskDispatcher(db_manager, TaskHandlerRegistry(), config).dispatch_batch()
        return task_id

    async def test_completed_report_closes_task(self, db_manager, config):
        """A completion report stores the result and logs the action."""
        task_id = await self.hand_off(db_manager, config)

        result = await report(db_manager, config, "task.completed", {"task_id": task_id, "result": {"found": 2}})

        assert result.dead_lettered == 0
        task = await get_task(db_manager, task_id)
        assert task.status == "completed"
        assert task.result_payload == {"found": 2}
        async with db_manager.session() as session:
            action = (await session.execute(select(AgentActionLog))).scalar_one()
        assert action.task_id == task_id
        assert action.output_data == {"found": 2}

    async def test_replayed_completion_is_ignored(self, db_manager, config):
        """A second completion report leaves the first result in place."""
        task_id = await self.hand_off(db_manager, config)

        await report(db_manager, config, "task.completed", {"task_id": task_id, "result": {"found": 2}})
        await report(db_manager, config, "task.completed", {"task_id": task_id, "result": {"found": 9}})

        assert (await get_task(db_manager, task_id)).result_payload == {"found": 2}
        async with db_manager.session() as session:
            assert len((await session.execute(select(AgentActionLog))).scalars().all()) == 1

    async def test_failed_report_schedules_retry(self, db_manager, config):
        """A retryable failure report puts the task back with backoff."""
        task_id = await self.hand_off(db_manager, config)

        await report(
            db_manager, config, "task.failed", {"task_id": task_id, "error": "search API 502", "attempt": 1}
        )

        task = await get_task(db_manager, task_id)
        assert task.status == "pending"
        assert task.retry_count == 1
        assert task.scheduled_for > utc_now()
        assert task.error_history[0]["error"] == "search API 502"

    async def test_non_retryable_report_dead_letters(self, db_manager, config):
        """A non-retryable failure ends the task at once."""
        task_id = await self.hand_off(db_manager, config)

        await report(
            db_manager, config, "task.failed", {"task_id": task_id, "error": "query refused", "retryable": False}
        )

        assert (await get_task(db_manager, task_id)).status == "failed"
        async with db_manager.session() as session:
            letter = (await session.execute(select(DeadLetter))).scalar_one()
            action = (await session.execute(select(AgentActionLog))).scalar_one()
        assert letter.reference_id == task_id
        assert letter.attempt_count == 1
        assert action.error == "query refused"

    async def test_report_for_earlier_attempt_ignored(self, db_manager, config):
        """A late failure report from a reclaimed lease does not touch the current attempt."""
        task_id = await self.hand_off(db_manager, config)
        await backdate_lease(db_manager, task_id, config.tasks.lease_timeout_seconds + 60)
        async with db_manager.session() as session:
            assert await TaskQueue(session, config.tasks).reclaim_stale() == 1
        await make_due(db_manager, task_id)
        await TaskDispatcher(db_manager, TaskHandlerRegistry(), config).dispatch_batch()

        await report(db_manager, config, "task.failed", {"task_id": task_id, "error": "late", "attempt": 1})

        task = await get_task(db_manager, task_id)
        assert task.status == "processing"
        assert task.retry_count == 1
        assert "late" not in task.error_log

        await report(db_manager, config, "task.completed", {"task_id": task_id})
        assert (await get_task(db_manager, task_id)).status == "completed"


class TestLeaseReclaim:
    """Test recovery of tasks whose worker never reported back."""

    async def test_stale_lease_retried(self, db_manager, config):
        """A lease older than the timeout counts as a failed attempt."""
        task_id = await enqueue(db_manager, "research_solution", {"query": "x"})
        dispatcher = TaskDispatcher(db_manager, TaskHandlerRegistry(), config)
        await dispatcher.dispatch_batch()
        await backdate_lease(db_manager, task_id, config.tasks.lease_timeout_seconds + 60)

        result = await dispatcher.dispatch_batch()

        assert result.reclaimed == 1
        task = await get_task(db_manager, task_id)
        assert task.status == "pending"
        assert task.retry_count == 1
        assert "lease expired" in task.error_history[0]["error"]

    async def test_fresh_lease_left_alone(self, db_manager, config):
        """A worker still inside its lease keeps the task."""
        task_id = await enqueue(db_manager, "research_solution", {"query": "x"})
        dispatcher = TaskDispatcher(db_manager, TaskHandlerRegistry(), config)
        await dispatcher.dispatch_batch()

        assert (await dispatcher.dispatch_batch()).reclaimed == 0
        assert (await get_task(db_manager, task_id)).status == "processing"

    async def test_exhausted_stale_lease_dead_letters(self, db_manager, config):
        """A task whose last attempt times out is failed and dead-lettered."""
        config.tasks.lease_timeout_seconds = 60
        task_id = await enqueue(db_manager, "research_solution", {"query": "x"}, max_retries=1)
        dispatcher = TaskDispatcher(db_manager, TaskHandlerRegistry(), config)
        await dispatcher.dispatch_batch()
        await backdate_lease(db_manager, task_id, 120)

        await dispatcher.dispatch_batch()

        assert (await get_task(db_manager, task_id)).status == "failed"
        async with db_manager.session() as session:
            letter = (await session.execute(select(DeadLetter))).scalar_one()
        assert letter.attempt_count == 1
        assert letter.error_history[0]["error"] == "lease expired after 60s without a result"
