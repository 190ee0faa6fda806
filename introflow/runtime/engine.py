"""Coordination engine: wires handlers and runs the polling loops."""

import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from introflow.core.config import Config
from introflow.db.database import DatabaseManager
from introflow.db.repositories.task_repo import TaskRepository
from introflow.events.processor import EventProcessor
from introflow.events.registry import HandlerRegistry
from introflow.messaging.handlers import register_messaging_handlers
from introflow.messaging.orchestrator import MessageOrchestrator
from introflow.messaging.relevance import RelevanceClassifier
from introflow.messaging.renderer import MessageRenderer
from introflow.priorities.handlers import register_priority_handlers
from introflow.runtime.poller import Poller
from introflow.sagas.handlers import register_saga_handlers
from introflow.tasks.dispatcher import TaskDispatcher
from introflow.tasks.handlers import register_task_handlers
from introflow.tasks.queue import TaskQueue
from introflow.tasks.registry import TaskHandlerRegistry

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_TASK = "saga_expiry_sweep"


def build_registries() -> tuple[HandlerRegistry, TaskHandlerRegistry]:
    """Create event and task registries with every built-in handler subscribed."""
    events = HandlerRegistry()
    tasks = TaskHandlerRegistry()
    register_saga_handlers(events, tasks)
    register_priority_handlers(events, tasks)
    register_messaging_handlers(events, tasks)
    register_task_handlers(events)
    return events, tasks


class CoordinationEngine:
    """Runs the event, task and message loops against one database.

    Each loop is a Poller on a shared scheduler. A fourth job enqueues the
    saga expiry sweep as an ordinary task so it goes through the same
    claim, retry and dead-letter path as everything else.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Config,
        events: HandlerRegistry | None = None,
        tasks: TaskHandlerRegistry | None = None,
        classifier: RelevanceClassifier | None = None,
        renderer: MessageRenderer | None = None,
    ):
        """Initialize the engine.

        Args:
            db_manager: Database manager shared by all loops.
            config: Application configuration.
            events: Event handler registry (defaults to built-in handlers).
            tasks: Task handler registry (defaults to built-in handlers).
            classifier: Relevance classifier for the message loop.
            renderer: Message renderer for the message loop.
        """
        self.db = db_manager
        self.config = config
        if events is None or tasks is None:
            default_events, default_tasks = build_registries()
            events = events or default_events
            tasks = tasks or default_tasks
        self.events = events
        self.tasks = tasks

        self.event_processor = EventProcessor(db_manager, events, config)
        self.task_dispatcher = TaskDispatcher(db_manager, tasks, config)
        self.message_orchestrator = MessageOrchestrator(db_manager, config, classifier, renderer)

        self.pollers = [
            Poller(
                "events",
                self.event_processor.process_batch,
                config.events.poll_interval_seconds,
                config.events.jitter_seconds,
            ),
            Poller(
                "tasks",
                self.task_dispatcher.dispatch_batch,
                config.tasks.poll_interval_seconds,
                config.tasks.jitter_seconds,
            ),
            Poller(
                "messages",
                self.message_orchestrator.dispatch_batch,
                config.messaging.poll_interval_seconds,
                config.messaging.jitter_seconds,
            ),
            Poller(
                "expiry_sweep",
                self.schedule_expiry_sweep,
                config.sagas.expiry_sweep_interval_minutes * 60,
            ),
        ]
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def start(self) -> None:
        """Start all polling loops on one scheduler."""
        if self.running:
            logger.warning("Coordination engine already running")
            return
        self._scheduler = AsyncIOScheduler()
        for poller in self.pollers:
            poller.start(self._scheduler)
        self._scheduler.start()
        logger.info(f"Coordination engine started with {len(self.pollers)} poller(s)")

    async def stop(self) -> None:
        """Signal every loop to stop and wait for running cycles to finish."""
        for poller in self.pollers:
            await poller.stop()
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("Coordination engine stopped")

    async def run_once(self) -> dict[str, Any]:
        """Run one pass of events, tasks and messages, in that order."""
        return {
            "events": await self.pollers[0].run_once(),
            "tasks": await self.pollers[1].run_once(),
            "messages": await self.pollers[2].run_once(),
        }

    async def schedule_expiry_sweep(self) -> str | None:
        """Enqueue a saga expiry sweep unless one is already pending.

        Returns:
            The new task id, or None when a sweep was already queued.
        """
        async with self.db.session() as session:
            if await TaskRepository(session).find_pending(EXPIRY_SWEEP_TASK):
                logger.debug("Saga expiry sweep already pending")
                return None
            task_id = await TaskQueue(session, self.config.tasks).enqueue(
                EXPIRY_SWEEP_TASK,
                agent_type="coordination_engine",
                priority="low",
                created_by="coordination_engine",
            )
        return task_id
