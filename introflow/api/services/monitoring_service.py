"""Business logic for queue monitoring."""

from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.repositories.dead_letter_repo import DeadLetterRepository
from introflow.db.repositories.event_repo import EventRepository
from introflow.db.repositories.message_repo import MessageRepository
from introflow.db.repositories.task_repo import TaskRepository

if TYPE_CHECKING:
    from introflow.runtime.engine import CoordinationEngine


class MonitoringService:
    """Read-only queries over the work queues."""

    def __init__(self, session: AsyncSession, engine: "CoordinationEngine | None" = None):
        """Initialize MonitoringService.

        Args:
            session: Database session
            engine: Optional engine instance for runtime state
        """
        self.session = session
        self.engine = engine

    # =========================================================================
    # Health
    # =========================================================================

    async def get_health(self) -> dict[str, Any]:
        """Get system health status.

        Returns:
            dict: Database and engine status, subscribed event handlers and the pending event count
        """
        await self.session.execute(text("SELECT 1"))
        pending_events = await EventRepository(self.session).count_pending()

        pollers: dict[str, str] = {}
        handlers: dict[str, list[str]] = {}
        if self.engine:
            for poller in self.engine.pollers:
                pollers[poller.name] = "running" if poller.running else "stopped"
            handlers = self.engine.events.describe()

        return {
            "status": "healthy",
            "version": "0.1.0",
            "database": "connected",
            "engine": "running" if self.engine and self.engine.running else "unavailable",
            "pollers": pollers,
            "handlers": handlers,
            "pending_events": pending_events,
        }

    # =========================================================================
    # Queues
    # =========================================================================

    async def get_pending_tasks(self) -> list[dict[str, Any]]:
        """Pending task counts by agent type and priority."""
        return await TaskRepository(self.session).pending_counts()

    async def get_queued_messages(self) -> dict[str, int]:
        """Queued message counts by priority."""
        return await MessageRepository(self.session).queued_counts()

    async def get_dead_letters(self, limit: int = 50, source: str | None = None) -> list[dict[str, Any]]:
        """Most recent dead letters, optionally for one source."""
        letters = await DeadLetterRepository(self.session).list_recent(limit=limit, source=source)
        return [
            {
                "id": letter.id,
                "source": letter.source,
                "reference_id": letter.reference_id,
                "item_type": letter.item_type,
                "payload": letter.payload,
                "error_message": letter.error_message,
                "error_history": letter.error_history,
                "attempt_count": letter.attempt_count,
                "original_created_at": letter.original_created_at,
                "created_at": letter.created_at,
            }
            for letter in letters
        ]
