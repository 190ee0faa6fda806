"""Repository for the leased agent task queue."""

from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import PRIORITY_RANK, AgentActionLog, AgentTask, TaskStatus
from introflow.db.repositories.base import BaseRepository

TASK_PRIORITY_ORDER = case(PRIORITY_RANK, value=AgentTask.priority, else_=len(PRIORITY_RANK) + 1)


class TaskRepository(BaseRepository[AgentTask]):
    """Repository for task queue operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, AgentTask)

    async def list_due(self, now: datetime, limit: int) -> list[AgentTask]:
        """List pending tasks whose scheduled time has passed.

        Ordered by priority rank, then scheduled time ascending.

        Args:
            now: Current time (naive UTC).
            limit: Maximum number of tasks.

        Returns:
            List of due AgentTask rows.
        """
        stmt = (
            select(AgentTask)
            .where(
                AgentTask.status == TaskStatus.PENDING.value,
                AgentTask.scheduled_for <= now,
            )
            .order_by(TASK_PRIORITY_ORDER, AgentTask.scheduled_for.asc())
            .limit(limit)
        )
        return await self._all(stmt)

    async def claim(self, task_id: str, now: datetime) -> bool:
        """Conditionally move a task from pending to processing.

        Never blocks on another dispatcher: a row that is no longer pending
        simply matches nothing.

        Args:
            task_id: Task to claim.
            now: Claim time, stored as last_attempted_at.

        Returns:
            True if this caller now holds the lease.
        """
        stmt = (
            update(AgentTask)
            .where(AgentTask.id == task_id, AgentTask.status == TaskStatus.PENDING.value)
            .values(status=TaskStatus.PROCESSING.value, last_attempted_at=now)
        )
        return await self._rowcount(stmt) == 1

    async def list_stale_processing(self, cutoff: datetime, limit: int) -> list[AgentTask]:
        """Processing tasks whose lease was taken before ``cutoff``, oldest first."""
        stmt = (
            select(AgentTask)
            .where(
                AgentTask.status == TaskStatus.PROCESSING.value,
                AgentTask.last_attempted_at < cutoff,
            )
            .order_by(AgentTask.last_attempted_at.asc())
            .limit(limit)
        )
        return await self._all(stmt)

    async def find_pending(
        self,
        task_type: str,
        context_type: str | None = None,
        context_id: str | None = None,
    ) -> list[AgentTask]:
        """Find pending tasks of a type, optionally for one context."""
        stmt = select(AgentTask).where(
            AgentTask.task_type == task_type,
            AgentTask.status == TaskStatus.PENDING.value,
        )
        if context_type is not None:
            stmt = stmt.where(AgentTask.context_type == context_type)
        if context_id is not None:
            stmt = stmt.where(AgentTask.context_id == context_id)
        return await self._all(stmt)

    async def cancel_pending(
        self,
        reason: str,
        now: datetime,
        task_type: str | None = None,
        context_type: str | None = None,
        context_id: str | None = None,
    ) -> int:
        """Cancel pending tasks matching the filters.

        Returns:
            Number of tasks cancelled.
        """
        stmt = update(AgentTask).where(AgentTask.status == TaskStatus.PENDING.value)
        if task_type is not None:
            stmt = stmt.where(AgentTask.task_type == task_type)
        if context_type is not None:
            stmt = stmt.where(AgentTask.context_type == context_type)
        if context_id is not None:
            stmt = stmt.where(AgentTask.context_id == context_id)
        stmt = stmt.values(
            status=TaskStatus.CANCELLED.value,
            result_payload={"reason": reason},
            completed_at=now,
        )
        return await self._rowcount(stmt)

    async def pending_counts(self) -> list[dict[str, Any]]:
        """Count pending tasks grouped by agent type and priority."""
        stmt = (
            select(AgentTask.agent_type, AgentTask.priority, func.count(AgentTask.id))
            .where(AgentTask.status == TaskStatus.PENDING.value)
            .group_by(AgentTask.agent_type, AgentTask.priority)
            .order_by(AgentTask.agent_type, AgentTask.priority)
        )
        result = await self.session.execute(stmt)
        return [
            {"agent_type": agent_type, "priority": priority, "count": count}
            for agent_type, priority, count in result.all()
        ]

    async def log_action(
        self,
        agent_type: str,
        action_type: str,
        task_id: str | None = None,
        user_id: str | None = None,
        input_data: dict[str, Any] | None = None,
        output_data: dict[str, Any] | None = None,
        error: str | None = None,
        duration_ms: int = 0,
    ) -> AgentActionLog:
        """Record a handler execution in the agent actions log.

        Args:
            agent_type: Agent that owns the action.
            action_type: Task type or action name.
            task_id: Optional originating task.
            user_id: Optional affected user.
            input_data: Handler input.
            output_data: Handler output.
            error: Error message if the handler failed.
            duration_ms: Wall time of the handler.

        Returns:
            Created AgentActionLog instance.
        """
        entry = AgentActionLog(
            agent_type=agent_type,
            action_type=action_type,
            task_id=task_id,
            user_id=user_id,
            input_data=input_data or {},
            output_data=output_data,
            error=error,
            duration_ms=duration_ms,
        )
        await self.add(entry)
        return entry

    async def list_actions(self, task_id: str) -> list[AgentActionLog]:
        """List action log rows for a task, oldest first."""
        stmt = (
            select(AgentActionLog)
            .where(AgentActionLog.task_id == task_id)
            .order_by(AgentActionLog.created_at.asc())
        )
        return await self._all(stmt)
