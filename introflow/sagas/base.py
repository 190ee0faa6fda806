"""Shared state-machine plumbing for introduction saga variants."""

import logging
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.core.errors import (
    BusinessRuleViolation,
    DuplicateOperationError,
    ExpiredReferenceError,
    NotFoundError,
)
from introflow.core.timezone import utc_now
from introflow.db.models import Base, User
from introflow.db.repositories.base import BaseRepository
from introflow.db.repositories.user_repo import UserRepository
from introflow.messaging.queue import MessageQueue
from introflow.priorities.ledger import PriorityLedger
from introflow.priorities.scorer import PriorityScorer
from introflow.tasks.queue import TaskQueue

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Base)

CLOSE_STATUSES = ("expired", "cancelled")


class SagaService(Generic[S]):
    """Base for one saga variant, bound to a unit of work.

    Subclasses declare their transition table; every status change goes
    through ``transition`` so that:

    - a terminal saga rejects any change with ExpiredReferenceError,
    - re-applying a non-terminal status raises DuplicateOperationError,
    - anything else not in the table is a BusinessRuleViolation.

    Event handlers treat the first two as no-ops, which keeps replays and
    out-of-order deliveries safe.
    """

    variant: ClassVar[str]
    item_type: ClassVar[str]
    transitions: ClassVar[dict[str, frozenset[str]]]
    repository: ClassVar[type[BaseRepository[Any]]]

    def __init__(self, session: AsyncSession, config: Config | None = None):
        self.session = session
        self.config = config or Config()
        self.repo = self.repository(session)
        self.users = UserRepository(session)
        self.priorities = PriorityLedger(session, self.config.priorities, self.config.tasks)
        self.scorer = PriorityScorer(session)
        self.tasks = TaskQueue(session, self.config.tasks)
        self.messages = MessageQueue(session, self.config)

    def is_terminal(self, status: str) -> bool:
        return status not in self.transitions

    async def get(self, saga_id: str) -> S:
        saga = await self.repo.get_by_id(saga_id)
        if saga is None:
            raise NotFoundError(f"{self.variant} not found: {saga_id}")
        return saga

    async def transition(self, saga_id: str, target: str, **values: Any) -> S:
        saga = await self.get(saga_id)
        current = saga.status
        if self.is_terminal(current):
            raise ExpiredReferenceError(
                f"{self.variant} {saga_id} is {current}, cannot move to {target}",
                current_status=current,
            )
        if current == target:
            raise DuplicateOperationError(f"{self.variant} {saga_id} is already {target}")
        if target not in self.transitions[current]:
            raise BusinessRuleViolation(f"Invalid {self.variant} transition {current} -> {target}")

        saga.status = target
        for key, value in values.items():
            setattr(saga, key, value)
        saga.updated_at = utc_now()
        await self.session.flush()
        logger.info(f"{self.variant} {saga_id}: {current} -> {target}")
        return saga

    async def close(self, saga_id: str, status: str = "expired", reason: str | None = None) -> S:
        """Move a non-terminal saga to expired or cancelled and expire its priority items."""
        if status not in CLOSE_STATUSES:
            raise BusinessRuleViolation(f"Cannot close a saga as {status}")
        saga = await self.transition(saga_id, status, closed_reason=reason)
        await self._expire_items(saga)
        await self.withdraw_messages(saga.id, status)
        return saga

    async def withdraw_messages(self, saga_id: str, outcome: str) -> int:
        """Cancel unsent fresh-context messages about a saga that just resolved."""
        return await self.messages.withdraw_for_context(self.variant, saga_id, f"{self.variant} {outcome}")

    async def _expire_items(self, saga: S) -> None:
        await self.priorities.expire_for_item(self.item_type, saga.id)

    async def user_name(self, user_id: str | None) -> str:
        if user_id is None:
            return ""
        user: User | None = await self.users.get_by_id(user_id)
        return (user.name if user else None) or "your contact"

    async def notify(
        self,
        user_id: str | None,
        template: str,
        params: dict[str, Any],
        saga_id: str,
        priority: str = "low",
    ) -> None:
        """Queue a close-loop message for one party."""
        if user_id is None:
            return
        await self.messages.enqueue_message(
            user_id=user_id,
            source_agent=self.config.sagas.notifying_agent,
            message_data={"template": template, "params": params},
            priority=priority,
            context_type=self.variant,
            context_id=saga_id,
        )
