"""Append-only, idempotent credit ledger."""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.errors import BusinessRuleViolation, DuplicateOperationError
from introflow.core.ids import idempotency_key
from introflow.db.models import CreditEvent
from introflow.db.repositories.credit_repo import CreditRepository

logger = logging.getLogger(__name__)

# Ledger event types written by the engine and its collaborators
INTRO_COMPLETED = "intro_completed"
INTRO_OFFER_COMPLETED = "intro_offer_completed"
CONNECTION_REQUEST_COMPLETED = "connection_request_completed"
COMMUNITY_RESPONSE = "community_response"
REFERRAL_JOINED = "referral_joined"
ADJUSTMENT = "adjustment"


class CreditLedger:
    """Credit ledger bound to one unit of work.

    Ledger lines are never updated or deleted. The cached balance in
    ``credit_balances`` is recomputed explicitly after every write.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = CreditRepository(session)

    async def record(
        self,
        user_id: str,
        event_type: str,
        amount: int,
        reference_type: str,
        reference_id: str,
        description: str | None = None,
    ) -> CreditEvent:
        """Write one ledger line.

        Raises:
            DuplicateOperationError: A line with the same idempotency key exists.
            BusinessRuleViolation: Zero amount.
        """
        if amount == 0:
            raise BusinessRuleViolation("Credit amount must be non-zero")

        key = idempotency_key(event_type, reference_id)
        if await self.repo.get_by_key(key) is not None:
            raise DuplicateOperationError(f"Credit already recorded: {key}", idempotency_key=key)

        line = CreditEvent(
            user_id=user_id,
            event_type=event_type,
            amount=amount,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=key,
            description=description,
            processed=True,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(line)
        except IntegrityError as e:
            # Lost a race with a concurrent writer using the same key
            raise DuplicateOperationError(f"Credit already recorded: {key}", idempotency_key=key) from e

        await self.recompute_balance(user_id)
        logger.info(f"Credited {amount} to user {user_id} ({key})")
        return line

    async def append_credit(
        self,
        user_id: str,
        event_type: str,
        amount: int,
        reference_type: str,
        reference_id: str,
        description: str | None = None,
    ) -> str:
        """Append a credit line, ignoring duplicates.

        Args:
            user_id: User receiving (or spending) credits.
            event_type: Ledger event type.
            amount: Signed credit amount.
            reference_type: Kind of entity the credit refers to.
            reference_id: Entity the credit refers to.
            description: Optional human-readable description.

        Returns:
            The idempotency key derived from (event_type, reference_id).
        """
        try:
            line = await self.record(
                user_id, event_type, amount, reference_type, reference_id, description
            )
            return line.idempotency_key
        except DuplicateOperationError as e:
            logger.info(f"Duplicate credit ignored: {e.idempotency_key}")
            return e.idempotency_key or idempotency_key(event_type, reference_id)

    async def recompute_balance(self, user_id: str) -> int:
        """Recompute and cache the sum of processed ledger amounts."""
        balance = await self.repo.sum_processed(user_id)
        await self.repo.set_balance(user_id, balance)
        return balance

    async def get_balance(self, user_id: str) -> int:
        """Read the cached balance (0 for users with no ledger lines)."""
        row = await self.repo.get_balance(user_id)
        return row.balance if row else 0

    async def history(self, user_id: str) -> list[CreditEvent]:
        """All ledger lines for a user."""
        return await self.repo.list_for_user(user_id)
