"""Per-user outbound budgets and quiet hours."""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import RateLimitConfig
from introflow.core.timezone import (
    in_window,
    local_date,
    next_local_midnight,
    next_local_time,
    parse_clock,
    parse_time_window,
    to_local,
)
from introflow.db.models import User
from introflow.db.repositories.budget_repo import BudgetRepository
from introflow.db.repositories.conversation_repo import ConversationRepository
from introflow.db.repositories.user_repo import UserRepository

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)


@dataclass
class RateLimitDecision:
    """Whether a delivery unit may be sent now, and if not, when to retry."""

    allowed: bool
    reason: str | None = None
    retry_at: datetime | None = None


class RateLimiter:
    """Daily/hourly budget and quiet-hour checks for one user at a time.

    Budgets are counted in delivery units: a standalone message or a whole
    sequence. The daily counter lives in ``user_message_budget`` keyed by
    the user's local date; the hourly count is derived from outbound
    conversation messages in the last hour.
    """

    def __init__(self, session: AsyncSession, config: RateLimitConfig | None = None):
        self.session = session
        self.config = config or RateLimitConfig()
        self.budgets = BudgetRepository(session)
        self.conversations = ConversationRepository(session)
        self.users = UserRepository(session)

    def timezone_for(self, user: User | None) -> str:
        if user is not None and user.timezone:
            return user.timezone
        return self.config.default_timezone

    def quiet_window(self, user: User | None) -> tuple[time, time] | None:
        """User's quiet-hour override, else the configured default."""
        if user is not None and user.quiet_hours_start and user.quiet_hours_end:
            return parse_clock(user.quiet_hours_start), parse_clock(user.quiet_hours_end)
        if self.config.quiet_hours:
            return parse_time_window(self.config.quiet_hours)
        return None

    async def is_user_active(self, user_id: str, now: datetime) -> bool:
        """True if the user sent a message within the active window."""
        since = now - timedelta(minutes=self.config.active_window_minutes)
        return bool(await self.conversations.inbound_since(user_id, since, limit=1))

    def is_quiet_hours(self, user: User | None, now: datetime) -> bool:
        window = self.quiet_window(user)
        if window is None:
            return False
        local_now = to_local(now, self.timezone_for(user))
        return in_window(local_now.time(), *window)

    def quiet_hours_end(self, user: User | None, now: datetime) -> datetime:
        """Next local end of the quiet window, as naive UTC."""
        window = self.quiet_window(user)
        if window is None:
            return now
        return next_local_time(now, self.timezone_for(user), window[1])

    async def check(self, user_id: str, now: datetime) -> RateLimitDecision:
        """Decide whether one delivery unit may be sent to a user now."""
        user = await self.users.get_by_id(user_id)
        tz = self.timezone_for(user)
        budget = await self.budgets.get_or_create(
            user_id, local_date(now, tz), self.config.daily_limit, self.config.hourly_limit
        )

        if budget.messages_sent >= budget.daily_limit:
            retry_at = next_local_midnight(now, tz)
            logger.info(
                f"User {user_id} reached daily limit ({budget.messages_sent}/{budget.daily_limit}), "
                f"deferring to {retry_at}"
            )
            return RateLimitDecision(False, "daily_limit", retry_at)

        sent_last_hour = await self.conversations.count_outbound_units_since(user_id, now - HOUR)
        if sent_last_hour >= budget.hourly_limit:
            retry_at = (budget.last_message_at or now) + HOUR
            if retry_at <= now:
                retry_at = now + HOUR
            logger.info(
                f"User {user_id} reached hourly limit ({sent_last_hour}/{budget.hourly_limit}), "
                f"deferring to {retry_at}"
            )
            return RateLimitDecision(False, "hourly_limit", retry_at)

        if budget.quiet_hours_enabled and self.is_quiet_hours(user, now):
            if await self.is_user_active(user_id, now):
                logger.debug(f"User {user_id} is active, quiet hours waived")
            else:
                retry_at = self.quiet_hours_end(user, now)
                logger.info(f"Quiet hours for user {user_id}, deferring to {retry_at}")
                return RateLimitDecision(False, "quiet_hours", retry_at)

        return RateLimitDecision(True)

    async def record_send(self, user_id: str, sent_at: datetime) -> None:
        """Count one delivery unit against the user's local-day budget."""
        user = await self.users.get_by_id(user_id)
        budget_date = local_date(sent_at, self.timezone_for(user))
        await self.budgets.get_or_create(
            user_id, budget_date, self.config.daily_limit, self.config.hourly_limit
        )
        await self.budgets.increment(user_id, budget_date, sent_at)
