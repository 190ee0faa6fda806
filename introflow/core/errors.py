"""Error taxonomy for the coordination engine.

Each error class carries a handling policy:

- TransientIOError: retried with backoff, never surfaced to end users.
- BusinessRuleViolation: the work item fails permanently, no retry.
- DuplicateOperationError: resolved as a successful no-op.
- ExpiredReferenceError: the referenced saga or item is terminal; callers
  re-fetch state before retrying.
- RetriesExhausted: the work item is moved to the dead-letter store.
"""

from typing import Any


class IntroFlowError(Exception):
    """Base class for all coordination engine errors."""

    retryable: bool = False


class TransientIOError(IntroFlowError):
    """Backing store or external service temporarily unavailable."""

    retryable = True


class BusinessRuleViolation(IntroFlowError):
    """Referenced entity missing or invalid state transition attempted."""


class DuplicateOperationError(IntroFlowError):
    """An operation with the same idempotency key was already applied."""

    def __init__(self, message: str, idempotency_key: str | None = None):
        super().__init__(message)
        self.idempotency_key = idempotency_key


class ExpiredReferenceError(IntroFlowError):
    """Action attempted on a terminal saga or priority item."""

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class RetriesExhausted(IntroFlowError):
    """A task or event ran out of attempts."""

    def __init__(
        self,
        message: str,
        attempts: int,
        error_history: list[dict[str, Any]] | None = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.error_history = error_history or []


class NotFoundError(BusinessRuleViolation):
    """Referenced entity does not exist."""
