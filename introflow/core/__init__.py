"""Core functionality for IntroFlow: config, errors, identifiers, time."""

from introflow.core.config import Config, load_config
from introflow.core.errors import (
    BusinessRuleViolation,
    DuplicateOperationError,
    ExpiredReferenceError,
    IntroFlowError,
    NotFoundError,
    RetriesExhausted,
    TransientIOError,
)
from introflow.core.ids import idempotency_key, new_id
from introflow.core.timezone import format_for_display, utc_now

__all__ = [
    "BusinessRuleViolation",
    "Config",
    "DuplicateOperationError",
    "ExpiredReferenceError",
    "IntroFlowError",
    "NotFoundError",
    "RetriesExhausted",
    "TransientIOError",
    "format_for_display",
    "idempotency_key",
    "load_config",
    "new_id",
    "utc_now",
]
