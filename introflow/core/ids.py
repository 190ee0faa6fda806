"""Identifier generation.

All identifiers are created in application code at construction time so
entities can be built and compared without a live store.
"""

import uuid


def new_id() -> str:
    """Return a new random UUID4 string."""
    return str(uuid.uuid4())


def idempotency_key(action: str, reference_id: str) -> str:
    """Derive the deterministic idempotency key for an action on a reference.

    Examples:
        >>> idempotency_key("intro_completed", "opp-1")
        'intro_completed:opp-1'
    """
    return f"{action}:{reference_id}"
