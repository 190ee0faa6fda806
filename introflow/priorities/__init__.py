"""Per-user priority ledger."""

from introflow.priorities.handlers import register_priority_handlers
from introflow.priorities.ledger import PriorityLedger, clamp_score
from introflow.priorities.scorer import PriorityScorer

__all__ = ["PriorityLedger", "PriorityScorer", "clamp_score", "register_priority_handlers"]
