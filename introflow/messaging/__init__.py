"""Rate-limited, sequence-aware message orchestrator."""

from introflow.messaging.handlers import register_messaging_handlers
from introflow.messaging.orchestrator import MessageBatchResult, MessageOrchestrator
from introflow.messaging.queue import MessageQueue
from introflow.messaging.rate_limiter import RateLimitDecision, RateLimiter
from introflow.messaging.relevance import (
    KeywordRelevanceClassifier,
    Relevance,
    RelevanceChecker,
    RelevanceClassifier,
    RelevanceResult,
)
from introflow.messaging.renderer import DEFAULT_TEMPLATES, MessageRenderer

__all__ = [
    "DEFAULT_TEMPLATES",
    "KeywordRelevanceClassifier",
    "MessageBatchResult",
    "MessageOrchestrator",
    "MessageQueue",
    "MessageRenderer",
    "RateLimitDecision",
    "RateLimiter",
    "Relevance",
    "RelevanceChecker",
    "RelevanceClassifier",
    "RelevanceResult",
    "register_messaging_handlers",
]
