"""Event log, handler registry and at-least-once event processor."""

from introflow.events.log import EventLog
from introflow.events.processor import EventBatchResult, EventProcessor
from introflow.events.registry import HandlerContext, HandlerRegistry

__all__ = [
    "EventBatchResult",
    "EventLog",
    "EventProcessor",
    "HandlerContext",
    "HandlerRegistry",
]
