"""Typed event and task payloads."""

from introflow.domain.payloads import (
    EVENT_TYPES,
    TASK_TYPES,
    Payload,
    parse_event_payload,
    parse_task_payload,
)

__all__ = [
    "EVENT_TYPES",
    "TASK_TYPES",
    "Payload",
    "parse_event_payload",
    "parse_task_payload",
]
