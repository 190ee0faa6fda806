"""Registry mapping event types to their handlers."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.db.models import Event

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Everything an event handler needs for one delivery attempt."""

    event: Event
    payload: Any
    session: AsyncSession
    config: Config


EventHandler = Callable[[HandlerContext], Awaitable[None]]


@dataclass
class RegisteredHandler:
    """A handler and its operator-facing description."""

    handler: EventHandler
    description: str


@dataclass
class HandlerRegistry:
    """Event type to handler list mapping.

    Several handlers may subscribe to one event type; all run in
    registration order within the same delivery attempt.
    """

    _handlers: dict[str, list[RegisteredHandler]] = field(default_factory=dict)

    def register(self, event_type: str, handler: EventHandler, description: str = "") -> None:
        """Subscribe a handler to an event type."""
        self._handlers.setdefault(event_type, []).append(RegisteredHandler(handler, description))
        logger.debug(f"Registered handler for {event_type}: {description or handler.__name__}")

    def on(self, event_type: str, description: str = "") -> Callable[[EventHandler], EventHandler]:
        """Decorator form of register()."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.register(event_type, handler, description)
            return handler

        return decorator

    def handlers_for(self, event_type: str) -> list[RegisteredHandler]:
        """Handlers subscribed to an event type (empty if none)."""
        return list(self._handlers.get(event_type, []))

    def describe(self) -> dict[str, list[str]]:
        """Registered event types and their handler descriptions."""
        return {
            event_type: [h.description for h in handlers]
            for event_type, handlers in sorted(self._handlers.items())
        }
