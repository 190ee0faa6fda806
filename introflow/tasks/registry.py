"""Task handler registry and handler result types."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.core.config import Config
from introflow.db.models import AgentTask

logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    """Outcome reported by a task handler.

    Handlers may also return None, which counts as success with no data.
    """

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    should_retry: bool = False

    @classmethod
    def ok(cls, **data: Any) -> "TaskResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, retry: bool = False) -> "TaskResult":
        return cls(success=False, error=error, should_retry=retry)


@dataclass
class TaskContext:
    """Everything a task handler needs for one execution."""

    task: AgentTask
    payload: Any
    session: AsyncSession
    config: Config


TaskHandler = Callable[[TaskContext], Awaitable[TaskResult | None]]


@dataclass
class RegisteredTask:
    """An in-process handler for one task type."""

    handler: TaskHandler
    description: str


@dataclass
class TaskHandlerRegistry:
    """Task type to in-process handler mapping.

    Task types without a local handler are left to external workers,
    which pick them up from the ``task.ready`` event.
    """

    _handlers: dict[str, RegisteredTask] = field(default_factory=dict)

    def register(self, task_type: str, handler: TaskHandler, description: str = "") -> None:
        """Register the handler for a task type, replacing any previous one."""
        if task_type in self._handlers:
            logger.warning(f"Replacing handler for task type {task_type}")
        self._handlers[task_type] = RegisteredTask(handler, description)
        logger.debug(f"Registered task handler for {task_type}: {description or handler.__name__}")

    def task(self, task_type: str, description: str = "") -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of register()."""

        def decorator(handler: TaskHandler) -> TaskHandler:
            self.register(task_type, handler, description)
            return handler

        return decorator

    def get(self, task_type: str) -> RegisteredTask | None:
        return self._handlers.get(task_type)

    def describe(self) -> dict[str, str]:
        """Registered task types and their descriptions."""
        return {task_type: h.description for task_type, h in sorted(self._handlers.items())}
