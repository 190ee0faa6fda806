"""Leased priority task queue."""

from introflow.tasks.dispatcher import TaskBatchResult, TaskDispatcher
from introflow.tasks.queue import TaskQueue, backoff_delay
from introflow.tasks.registry import TaskContext, TaskHandlerRegistry, TaskResult

__all__ = [
    "TaskBatchResult",
    "TaskContext",
    "TaskDispatcher",
    "TaskHandlerRegistry",
    "TaskQueue",
    "TaskResult",
    "backoff_delay",
]
