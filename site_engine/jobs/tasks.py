"""
Task queue seam.

Background exports are handed to a task queue as ``(task_name, payload)``.
Delivery is at-least-once; handlers tolerate a missing pending record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

from ..errors import JobError

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Mapping[str, Any]], Any]


class TaskQueue(Protocol):
    """Fire-and-forget delivery of background tasks."""

    def enqueue(self, task_name: str, payload: Mapping[str, Any]) -> None:
        """Schedule `task_name` to run with `payload`."""
        ...


class InlineTaskQueue:
    """Runs each task synchronously inside :meth:`enqueue`."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, task_name: str, handler: TaskHandler) -> None:
        self._handlers[task_name] = handler

    def enqueue(self, task_name: str, payload: Mapping[str, Any]) -> None:
        handler = self._handlers.get(task_name)
        if handler is None:
            raise JobError(f"No handler registered for task {task_name!r}")
        handler(payload)


@dataclass(frozen=True, slots=True)
class QueuedTask:
    name: str
    payload: Mapping[str, Any]


@dataclass(slots=True)
class RecordingTaskQueue:
    """
    Collects tasks until :meth:`drain` is called.

    Used by tests and by callers that batch background work.
    """

    tasks: list[QueuedTask] = field(default_factory=list)

    def enqueue(self, task_name: str, payload: Mapping[str, Any]) -> None:
        self.tasks.append(QueuedTask(task_name, dict(payload)))

    def drain(self, dispatcher: InlineTaskQueue) -> int:
        """Deliver every collected task through `dispatcher`; return how many ran."""
        delivered = 0
        while self.tasks:
            task = self.tasks.pop(0)
            dispatcher.enqueue(task.name, task.payload)
            delivered += 1
        return delivered


class DeferredTaskQueue:
    """
    Leaves background work in the pending job store.

    Nothing runs at enqueue time; deferred exports are executed by
    :meth:`site_engine.jobs.orchestrator.Orchestrator.run_pending_exports`,
    which the CLI ``tick`` command calls.
    """

    def enqueue(self, task_name: str, payload: Mapping[str, Any]) -> None:
        logger.info("deferred task %s until the next tick", task_name)
