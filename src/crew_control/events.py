"""Typed events and the in-process bus that delivers them."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar, TypeVar

from crew_control.models import (
    LogEntry,
    ManagedProcess,
    SystemResources,
    Task,
    Workflow,
    WorkflowStep,
    WorkerStatus,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Event:
    """Base class for all events; ``name`` is the broadcast identifier."""

    name: ClassVar[str] = "event"


# Registry events
@dataclass(slots=True)
class WorkloadChanged(Event):
    name: ClassVar[str] = "workload-changed"

    worker_id: str
    old: int
    new: int


@dataclass(slots=True)
class StatusChanged(Event):
    name: ClassVar[str] = "status-changed"

    worker_id: str
    old: WorkerStatus
    new: WorkerStatus


# Task queue events
@dataclass(slots=True)
class TaskCreated(Event):
    name: ClassVar[str] = "task-created"

    task: Task


@dataclass(slots=True)
class TaskAssigned(Event):
    name: ClassVar[str] = "task-assigned"

    task: Task
    worker_id: str


@dataclass(slots=True)
class TaskCompleted(Event):
    name: ClassVar[str] = "task-completed"

    task: Task


@dataclass(slots=True)
class TaskFailed(Event):
    name: ClassVar[str] = "task-failed"

    task: Task
    error: str


@dataclass(slots=True)
class TaskRetried(Event):
    name: ClassVar[str] = "task-retried"

    task: Task
    retry_count: int


@dataclass(slots=True)
class TaskCancelled(Event):
    name: ClassVar[str] = "task-cancelled"

    task: Task
    worker_id: str | None
    reason: str | None


# Process supervisor events
@dataclass(slots=True)
class ProcessStarted(Event):
    name: ClassVar[str] = "process_started"

    process: ManagedProcess


@dataclass(slots=True)
class ProcessOutput(Event):
    name: ClassVar[str] = "process_output"

    process_id: str
    entry: LogEntry


@dataclass(slots=True)
class ProcessStopped(Event):
    name: ClassVar[str] = "process_stopped"

    process: ManagedProcess
    exit_code: int | None
    intentional: bool


@dataclass(slots=True)
class ProcessError(Event):
    name: ClassVar[str] = "process_error"

    process_id: str
    worker_id: str
    task_id: str | None
    error: str
    terminal: bool


# Resource manager events
@dataclass(slots=True)
class SystemMetricsSampled(Event):
    name: ClassVar[str] = "system-metrics-updated"

    resources: SystemResources


@dataclass(slots=True)
class ResourceLimitReached(Event):
    name: ClassVar[str] = "resource-limit-reached"

    kind: str
    current: float
    limit: float


@dataclass(slots=True)
class ResourceWarning(Event):
    name: ClassVar[str] = "resource-warning"

    kind: str
    value: float


@dataclass(slots=True)
class AutoScale(Event):
    name: ClassVar[str] = "auto-scale"

    action: str
    reason: str
    ceiling: int


@dataclass(slots=True)
class StrategyChanged(Event):
    name: ClassVar[str] = "strategy-changed"

    strategy: str


# Workflow events
@dataclass(slots=True)
class WorkflowCreated(Event):
    name: ClassVar[str] = "workflow-created"

    workflow: Workflow


@dataclass(slots=True)
class WorkflowStarted(Event):
    name: ClassVar[str] = "workflow-started"

    workflow: Workflow


@dataclass(slots=True)
class WorkflowCompleted(Event):
    name: ClassVar[str] = "workflow-completed"

    workflow: Workflow


@dataclass(slots=True)
class WorkflowCancelled(Event):
    name: ClassVar[str] = "workflow-cancelled"

    workflow: Workflow
    reason: str | None


@dataclass(slots=True)
class StepAssigned(Event):
    name: ClassVar[str] = "step-assigned"

    workflow: Workflow
    step: WorkflowStep
    worker_id: str


@dataclass(slots=True)
class StepCompleted(Event):
    name: ClassVar[str] = "step-completed"

    workflow: Workflow
    step: WorkflowStep


@dataclass(slots=True)
class StepFailed(Event):
    name: ClassVar[str] = "step-failed"

    workflow: Workflow
    step: WorkflowStep
    reason: str


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], None]


class EventBus:
    """Synchronous observer registry keyed by event type.

    Handlers run on the publishing thread. A handler that raises is logged
    and skipped so one broken subscriber cannot stall the publisher.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[tuple[type[Event], Handler]] = []
        self._catch_all: list[Handler] = []

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` and its subclasses."""

        entry = (event_type, handler)
        with self._lock:
            self._handlers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return _unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        """Register a broadcast handler receiving every event."""

        with self._lock:
            self._catch_all.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._catch_all:
                    self._catch_all.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            targets = [handler for etype, handler in self._handlers if isinstance(event, etype)]
            targets.extend(self._catch_all)
        for handler in targets:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.name)
