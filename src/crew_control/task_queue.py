"""In-memory task queue with priority tiers and dependency gating."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Any
from uuid import uuid4

from crew_control.events import (
    EventBus,
    TaskAssigned,
    TaskCancelled,
    TaskCompleted,
    TaskCreated,
    TaskFailed,
    TaskRetried,
)
from crew_control.models import QueueStatistics, Task, TaskCreate, TaskPriority, TaskStatus
from crew_control.timers import Scheduler

logger = logging.getLogger(__name__)


class TaskQueue:
    """Holds task records and drives their state transitions.

    State-machine violations return ``False``/``None`` rather than raising;
    callers are expected to check the result.
    """

    def __init__(self, *, events: EventBus, scheduler: Scheduler) -> None:
        self.events = events
        self.scheduler = scheduler
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._sequence = itertools.count()

    def create(self, spec: TaskCreate) -> Task:
        if spec.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        with self._lock:
            task = Task(
                id=str(uuid4()),
                title=spec.title,
                description=spec.description,
                required_skills=list(spec.required_skills),
                priority=TaskPriority(spec.priority),
                dependencies=list(spec.dependencies),
                max_retries=spec.max_retries,
                estimated_duration_seconds=spec.estimated_duration_seconds,
                created_at=self.scheduler.now(),
                sequence=next(self._sequence),
                metadata=dict(spec.metadata),
            )
            self._tasks[task.id] = task
        logger.info("Created task %s: %s", task.id, task.title)
        self.events.publish(TaskCreated(task=task))
        return task

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(self) -> list[Task]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda task: task.sequence)

    def size(self) -> int:
        with self._lock:
            return len(self._tasks)

    def get_by_status(self, status: TaskStatus) -> list[Task]:
        return [task for task in self.list_tasks() if task.status == status]

    def get_by_assignee(self, worker_id: str) -> list[Task]:
        return [task for task in self.list_tasks() if task.assigned_to == worker_id]

    def get_by_skill(self, skill: str) -> list[Task]:
        wanted = skill.lower()
        return [
            task
            for task in self.list_tasks()
            if any(required.lower() == wanted for required in task.required_skills)
        ]

    def get_available(self) -> list[Task]:
        """Pending tasks whose dependencies are all completed, in selection order."""

        with self._lock:
            eligible = [
                task
                for task in self._tasks.values()
                if task.status == TaskStatus.PENDING and self._dependencies_met(task)
            ]
        return sorted(eligible, key=lambda task: (-task.priority.rank, task.sequence))

    def get_next(self) -> Task | None:
        available = self.get_available()
        return available[0] if available else None

    def dependencies_met(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return True
            return self._dependencies_met(task)

    def assign(self, task_id: str, worker_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.PENDING or task.assigned_to:
                return False
            if not self._dependencies_met(task):
                return False
            task.status = TaskStatus.IN_PROGRESS
            task.assigned_to = worker_id
            task.started_at = self.scheduler.now()
        logger.info("Assigned task %s to worker %s", task_id, worker_id)
        self.events.publish(TaskAssigned(task=task, worker_id=worker_id))
        return True

    def complete(self, task_id: str, result: Any = None) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.IN_PROGRESS:
                return False
            task.status = TaskStatus.COMPLETED
            task.completed_at = self.scheduler.now()
            task.result = result
        logger.info("Task %s completed", task_id)
        self.events.publish(TaskCompleted(task=task))
        return True

    def fail(self, task_id: str, error: str) -> bool:
        """Mark an in-progress task failed; ``retry_count`` grows on every failure."""

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.IN_PROGRESS:
                return False
            task.status = TaskStatus.FAILED
            task.error = error
            task.retry_count += 1
        logger.warning(
            "Task %s failed (%d/%d): %s",
            task_id,
            task.retry_count,
            task.max_retries,
            error,
        )
        self.events.publish(TaskFailed(task=task, error=error))
        return True

    def retry(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.FAILED:
                return False
            if task.retry_count >= task.max_retries:
                return False
            task.status = TaskStatus.PENDING
            task.assigned_to = None
            task.started_at = None
            task.completed_at = None
            task.error = None
            retry_count = task.retry_count
        logger.info("Task %s re-queued (retry %d)", task_id, retry_count)
        self.events.publish(TaskRetried(task=task, retry_count=retry_count))
        return True

    def cancel(self, task_id: str, reason: str | None = None) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
                return False
            worker_id = task.assigned_to
            task.status = TaskStatus.CANCELLED
            task.completed_at = self.scheduler.now()
            task.error = reason
        logger.info("Cancelled task %s%s", task_id, f": {reason}" if reason else "")
        self.events.publish(TaskCancelled(task=task, worker_id=worker_id, reason=reason))
        return True

    def get_statistics(self) -> QueueStatistics:
        tasks = self.list_tasks()
        stats = QueueStatistics(total=len(tasks))
        durations: list[float] = []
        for task in tasks:
            stats.by_priority[task.priority.value] += 1
            if task.status == TaskStatus.PENDING:
                stats.pending += 1
            elif task.status == TaskStatus.IN_PROGRESS:
                stats.in_progress += 1
            elif task.status == TaskStatus.COMPLETED:
                stats.completed += 1
                if task.duration_ms is not None:
                    durations.append(task.duration_ms)
            elif task.status == TaskStatus.FAILED:
                stats.failed += 1
            elif task.status == TaskStatus.CANCELLED:
                stats.cancelled += 1
        if stats.completed:
            stats.average_completion_time_ms = sum(durations) / stats.completed
        return stats

    def _dependencies_met(self, task: Task) -> bool:
        for dependency_id in task.dependencies:
            dependency = self._tasks.get(dependency_id)
            if dependency is None or dependency.status != TaskStatus.COMPLETED:
                return False
        return True
