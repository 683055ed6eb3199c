"""Composition root: builds the components, wires their events and drives dispatch."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from crew_control.config import Settings
from crew_control.errors import LimitExceededError, NotFoundError, SpawnError
from crew_control.events import (
    EventBus,
    TaskAssigned,
    TaskCancelled,
    TaskCompleted,
    TaskFailed,
)
from crew_control.messaging import MessagingCollaborator, RecordingMessaging
from crew_control.models import ProcessConfig, Task, TaskCreate, Worker, WorkflowTemplate
from crew_control.persistence import InMemoryPersistence, PersistenceCollaborator
from crew_control.registry import WorkerRegistry
from crew_control.resources import ResourceManager, SystemMetricsSource
from crew_control.supervisor import ProcessSampler, ProcessSupervisor
from crew_control.system_metrics import sample_process_usage
from crew_control.task_queue import TaskQueue
from crew_control.templates import BUILTIN_TEMPLATES
from crew_control.timers import Scheduler, ThreadingScheduler, TimerHandle
from crew_control.workflows import WorkflowOrchestrator

logger = logging.getLogger(__name__)


class CrewRuntime:
    """Owns every component for one orchestrating process.

    Dispatch moves dependency-ready tasks to workers chosen by the resource
    manager; each assignment (from dispatch or from a workflow step) gets a
    worker process bound to the task.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings | None = None,
        scheduler: Scheduler | None = None,
        events: EventBus | None = None,
        persistence: PersistenceCollaborator | None = None,
        messaging: MessagingCollaborator | None = None,
        process_sampler: ProcessSampler = sample_process_usage,
        system_sampler: SystemMetricsSource | None = None,
        templates: Iterable[WorkflowTemplate] = BUILTIN_TEMPLATES,
    ) -> None:
        self.settings = settings or Settings()
        self.settings.validate()
        self.scheduler = scheduler or ThreadingScheduler()
        self.events = events or EventBus()
        self.persistence = persistence or InMemoryPersistence()
        self.messaging = messaging or RecordingMessaging()

        self.registry = WorkerRegistry(
            events=self.events,
            persistence=self.persistence,
            availability_threshold=self.settings.registry.availability_threshold,
        )
        self.task_queue = TaskQueue(events=self.events, scheduler=self.scheduler)
        self.supervisor = ProcessSupervisor(
            events=self.events,
            scheduler=self.scheduler,
            registry=self.registry,
            task_queue=self.task_queue,
            persistence=self.persistence,
            settings=self.settings.supervisor,
            sampler=process_sampler,
        )
        self.resources = ResourceManager(
            events=self.events,
            scheduler=self.scheduler,
            registry=self.registry,
            task_queue=self.task_queue,
            supervisor=self.supervisor,
            limits=self.settings.limits,
            monitor=self.settings.monitor,
            strategy=self.settings.strategy,
            sampler=system_sampler,
        )
        self.workflows = WorkflowOrchestrator(
            events=self.events,
            scheduler=self.scheduler,
            registry=self.registry,
            task_queue=self.task_queue,
            messaging=self.messaging,
            templates=templates,
        )

        self._dispatch_guard = threading.Lock()
        self._dispatch_timer: TimerHandle | None = None
        self.events.subscribe(TaskAssigned, self._on_task_assigned)
        self.events.subscribe(TaskCompleted, self._on_task_completed)
        self.events.subscribe(TaskFailed, self._on_task_failed)
        self.events.subscribe(TaskCancelled, self._on_task_cancelled)

    def start(self, workers: Iterable[Worker] | None = None) -> None:
        """Load the roster, restore snapshots and start the background timers."""

        self.registry.load(workers)
        self.supervisor.restore()
        self.supervisor.start_health_checks()
        self.resources.start()
        if self._dispatch_timer is None:
            self._dispatch_timer = self.scheduler.call_every(
                self.settings.dispatch_interval_seconds,
                self.dispatch_pending,
            )
        logger.info(
            "Runtime started: %d workers, strategy %s",
            len(self.registry.list_workers()),
            self.resources.strategy,
        )

    def stop(self) -> None:
        if self._dispatch_timer is not None:
            self._dispatch_timer.cancel()
            self._dispatch_timer = None
        self.resources.stop()
        self.supervisor.shutdown()
        logger.info("Runtime stopped")

    def submit(self, spec: TaskCreate) -> Task:
        return self.task_queue.create(spec)

    def dispatch_pending(self) -> int:
        """Assign every ready task a worker can take now; returns the count assigned.

        Tasks with no eligible worker are skipped for this pass so lower
        priority work is not blocked behind them.
        """

        if not self._dispatch_guard.acquire(blocking=False):
            return 0
        try:
            assigned = 0
            skipped: set[str] = set()
            while True:
                task = next(
                    (task for task in self.task_queue.get_available() if task.id not in skipped),
                    None,
                )
                if task is None:
                    break
                worker = self.resources.select_worker(task)
                if worker is None or not self.task_queue.assign(task.id, worker.id):
                    skipped.add(task.id)
                    continue
                assigned += 1
            if assigned:
                logger.info("Dispatched %d tasks", assigned)
            return assigned
        finally:
            self._dispatch_guard.release()

    # event wiring

    def _on_task_assigned(self, event: TaskAssigned) -> None:
        task = event.task
        self._adjust_workload(event.worker_id, self.settings.registry.workload_per_task)
        config = ProcessConfig(
            worker_id=event.worker_id,
            task_id=task.id,
            working_directory=task.metadata.get("working_directory"),
        )
        try:
            self.supervisor.create(config)
        except (LimitExceededError, SpawnError, NotFoundError) as error:
            logger.warning("Could not launch process for task %s: %s", task.id, error)
            self.task_queue.fail(task.id, f"Process launch failed: {error}")
            transient = isinstance(error, LimitExceededError) or (
                isinstance(error, SpawnError) and error.transient
            )
            if transient:
                self.task_queue.retry(task.id)

    def _on_task_completed(self, event: TaskCompleted) -> None:
        self._finish(event.task, succeeded=True)

    def _on_task_failed(self, event: TaskFailed) -> None:
        self._finish(event.task, succeeded=False)

    def _on_task_cancelled(self, event: TaskCancelled) -> None:
        if event.worker_id is None:
            return
        self._adjust_workload(event.worker_id, -self.settings.registry.workload_per_task)
        for process in self.supervisor.get_by_task(event.task.id):
            self.supervisor.stop(process.id)

    def _finish(self, task: Task, *, succeeded: bool) -> None:
        if task.assigned_to is None:
            return
        self._adjust_workload(task.assigned_to, -self.settings.registry.workload_per_task)
        try:
            self.registry.record_task_outcome(task.assigned_to, succeeded=succeeded)
        except NotFoundError:
            logger.warning("Task %s finished by unknown worker %s", task.id, task.assigned_to)

    def _adjust_workload(self, worker_id: str, delta: int) -> None:
        try:
            self.registry.update_workload(worker_id, delta=delta)
        except NotFoundError:
            logger.warning("Cannot adjust workload of unknown worker %s", worker_id)
