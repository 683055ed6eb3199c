"""Workflow orchestration: template instantiation, step assignment and progression."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import timedelta
from typing import Any
from uuid import uuid4

from crew_control.errors import NotFoundError, UpstreamUnavailableError
from crew_control.events import (
    EventBus,
    ProcessStarted,
    StepAssigned,
    StepCompleted,
    StepFailed,
    TaskCompleted,
    TaskFailed,
    WorkflowCancelled,
    WorkflowCompleted,
    WorkflowCreated,
    WorkflowStarted,
)
from crew_control.messaging import MessagingCollaborator
from crew_control.models import (
    Message,
    StepStatus,
    TaskCreate,
    TaskPriority,
    Worker,
    Workflow,
    WorkflowMetrics,
    WorkflowStatus,
    WorkflowStep,
    WorkflowTemplate,
)
from crew_control.registry import WorkerRegistry
from crew_control.task_queue import TaskQueue
from crew_control.templates import BUILTIN_TEMPLATES, validate_template
from crew_control.timers import Scheduler

logger = logging.getLogger(__name__)

ORCHESTRATOR_SENDER = "workflow-orchestrator"
ESCALATION_DEADLINE = timedelta(hours=2)
_TERMINAL = (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)
_RUNNING_STEP = (StepStatus.ASSIGNED, StepStatus.IN_PROGRESS)


class WorkflowOrchestrator:
    """Instantiates templates into workflows and advances them on task events.

    Steps become queue tasks tagged with ``workflow_id``/``step_id`` metadata.
    A step is released once every step it depends on has completed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        events: EventBus,
        scheduler: Scheduler,
        registry: WorkerRegistry,
        task_queue: TaskQueue,
        messaging: MessagingCollaborator,
        templates: Iterable[WorkflowTemplate] = BUILTIN_TEMPLATES,
    ) -> None:
        self.events = events
        self.scheduler = scheduler
        self.registry = registry
        self.task_queue = task_queue
        self.messaging = messaging
        self._lock = threading.RLock()
        self._templates: dict[str, WorkflowTemplate] = {}
        self._workflows: dict[str, Workflow] = {}
        self._task_index: dict[str, tuple[str, str]] = {}
        for template in templates:
            self.add_template(template)
        events.subscribe(TaskCompleted, self._on_task_completed)
        events.subscribe(TaskFailed, self._on_task_failed)
        events.subscribe(ProcessStarted, self._on_process_started)

    # templates

    def add_template(self, template: WorkflowTemplate) -> None:
        validate_template(template)
        with self._lock:
            replaced = template.id in self._templates
            self._templates[template.id] = template
        logger.info("%s workflow template %s", "Replaced" if replaced else "Added", template.id)

    def get_template(self, template_id: str) -> WorkflowTemplate | None:
        with self._lock:
            return self._templates.get(template_id)

    def list_templates(self) -> list[WorkflowTemplate]:
        with self._lock:
            return list(self._templates.values())

    # lifecycle

    def create_workflow(
        self,
        template_id: str,
        name: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Workflow:
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                raise NotFoundError(f"Template {template_id} not found")
            now = self.scheduler.now()
            workflow = Workflow(
                id=str(uuid4()),
                name=name,
                description=description or template.description,
                template_id=template.id,
                steps=[
                    WorkflowStep(
                        id=str(uuid4()),
                        name=blueprint.name,
                        description=blueprint.description,
                        required_skills=list(blueprint.required_skills),
                        dependencies=list(blueprint.dependencies),
                    )
                    for blueprint in template.steps
                ],
                created_at=now,
                updated_at=now,
                metadata=dict(metadata or {}),
            )
            self._workflows[workflow.id] = workflow
        logger.info("Created workflow %s (%s) from %s", workflow.id, name, template_id)
        self.events.publish(WorkflowCreated(workflow=workflow))
        return workflow

    def start_workflow(self, workflow_id: str) -> bool:
        """Activate a draft workflow and assign its root steps."""

        with self._lock:
            workflow = self._workflow(workflow_id)
            if workflow.status != WorkflowStatus.DRAFT:
                return False
            workflow.status = WorkflowStatus.ACTIVE
            workflow.updated_at = self.scheduler.now()
            roots = [step for step in workflow.steps if not step.dependencies]
            for step in roots:
                step.status = StepStatus.ASSIGNED
        logger.info("Started workflow %s with %d root steps", workflow_id, len(roots))
        self.events.publish(WorkflowStarted(workflow=workflow))
        for step in roots:
            self._assign_step(workflow, step)
        return True

    def cancel_workflow(self, workflow_id: str, reason: str | None = None) -> bool:
        with self._lock:
            workflow = self._workflow(workflow_id)
            if workflow.status in _TERMINAL:
                return False
            workflow.status = WorkflowStatus.CANCELLED
            workflow.updated_at = self.scheduler.now()
            task_ids = [
                step.task_id
                for step in workflow.steps
                if step.status in _RUNNING_STEP and step.task_id is not None
            ]
        for task_id in task_ids:
            self.task_queue.cancel(task_id, reason or f"Workflow {workflow.name} cancelled")
        logger.info("Cancelled workflow %s%s", workflow_id, f": {reason}" if reason else "")
        self.events.publish(WorkflowCancelled(workflow=workflow, reason=reason))
        return True

    def retry_step(self, workflow_id: str, step_id: str) -> bool:
        """Re-assign a failed step of an active workflow as a fresh task."""

        with self._lock:
            workflow = self._workflow(workflow_id)
            step = workflow.step_by_id(step_id)
            if step is None or workflow.status != WorkflowStatus.ACTIVE:
                return False
            if step.status != StepStatus.FAILED or not self._dependencies_completed(workflow, step):
                return False
            step.status = StepStatus.ASSIGNED
        logger.info("Retrying step %s of workflow %s", step.name, workflow_id)
        return self._assign_step(workflow, step)

    # queries

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._lock:
            return self._workflows.get(workflow_id)

    def list_workflows(self) -> list[Workflow]:
        with self._lock:
            return list(self._workflows.values())

    def get_active_workflows(self) -> list[Workflow]:
        return [wf for wf in self.list_workflows() if wf.status == WorkflowStatus.ACTIVE]

    def get_workflows_by_worker(self, worker_id: str) -> list[Workflow]:
        return [
            wf
            for wf in self.list_workflows()
            if any(step.assigned_to == worker_id for step in wf.steps)
        ]

    def get_metrics(self) -> WorkflowMetrics:
        workflows = self.list_workflows()
        metrics = WorkflowMetrics(
            total_workflows=len(workflows),
            active_workflows=sum(1 for wf in workflows if wf.status == WorkflowStatus.ACTIVE),
            completed_workflows=sum(1 for wf in workflows if wf.status == WorkflowStatus.COMPLETED),
            failed_workflows=sum(1 for wf in workflows if wf.status == WorkflowStatus.FAILED),
        )
        total_steps = 0
        completed_steps = 0
        elapsed_ms = 0.0
        with self._lock:
            for workflow in workflows:
                for step in workflow.steps:
                    total_steps += 1
                    if step.status != StepStatus.COMPLETED:
                        continue
                    completed_steps += 1
                    if step.started_at is not None and step.completed_at is not None:
                        elapsed_ms += (step.completed_at - step.started_at).total_seconds() * 1000
        if completed_steps:
            metrics.average_step_time_ms = elapsed_ms / completed_steps
        if total_steps:
            metrics.step_success_rate = completed_steps / total_steps * 100
        return metrics

    # step assignment

    def _assign_step(self, workflow: Workflow, step: WorkflowStep) -> bool:
        try:
            worker = self._find_worker(step)
        except UpstreamUnavailableError as error:
            self._fail_step(workflow, step, str(error))
            return False

        task = self.task_queue.create(
            TaskCreate(
                title=f"{workflow.name}: {step.name}",
                description=step.description,
                required_skills=list(step.required_skills),
                priority=TaskPriority.MEDIUM,
                metadata={
                    "workflow_id": workflow.id,
                    "step_id": step.id,
                    "template_id": workflow.template_id,
                },
            ),
        )
        with self._lock:
            step.task_id = task.id
            step.assigned_to = worker.id
            step.status = StepStatus.ASSIGNED
            step.started_at = self.scheduler.now()
            step.completed_at = None
            step.result = None
            workflow.updated_at = step.started_at
            self._task_index[task.id] = (workflow.id, step.id)

        if not self.task_queue.assign(task.id, worker.id):
            self.task_queue.cancel(task.id, "Step assignment rejected")
            with self._lock:
                step.assigned_to = None
            self._fail_step(workflow, step, f"Task {task.id} could not be assigned to {worker.id}")
            return False

        self._notify(
            Message(
                sender=ORCHESTRATOR_SENDER,
                recipient=worker.id,
                kind="notification",
                topic="workflow-step-assigned",
                content={
                    "workflow_id": workflow.id,
                    "workflow_name": workflow.name,
                    "step_name": step.name,
                    "description": step.description,
                },
                priority=TaskPriority.HIGH,
            ),
        )
        logger.info("Assigned step %s of workflow %s to %s", step.name, workflow.id, worker.id)
        self.events.publish(StepAssigned(workflow=workflow, step=step, worker_id=worker.id))
        return True

    def _find_worker(self, step: WorkflowStep) -> Worker:
        """Available experts first, then registry skill matching."""

        try:
            experts = self.messaging.find_experts("workflow-task", list(step.required_skills))
        except Exception:  # noqa: BLE001
            logger.warning("Expert lookup failed for step %s", step.name, exc_info=True)
            experts = []
        for expert in experts:
            if self.registry.is_available(expert.id):
                return self.registry.get(expert.id)
        worker = self.registry.find_best_for_task(
            step.required_skills,
            TaskPriority.MEDIUM,
            require_skill_match=True,
        )
        if worker is None:
            raise UpstreamUnavailableError(f"No suitable worker found for step {step.name}")
        return worker

    def _fail_step(self, workflow: Workflow, step: WorkflowStep, reason: str) -> None:
        with self._lock:
            step.status = StepStatus.FAILED
            workflow.updated_at = self.scheduler.now()
        logger.error("Step %s of workflow %s failed: %s", step.name, workflow.id, reason)
        self.events.publish(StepFailed(workflow=workflow, step=step, reason=reason))

    def _notify(self, message: Message) -> None:
        try:
            self.messaging.send_message(message)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to deliver %s to %s", message.topic, message.recipient, exc_info=True)

    # event handlers

    def _on_process_started(self, event: ProcessStarted) -> None:
        task_id = event.process.task_id
        if task_id is None:
            return
        with self._lock:
            located = self._locate(task_id)
            if located is None:
                return
            _, step = located
            if step.status == StepStatus.ASSIGNED:
                step.status = StepStatus.IN_PROGRESS

    def _on_task_completed(self, event: TaskCompleted) -> None:
        with self._lock:
            located = self._locate(event.task.id)
            if located is None:
                return
            workflow, step = located
            now = self.scheduler.now()
            step.status = StepStatus.COMPLETED
            step.completed_at = now
            step.result = event.task.result
            workflow.updated_at = now
            released = [
                candidate
                for candidate in workflow.steps
                if candidate.status == StepStatus.PENDING
                and self._dependencies_completed(workflow, candidate)
            ]
            for candidate in released:
                candidate.status = StepStatus.ASSIGNED
            finished = all(s.status == StepStatus.COMPLETED for s in workflow.steps)
            if finished:
                workflow.status = WorkflowStatus.COMPLETED

        logger.info("Step %s of workflow %s completed", step.name, workflow.id)
        self.events.publish(StepCompleted(workflow=workflow, step=step))
        for candidate in released:
            self._assign_step(workflow, candidate)
        if finished:
            logger.info("Workflow %s completed", workflow.id)
            self.events.publish(WorkflowCompleted(workflow=workflow))

    def _on_task_failed(self, event: TaskFailed) -> None:
        with self._lock:
            located = self._locate(event.task.id)
            if located is None:
                return
            workflow, step = located
            step.status = StepStatus.FAILED
            workflow.updated_at = self.scheduler.now()
            requester = step.assigned_to

        logger.warning("Step %s of workflow %s failed: %s", step.name, workflow.id, event.error)
        self.events.publish(StepFailed(workflow=workflow, step=step, reason=event.error))
        if requester is not None:
            self._escalate(workflow, step, requester)

    def _escalate(self, workflow: Workflow, step: WorkflowStep, requester: str) -> None:
        try:
            experts = self.messaging.find_experts("troubleshooting", list(step.required_skills))
            helpers = [expert.id for expert in experts if expert.id != requester]
            if not helpers:
                return
            self.messaging.create_collaboration(
                requester,
                helpers,
                f"Help needed: {step.name}",
                f"Step failed in workflow {workflow.name}. Need assistance to resolve.",
                self.scheduler.now() + ESCALATION_DEADLINE,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Escalation failed for step %s", step.name, exc_info=True)

    # helpers

    def _workflow(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def _locate(self, task_id: str) -> tuple[Workflow, WorkflowStep] | None:
        """Active workflow and step currently backed by ``task_id``."""

        ref = self._task_index.get(task_id)
        if ref is None:
            return None
        workflow = self._workflows.get(ref[0])
        if workflow is None or workflow.status != WorkflowStatus.ACTIVE:
            return None
        step = workflow.step_by_id(ref[1])
        if step is None or step.task_id != task_id:
            return None
        return workflow, step

    @staticmethod
    def _dependencies_completed(workflow: Workflow, step: WorkflowStep) -> bool:
        for name in step.dependencies:
            dependency = workflow.step_by_name(name)
            if dependency is None or dependency.status != StepStatus.COMPLETED:
                return False
        return True

