"""Worker directory: skills, availability and workload/status mutation."""

from __future__ import annotations

import copy
import logging
import math
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from crew_control.errors import NotFoundError, ValidationError
from crew_control.events import EventBus, StatusChanged, WorkloadChanged
from crew_control.models import TaskPriority, Worker, WorkerStatus
from crew_control.persistence import PersistenceCollaborator

logger = logging.getLogger(__name__)

WORKLOAD_FLOOR = 0
WORKLOAD_CEILING = 100
PRIORITY_WEIGHTS = {
    TaskPriority.HIGH: 0.8,
    TaskPriority.MEDIUM: 0.6,
    TaskPriority.LOW: 0.4,
}


@dataclass(slots=True)
class RegistryStatistics:
    total: int = 0
    available: int = 0
    busy: int = 0
    offline: int = 0
    departments: dict[str, int] = field(default_factory=dict)
    skills: dict[str, int] = field(default_factory=dict)


class WorkerRegistry:
    """Source of truth for worker identity, skills, status and workload.

    The registry is the only writer of ``Worker.workload``. Every mutation is
    persisted through the collaborator (failures are logged) and announced on
    the event bus once the internal lock has been released.
    """

    def __init__(
        self,
        *,
        events: EventBus,
        persistence: PersistenceCollaborator,
        availability_threshold: int = 80,
    ) -> None:
        self.events = events
        self.persistence = persistence
        self.availability_threshold = availability_threshold
        self._lock = threading.RLock()
        self._workers: dict[str, Worker] = {}

    def load(self, workers: Iterable[Worker] | None = None) -> int:
        """Replace the roster; reads the persistence collaborator when omitted."""

        roster = list(workers) if workers is not None else self.persistence.load_workers()
        with self._lock:
            self._workers = {}
            for worker in roster:
                worker.workload = _clamp(worker.workload)
                self._workers[worker.id] = worker
        logger.info("Loaded %d workers", len(roster))
        return len(roster)

    def get(self, worker_id: str) -> Worker:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise NotFoundError(f"Worker {worker_id} not found")
            return worker

    def find(self, worker_id: str) -> Worker | None:
        with self._lock:
            return self._workers.get(worker_id)

    def list_workers(self) -> list[Worker]:
        with self._lock:
            return list(self._workers.values())

    def get_by_skill(self, skill: str) -> list[Worker]:
        """Active workers whose skill set contains ``skill`` (case-insensitive)."""

        with self._lock:
            return [
                worker
                for worker in self._workers.values()
                if worker.status == WorkerStatus.ACTIVE and worker.has_skill(skill)
            ]

    def get_by_role(self, role: str) -> list[Worker]:
        with self._lock:
            return [worker for worker in self._workers.values() if worker.role == role]

    def get_available(self) -> list[Worker]:
        with self._lock:
            return [worker for worker in self._workers.values() if self._is_available(worker)]

    def is_available(self, worker_id: str) -> bool:
        with self._lock:
            worker = self._workers.get(worker_id)
            return worker is not None and self._is_available(worker)

    def find_best_for_task(
        self,
        required_skills: list[str],
        priority: TaskPriority = TaskPriority.MEDIUM,
        *,
        require_skill_match: bool = False,
    ) -> Worker | None:
        """Score available workers on skill match and spare capacity."""

        weight = PRIORITY_WEIGHTS[TaskPriority(priority)]
        best: Worker | None = None
        best_score = -math.inf
        for worker in self.get_available():
            matched = worker.matched_skills(required_skills)
            if require_skill_match and required_skills and matched == 0:
                continue
            skill_score = matched / len(required_skills) if required_skills else 1.0
            availability_score = (WORKLOAD_CEILING - worker.workload) / WORKLOAD_CEILING
            score = skill_score * weight + availability_score * (1 - weight)
            if score > best_score:
                best, best_score = worker, score
        return best

    def build_team(self, required_skills: list[str]) -> list[Worker]:
        """Greedy skill cover: least loaded available worker per uncovered skill."""

        available = self.get_available()
        team: list[Worker] = []
        covered: set[str] = set()
        for skill in required_skills:
            if skill.lower() in covered:
                continue
            candidates = sorted(
                (worker for worker in available if worker not in team and worker.has_skill(skill)),
                key=lambda worker: worker.workload,
            )
            if not candidates:
                continue
            selected = candidates[0]
            team.append(selected)
            covered.update(own.lower() for own in selected.skills)
        return team

    def update_workload(
        self,
        worker_id: str,
        *,
        delta: float | None = None,
        absolute: float | None = None,
    ) -> int:
        """Adjust workload by ``delta`` (clamped) or set it to ``absolute``.

        NaN/Infinite inputs and absolute values outside [0, 100] raise
        ``ValidationError`` without touching the worker.
        """

        if (delta is None) == (absolute is None):
            raise ValidationError("Pass exactly one of delta or absolute")
        value = delta if delta is not None else absolute
        if value is None or not math.isfinite(value):
            raise ValidationError(f"Workload value must be finite, got {value!r}")
        if absolute is not None and not WORKLOAD_FLOOR <= absolute <= WORKLOAD_CEILING:
            raise ValidationError(
                f"Workload must be within [{WORKLOAD_FLOOR}, {WORKLOAD_CEILING}], got {absolute!r}",
            )

        with self._lock:
            worker = self.get(worker_id)
            old = worker.workload
            target = old + value if delta is not None else value
            worker.workload = _clamp(target)
            new = worker.workload
        self._persist()
        self.events.publish(WorkloadChanged(worker_id=worker_id, old=old, new=new))
        return new

    def update_status(self, worker_id: str, status: WorkerStatus | str) -> WorkerStatus:
        try:
            new_status = WorkerStatus(status)
        except ValueError as error:
            raise ValidationError(f"Unknown worker status: {status!r}") from error

        with self._lock:
            worker = self.get(worker_id)
            old = worker.status
            worker.status = new_status
        self._persist()
        self.events.publish(StatusChanged(worker_id=worker_id, old=old, new=new_status))
        return new_status

    def update_performance_metric(self, worker_id: str, metric: str, value: float) -> None:
        with self._lock:
            self.get(worker_id).performance_metrics[metric] = value
        self._persist()

    def record_task_outcome(self, worker_id: str, *, succeeded: bool) -> None:
        metric = "projects_completed" if succeeded else "tasks_failed"
        with self._lock:
            metrics = self.get(worker_id).performance_metrics
            metrics[metric] = metrics.get(metric, 0) + 1
        self._persist()

    def get_statistics(self) -> RegistryStatistics:
        workers = self.list_workers()
        departments = Counter(worker.department for worker in workers if worker.department)
        skills = Counter(skill for worker in workers for skill in worker.skills)
        return RegistryStatistics(
            total=len(workers),
            available=sum(1 for worker in workers if self._is_available(worker)),
            busy=sum(1 for worker in workers if worker.status == WorkerStatus.BUSY),
            offline=sum(1 for worker in workers if worker.status == WorkerStatus.OFFLINE),
            departments=dict(departments),
            skills=dict(skills),
        )

    def _is_available(self, worker: Worker) -> bool:
        return (
            worker.status == WorkerStatus.ACTIVE
            and worker.workload < self.availability_threshold
        )

    def _persist(self) -> None:
        with self._lock:
            snapshot = [copy.deepcopy(worker) for worker in self._workers.values()]
        try:
            self.persistence.save_workers(snapshot)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to persist worker roster", exc_info=True)


def _clamp(value: float) -> int:
    return int(round(min(WORKLOAD_CEILING, max(WORKLOAD_FLOOR, value))))
