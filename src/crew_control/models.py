"""Domain models for workers, tasks, managed processes and workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkerStatus(str, Enum):
    """Live status of a worker identity."""

    ACTIVE = "active"
    BUSY = "busy"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class TaskPriority(str, Enum):
    """Priority tiers; ``rank`` orders high > medium > low."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {TaskPriority.LOW: 1, TaskPriority.MEDIUM: 2, TaskPriority.HIGH: 3}


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProcessStatus(str, Enum):
    """Managed process states: starting -> running -> (stopping -> stopped) | error."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_live(self) -> bool:
        return self in (ProcessStatus.STARTING, ProcessStatus.RUNNING, ProcessStatus.STOPPING)


class LogLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


class StepStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Worker:
    """Worker identity tracked by the registry."""

    id: str
    name: str
    role: str
    skills: list[str] = field(default_factory=list)
    status: WorkerStatus = WorkerStatus.ACTIVE
    workload: int = 0
    department: str = ""
    performance_metrics: dict[str, float] = field(default_factory=dict)
    instructions: str = ""
    model: str | None = None
    tools: list[str] = field(default_factory=list)
    command_template: str | None = None

    def has_skill(self, skill: str) -> bool:
        wanted = skill.strip().lower()
        return any(own.strip().lower() == wanted for own in self.skills)

    def matched_skills(self, required: list[str] | tuple[str, ...]) -> int:
        return sum(1 for skill in required if self.has_skill(skill))


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str = ""
    required_skills: list[str] = field(default_factory=list)
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[str] = field(default_factory=list)
    max_retries: int = 3
    estimated_duration_seconds: float = 3600.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Task:
    """Queued unit of work."""

    id: str
    title: str
    description: str
    required_skills: list[str]
    priority: TaskPriority
    dependencies: list[str]
    max_retries: int
    estimated_duration_seconds: float
    created_at: datetime
    sequence: int
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    assigned_to: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000


@dataclass(slots=True)
class QueueStatistics:
    """Counts by status/priority and average completion time."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    by_priority: dict[str, int] = field(
        default_factory=lambda: {priority.value: 0 for priority in TaskPriority},
    )
    average_completion_time_ms: float = 0.0


@dataclass(slots=True)
class LogEntry:
    """One captured line of worker process output."""

    level: LogLevel
    message: str
    timestamp: datetime
    stream: str
    process_id: str
    worker_id: str


@dataclass(slots=True)
class ProcessConfig:
    """Launch request for a worker process, optionally bound to a task."""

    worker_id: str
    task_id: str | None = None
    working_directory: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    command_template: str | None = None
    instructions: str | None = None
    model: str | None = None
    tools: list[str] = field(default_factory=list)
    max_turns: int | None = None
    keep_stdin_open: bool = False


@dataclass(slots=True)
class ManagedProcess:
    """Supervised OS process backing a worker's execution of a task."""

    id: str
    worker_id: str
    task_id: str | None
    command: list[str]
    created_at: datetime
    status: ProcessStatus = ProcessStatus.STARTING
    pid: int = 0
    restarts: int = 0
    memory_bytes: int = 0
    cpu_percent: float = 0.0
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_heartbeat: datetime | None = None
    exit_code: int | None = None

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize for the persistence collaborator."""

        return {
            "id": self.id,
            "worker_id": self.worker_id,
            "task_id": self.task_id,
            "command": list(self.command),
            "status": self.status.value,
            "pid": self.pid,
            "restarts": self.restarts,
            "memory_bytes": self.memory_bytes,
            "cpu_percent": self.cpu_percent,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso_or_none(self.started_at),
            "stopped_at": _iso_or_none(self.stopped_at),
            "last_heartbeat": _iso_or_none(self.last_heartbeat),
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_snapshot(cls, raw: dict[str, Any]) -> ManagedProcess:
        """Rehydrate a snapshot; restored processes are always stopped."""

        return cls(
            id=str(raw["id"]),
            worker_id=str(raw["worker_id"]),
            task_id=raw.get("task_id"),
            command=[str(part) for part in raw.get("command", [])],
            created_at=datetime.fromisoformat(raw["created_at"]),
            status=ProcessStatus.STOPPED,
            pid=0,
            restarts=int(raw.get("restarts", 0)),
            memory_bytes=int(raw.get("memory_bytes", 0)),
            cpu_percent=float(raw.get("cpu_percent", 0.0)),
            started_at=_parse_or_none(raw.get("started_at")),
            stopped_at=_parse_or_none(raw.get("stopped_at")),
            last_heartbeat=_parse_or_none(raw.get("last_heartbeat")),
            exit_code=raw.get("exit_code"),
        )


@dataclass(slots=True)
class ProcessStatistics:
    total: int = 0
    running: int = 0
    stopped: int = 0
    errored: int = 0


@dataclass(slots=True)
class ResourceUsage:
    """Derived per-worker usage record kept by the resource manager."""

    worker_id: str
    process_count: int = 0
    task_count: int = 0
    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    last_task_completed_at: datetime | None = None
    efficiency: float = 100.0


@dataclass(slots=True)
class SystemResources:
    """Host-level metrics sample; memory fields are ``None`` when unknown."""

    total_memory_mb: float | None
    free_memory_mb: float | None
    used_memory_mb: float | None
    cpu_percent: float
    load_average: tuple[float, float, float]
    sampled_at: datetime


@dataclass(slots=True)
class StepBlueprint:
    """Template entry for one workflow step."""

    name: str
    description: str
    required_skills: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowTemplate:
    id: str
    name: str
    description: str
    steps: list[StepBlueprint]
    kind: str = ""


@dataclass(slots=True)
class WorkflowStep:
    id: str
    name: str
    description: str
    required_skills: list[str]
    dependencies: list[str]
    status: StepStatus = StepStatus.PENDING
    assigned_to: str | None = None
    task_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None


@dataclass(slots=True)
class Workflow:
    id: str
    name: str
    description: str
    template_id: str
    steps: list[WorkflowStep]
    created_at: datetime
    updated_at: datetime
    status: WorkflowStatus = WorkflowStatus.DRAFT
    metadata: dict[str, Any] = field(default_factory=dict)

    def step_by_id(self, step_id: str) -> WorkflowStep | None:
        return next((step for step in self.steps if step.id == step_id), None)

    def step_by_name(self, name: str) -> WorkflowStep | None:
        return next((step for step in self.steps if step.name == name), None)


@dataclass(slots=True)
class WorkflowMetrics:
    total_workflows: int = 0
    active_workflows: int = 0
    completed_workflows: int = 0
    failed_workflows: int = 0
    average_step_time_ms: float = 0.0
    step_success_rate: float = 0.0


@dataclass(slots=True)
class Message:
    """Notification handed to the messaging collaborator."""

    sender: str
    recipient: str
    kind: str
    topic: str
    content: dict[str, Any]
    priority: TaskPriority = TaskPriority.MEDIUM


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_or_none(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
