"""Resource accounting, assignment limits and strategy-driven worker selection."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

from crew_control.balancing import STRATEGIES, Candidate
from crew_control.config import MonitorSettings, ResourceLimits
from crew_control.errors import ValidationError
from crew_control.events import (
    AutoScale,
    EventBus,
    ResourceLimitReached,
    ResourceWarning,
    StrategyChanged,
    SystemMetricsSampled,
    TaskCompleted,
)
from crew_control.models import (
    ResourceUsage,
    SystemResources,
    Task,
    TaskStatus,
    Worker,
    WorkerStatus,
)
from crew_control.registry import WorkerRegistry
from crew_control.supervisor import ProcessSupervisor
from crew_control.system_metrics import SystemSampler
from crew_control.task_queue import TaskQueue
from crew_control.timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

_MB = 1024 * 1024
_EFFICIENCY_DECAY = 0.7


class SystemMetricsSource(Protocol):
    def sample(self) -> SystemResources: ...


@dataclass(slots=True)
class ResourceMetrics:
    total_processes: int = 0
    total_tasks: int = 0
    average_load: float = 0.0
    average_efficiency: float = 0.0
    system_cpu_percent: float = 0.0
    strategy: str = ""
    process_ceiling: int = 0


class ResourceManager:
    """Derives per-worker usage from supervisor and queue state and picks workers.

    Process and task counts are recomputed on every refresh; efficiency and
    the last completion time are the only values carried between refreshes.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        events: EventBus,
        scheduler: Scheduler,
        registry: WorkerRegistry,
        task_queue: TaskQueue,
        supervisor: ProcessSupervisor,
        limits: ResourceLimits | None = None,
        monitor: MonitorSettings | None = None,
        strategy: str = "round-robin",
        sampler: SystemMetricsSource | None = None,
    ) -> None:
        self.events = events
        self.scheduler = scheduler
        self.registry = registry
        self.task_queue = task_queue
        self.supervisor = supervisor
        self.limits = limits or ResourceLimits()
        self.monitor = monitor or MonitorSettings()
        self.sampler = sampler or SystemSampler()
        if strategy not in STRATEGIES:
            raise ValidationError(f"Unknown load balancing strategy: {strategy!r}")
        self.strategy = strategy
        self.process_ceiling = self.limits.max_total_processes
        self._lock = threading.RLock()
        self._usage: dict[str, ResourceUsage] = {}
        self._system: SystemResources | None = None
        self._timer: TimerHandle | None = None
        self._unsubscribe = events.subscribe(TaskCompleted, self._on_task_completed)

    # lifecycle

    def start(self) -> None:
        if self._timer is None:
            self._timer = self.scheduler.call_every(
                self.monitor.resource_check_interval_seconds,
                self.tick,
            )
            logger.info(
                "Resource monitoring every %.1fs using %s strategy",
                self.monitor.resource_check_interval_seconds,
                self.strategy,
            )

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def tick(self) -> None:
        """One monitoring cycle: sample host, refresh usage, check limits."""

        try:
            resources = self.sampler.sample()
        except (OSError, ValueError):
            logger.warning("System metrics sampling failed", exc_info=True)
        else:
            with self._lock:
                self._system = resources
            self.events.publish(SystemMetricsSampled(resources=resources))
        self.refresh_usage()
        self.check_limits()
        if self.monitor.auto_scale_enabled:
            self.auto_scale()

    # usage

    def refresh_usage(self) -> list[ResourceUsage]:
        workers = self.registry.list_workers()
        processes = [p for p in self.supervisor.list_processes() if p.status.is_live]
        in_progress = self.task_queue.get_by_status(TaskStatus.IN_PROGRESS)
        with self._lock:
            for worker in workers:
                usage = self._usage.setdefault(worker.id, ResourceUsage(worker_id=worker.id))
                usage.process_count = 0
                usage.task_count = 0
                usage.memory_mb = 0.0
                usage.cpu_percent = 0.0
            for process in processes:
                usage = self._usage.get(process.worker_id)
                if usage is None:
                    continue
                usage.process_count += 1
                usage.memory_mb += process.memory_bytes / _MB
                usage.cpu_percent += process.cpu_percent
            for task in in_progress:
                usage = self._usage.get(task.assigned_to or "")
                if usage is not None:
                    usage.task_count += 1
            return list(self._usage.values())

    def get_usage(self, worker_id: str) -> ResourceUsage | None:
        with self._lock:
            return self._usage.get(worker_id)

    def list_usage(self) -> list[ResourceUsage]:
        with self._lock:
            return list(self._usage.values())

    def get_system_resources(self) -> SystemResources | None:
        with self._lock:
            return self._system

    def load(self, worker_id: str) -> float:
        """Weighted fill of tasks (40), processes (30), memory (15) and cpu (15)."""

        with self._lock:
            usage = self._usage.get(worker_id)
            if usage is None:
                return 0.0
            return self._load(usage)

    def _load(self, usage: ResourceUsage) -> float:
        limits = self.limits
        process_slots = usage.process_count or 1
        task_load = usage.task_count / limits.max_tasks_per_worker * 40
        process_load = usage.process_count / limits.max_processes_per_worker * 30
        memory_load = usage.memory_mb / (limits.max_memory_per_process_mb * process_slots) * 15
        cpu_load = usage.cpu_percent / (limits.max_cpu_percent_per_process * process_slots) * 15
        return min(100.0, task_load + process_load + memory_load + cpu_load)

    # assignment

    def can_assign(self, worker_id: str) -> bool:
        self.refresh_usage()
        worker = self.registry.find(worker_id)
        if worker is None:
            return False
        with self._lock:
            return self._can_assign(worker, self._usage.get(worker_id))

    def _can_assign(self, worker: Worker, usage: ResourceUsage | None) -> bool:
        if usage is None or worker.status != WorkerStatus.ACTIVE:
            return False
        if usage.task_count >= self.limits.max_tasks_per_worker:
            return False
        if usage.process_count >= self.limits.max_processes_per_worker:
            return False
        if usage.last_task_completed_at is not None:
            idle = (self.scheduler.now() - usage.last_task_completed_at).total_seconds()
            if idle < self.limits.min_idle_seconds:
                return False
        free_mb = self._system.free_memory_mb if self._system is not None else None
        return free_mb is None or free_mb >= self.monitor.min_free_memory_mb

    def select_worker(self, task: Task) -> Worker | None:
        """Pick a worker for ``task`` with the current strategy, or ``None``."""

        self.refresh_usage()
        workers = [
            worker
            for worker in self.registry.list_workers()
            if worker.status == WorkerStatus.ACTIVE
            and (not task.required_skills or worker.matched_skills(task.required_skills) > 0)
        ]
        with self._lock:
            strategy_name = self.strategy
            candidates = []
            for worker in workers:
                usage = self._usage.get(worker.id)
                if self._can_assign(worker, usage):
                    candidates.append(
                        Candidate(
                            worker=worker,
                            usage=usage,
                            load=self._load(usage) if usage is not None else 0.0,
                        ),
                    )
        chosen = STRATEGIES[strategy_name](candidates, task)
        if chosen is None:
            logger.debug("No eligible worker for task %s", task.id)
            return None
        return chosen.worker

    def set_strategy(self, name: str) -> None:
        """Switch the strategy used for subsequent selections."""

        normalized = name.strip().lower()
        if normalized not in STRATEGIES:
            raise ValidationError(
                f"Unknown load balancing strategy: {name!r}. "
                f"Available: {', '.join(sorted(STRATEGIES))}",
            )
        with self._lock:
            self.strategy = normalized
        logger.info("Load balancing strategy changed to %s", normalized)
        self.events.publish(StrategyChanged(strategy=normalized))

    # limits

    def check_limits(self) -> None:
        total = self.supervisor.live_count()
        with self._lock:
            ceiling = self.process_ceiling
            system = self._system
        if total >= ceiling:
            logger.warning("Process ceiling reached: %d/%d", total, ceiling)
            self.events.publish(
                ResourceLimitReached(kind="total-processes", current=total, limit=ceiling),
            )
        free_mb = system.free_memory_mb if system is not None else None
        if free_mb is not None and free_mb < self.monitor.low_memory_warning_mb:
            logger.warning("Low free memory: %.0f MB", free_mb)
            self.events.publish(ResourceWarning(kind="low-memory", value=free_mb))

    def auto_scale(self) -> None:
        """Shrink the process ceiling under high cpu, restore it when the host is idle."""

        live = self.supervisor.live_count()
        floor = self.monitor.auto_scale_floor
        with self._lock:
            cpu = self._system.cpu_percent if self._system is not None else 0.0
            ceiling = self.process_ceiling
            if cpu > self.monitor.auto_scale_high_cpu_percent and ceiling > floor:
                action, reason = "reduce", "high-load"
                self.process_ceiling = max(floor, live - 2)
            elif (
                cpu < self.monitor.auto_scale_low_cpu_percent
                and ceiling != self.limits.max_total_processes
            ):
                action, reason = "increase", "low-load"
                self.process_ceiling = self.limits.max_total_processes
            else:
                return
            new_ceiling = self.process_ceiling
        self.supervisor.max_processes = new_ceiling
        logger.info("Auto-scale %s (%s): process ceiling %d -> %d", action, reason, ceiling, new_ceiling)
        self.events.publish(AutoScale(action=action, reason=reason, ceiling=new_ceiling))

    def get_metrics(self) -> ResourceMetrics:
        with self._lock:
            usages = list(self._usage.values())
            metrics = ResourceMetrics(
                total_processes=sum(usage.process_count for usage in usages),
                total_tasks=sum(usage.task_count for usage in usages),
                system_cpu_percent=self._system.cpu_percent if self._system is not None else 0.0,
                strategy=self.strategy,
                process_ceiling=self.process_ceiling,
            )
            if usages:
                metrics.average_load = sum(self._load(usage) for usage in usages) / len(usages)
                metrics.average_efficiency = sum(usage.efficiency for usage in usages) / len(usages)
        return metrics

    def _on_task_completed(self, event: TaskCompleted) -> None:
        task = event.task
        if task.assigned_to is None:
            return
        with self._lock:
            usage = self._usage.setdefault(
                task.assigned_to,
                ResourceUsage(worker_id=task.assigned_to),
            )
            usage.last_task_completed_at = task.completed_at or self.scheduler.now()
            actual = (task.duration_ms or 0.0) / 1000
            score = (
                100.0
                if actual <= 0
                else min(100.0, task.estimated_duration_seconds / actual * 100)
            )
            usage.efficiency = usage.efficiency * _EFFICIENCY_DECAY + score * (1 - _EFFICIENCY_DECAY)
