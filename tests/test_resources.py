from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from crew_control.balancing import (
    Candidate,
    efficiency_based,
    least_loaded,
    round_robin,
    skill_based,
)
from crew_control.config import MonitorSettings, ResourceLimits
from crew_control.errors import ValidationError
from crew_control.events import (
    AutoScale,
    ResourceLimitReached,
    ResourceWarning,
    StrategyChanged,
    SystemMetricsSampled,
)
from crew_control.models import (
    ProcessConfig,
    ResourceUsage,
    SystemResources,
    TaskCreate,
    WorkerStatus,
)
from crew_control.resources import ResourceManager

pytestmark = [
    allure.epic("Worker Fleet"),
    allure.feature("Resources & Load Balancing"),
]


class FakeSystem:
    def __init__(self) -> None:
        self.cpu_percent = 20.0
        self.free_memory_mb: float | None = 4096.0

    def sample(self) -> SystemResources:
        return SystemResources(
            total_memory_mb=8192.0,
            free_memory_mb=self.free_memory_mb,
            used_memory_mb=None if self.free_memory_mb is None else 8192.0 - self.free_memory_mb,
            cpu_percent=self.cpu_percent,
            load_average=(0.5, 0.4, 0.3),
            sampled_at=datetime(2026, 1, 1, tzinfo=UTC),
        )


@pytest.fixture()
def system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture()
def manager(events, scheduler, registry, task_queue, supervisor, system, make_worker):
    registry.load(
        [
            make_worker("ana", "python", "testing"),
            make_worker("ben", "python"),
            make_worker("cy", "docs", status=WorkerStatus.OFFLINE),
        ],
    )
    return ResourceManager(
        events=events,
        scheduler=scheduler,
        registry=registry,
        task_queue=task_queue,
        supervisor=supervisor,
        limits=ResourceLimits(),
        monitor=MonitorSettings(auto_scale_enabled=False),
        sampler=system,
    )


def _assign(task_queue, worker_id: str, count: int = 1, **fields) -> list:
    tasks = []
    for index in range(count):
        task = task_queue.create(TaskCreate(title=f"{worker_id}-{index}", **fields))
        assert task_queue.assign(task.id, worker_id)
        tasks.append(task)
    return tasks


def test_can_assign_requires_active_worker(manager) -> None:
    assert manager.can_assign("ana")
    assert not manager.can_assign("cy")
    assert not manager.can_assign("nobody")


def test_can_assign_respects_task_limit(manager, task_queue) -> None:
    _assign(task_queue, "ana", count=4)
    assert manager.can_assign("ana")

    _assign(task_queue, "ana")

    assert not manager.can_assign("ana")
    assert manager.get_usage("ana").task_count == 5


def test_can_assign_respects_process_limit(manager, supervisor) -> None:
    for _ in range(3):
        supervisor.create(ProcessConfig(worker_id="ben", command_template="sleep 30"))

    assert not manager.can_assign("ben")
    assert manager.get_usage("ben").process_count == 3


def test_can_assign_waits_for_idle_time_after_completion(manager, task_queue, scheduler) -> None:
    (task,) = _assign(task_queue, "ana")
    task_queue.complete(task.id)

    assert not manager.can_assign("ana")
    scheduler.advance(30)
    assert manager.can_assign("ana")


def test_low_free_memory_blocks_assignment_and_warns(manager, system, recorded) -> None:
    system.free_memory_mb = 256.0

    manager.tick()

    assert not manager.can_assign("ana")
    assert any(isinstance(event, SystemMetricsSampled) for event in recorded)
    warnings = [event for event in recorded if isinstance(event, ResourceWarning)]
    assert [(w.kind, w.value) for w in warnings] == [("low-memory", 256.0)]


def test_unknown_free_memory_does_not_block_assignment(manager, system, recorded) -> None:
    system.free_memory_mb = None

    manager.tick()

    assert manager.can_assign("ana")
    assert not any(isinstance(event, ResourceWarning) for event in recorded)


def test_load_weights_tasks_and_processes(manager, task_queue, supervisor) -> None:
    _assign(task_queue, "ana", count=2)
    supervisor.create(ProcessConfig(worker_id="ana", command_template="sleep 30"))
    manager.refresh_usage()

    # 2/5 tasks * 40 + 1/3 processes * 30; sampler memory/cpu are zero until a health check
    assert manager.load("ana") == pytest.approx(16.0 + 10.0)
    assert manager.load("unknown") == 0.0


def test_efficiency_tracks_estimated_versus_actual_duration(manager, task_queue, scheduler) -> None:
    (task,) = _assign(task_queue, "ana", estimated_duration_seconds=60)
    scheduler.advance(120)
    task_queue.complete(task.id)

    assert manager.get_usage("ana").efficiency == pytest.approx(85.0)


def test_round_robin_selects_worker_with_fewest_tasks(manager, task_queue) -> None:
    _assign(task_queue, "ana")
    task = task_queue.create(TaskCreate(title="next", required_skills=["python"]))

    assert manager.select_worker(task).id == "ben"


def test_select_worker_requires_a_matching_skill(manager, task_queue) -> None:
    task = task_queue.create(TaskCreate(title="rust", required_skills=["rust"]))

    assert manager.select_worker(task) is None


def test_skill_based_strategy_prefers_better_match(manager, task_queue, recorded) -> None:
    manager.set_strategy("skill-based")
    task = task_queue.create(TaskCreate(title="qa", required_skills=["python", "testing"]))

    assert manager.select_worker(task).id == "ana"
    assert [e.strategy for e in recorded if isinstance(e, StrategyChanged)] == ["skill-based"]


def test_set_strategy_rejects_unknown_names(manager) -> None:
    with pytest.raises(ValidationError, match="Unknown load balancing strategy"):
        manager.set_strategy("random")

    assert manager.strategy == "round-robin"


def test_limit_reached_when_live_processes_hit_ceiling(manager, supervisor, recorded) -> None:
    manager.process_ceiling = 1
    supervisor.create(ProcessConfig(worker_id="ana", command_template="sleep 30"))

    manager.check_limits()

    reached = [event for event in recorded if isinstance(event, ResourceLimitReached)]
    assert [(e.kind, e.current, e.limit) for e in reached] == [("total-processes", 1, 1)]


def test_auto_scale_reduces_and_restores_ceiling(manager, supervisor, system, recorded) -> None:
    system.cpu_percent = 95.0
    manager.tick()
    manager.auto_scale()

    assert manager.process_ceiling == 10
    assert supervisor.max_processes == 10

    system.cpu_percent = 10.0
    manager.tick()
    manager.auto_scale()

    assert manager.process_ceiling == 20
    assert supervisor.max_processes == 20
    actions = [(e.action, e.reason) for e in recorded if isinstance(e, AutoScale)]
    assert actions == [("reduce", "high-load"), ("increase", "low-load")]


def test_monitoring_tick_runs_on_the_scheduler(manager, scheduler, recorded) -> None:
    manager.start()
    scheduler.advance(10)
    manager.stop()
    scheduler.advance(10)

    assert sum(isinstance(event, SystemMetricsSampled) for event in recorded) == 2


def test_metrics_summarize_usage(manager, task_queue, system) -> None:
    _assign(task_queue, "ana")
    manager.tick()

    metrics = manager.get_metrics()

    assert metrics.total_tasks == 1
    assert metrics.strategy == "round-robin"
    assert metrics.system_cpu_percent == 20.0
    assert metrics.average_efficiency == pytest.approx(100.0)
    assert metrics.process_ceiling == 20
    assert manager.get_system_resources().free_memory_mb == 4096.0
    assert sorted(usage.worker_id for usage in manager.list_usage()) == ["ana", "ben", "cy"]


def _candidate(make_worker, worker_id, *skills, tasks=0, load=0.0, efficiency=100.0):
    worker = make_worker(worker_id, *skills)
    usage = ResourceUsage(worker_id=worker_id, task_count=tasks, efficiency=efficiency)
    return Candidate(worker=worker, usage=usage, load=load)


def test_strategies_are_pure_selection_functions(make_worker, task_queue) -> None:
    task = task_queue.create(TaskCreate(title="t", required_skills=["go"]))
    busy = _candidate(make_worker, "busy", "go", tasks=3, load=60.0, efficiency=90.0)
    idle = _candidate(make_worker, "idle", tasks=0, load=5.0, efficiency=40.0)

    assert round_robin([busy, idle], task) is idle
    assert least_loaded([busy, idle], task) is idle
    assert skill_based([busy, idle], task) is idle
    assert efficiency_based([busy, idle], task) is busy
    assert round_robin([], task) is None


def test_efficiency_strategy_treats_unknown_as_fifty(make_worker, task_queue) -> None:
    task = task_queue.create(TaskCreate(title="t"))
    unknown = Candidate(worker=make_worker("new"), usage=None, load=0.0)
    weak = _candidate(make_worker, "weak", efficiency=40.0)

    assert efficiency_based([weak, unknown], task) is unknown
