"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
import time
from collections.abc import Callable

import pytest

from crew_control.config import SupervisorSettings
from crew_control.events import Event, EventBus
from crew_control.models import Worker
from crew_control.persistence import InMemoryPersistence
from crew_control.registry import WorkerRegistry
from crew_control.supervisor import ProcessSupervisor
from crew_control.system_metrics import ProcessSample
from crew_control.task_queue import TaskQueue
from crew_control.timers import ManualScheduler

ECHO_WORKER_TEMPLATE = f"{shlex.quote(sys.executable)} -m crew_control.agents.echo_worker"


@pytest.fixture()
def echo_command() -> Callable[..., str]:
    """Command template for the bundled echo worker with extra arguments."""

    def _render(*extra: str) -> str:
        return " ".join([ECHO_WORKER_TEMPLATE, *extra])

    return _render


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorded(events: EventBus) -> list[Event]:
    """Every event published on the bus, in order."""

    captured: list[Event] = []
    events.subscribe_all(captured.append)
    return captured


@pytest.fixture()
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture()
def make_worker() -> Callable[..., Worker]:
    def _make(worker_id: str, *skills: str, **overrides) -> Worker:
        return Worker(
            id=worker_id,
            name=overrides.pop("name", worker_id.title()),
            role=overrides.pop("role", "engineer"),
            skills=list(skills),
            **overrides,
        )

    return _make


@pytest.fixture()
def registry(events: EventBus, persistence: InMemoryPersistence) -> WorkerRegistry:
    return WorkerRegistry(events=events, persistence=persistence)


@pytest.fixture()
def task_queue(events: EventBus, scheduler: ManualScheduler) -> TaskQueue:
    return TaskQueue(events=events, scheduler=scheduler)


@pytest.fixture()
def sampled_pids() -> list[int]:
    return []


@pytest.fixture()
def supervisor_settings() -> SupervisorSettings:
    return SupervisorSettings(
        command_template=ECHO_WORKER_TEMPLATE,
        stop_grace_period_seconds=2.0,
    )


@pytest.fixture()
def supervisor(  # noqa: PLR0913
    events: EventBus,
    scheduler: ManualScheduler,
    registry: WorkerRegistry,
    task_queue: TaskQueue,
    persistence: InMemoryPersistence,
    supervisor_settings: SupervisorSettings,
    sampled_pids: list[int],
):
    def _sampler(pid: int) -> ProcessSample:
        sampled_pids.append(pid)
        return ProcessSample(memory_bytes=64 * 1024 * 1024, cpu_percent=3.5)

    instance = ProcessSupervisor(
        events=events,
        scheduler=scheduler,
        registry=registry,
        task_queue=task_queue,
        persistence=persistence,
        settings=supervisor_settings,
        sampler=_sampler,
    )
    yield instance
    instance.shutdown()


@pytest.fixture()
def wait_until() -> Callable[..., None]:
    """Poll a predicate until it holds, failing the test on timeout."""

    def _wait(predicate: Callable[[], bool], timeout: float = 15.0, message: str = "") -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return
            time.sleep(0.02)
        pytest.fail(message or "condition not reached before timeout")

    return _wait
