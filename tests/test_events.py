from __future__ import annotations

import allure

from crew_control.events import Event, EventBus, StatusChanged, WorkloadChanged
from crew_control.models import WorkerStatus

pytestmark = [
    allure.epic("Worker Fleet"),
    allure.feature("Event Bus"),
]


def test_subscribers_receive_only_their_event_type() -> None:
    bus = EventBus()
    workloads: list[WorkloadChanged] = []
    bus.subscribe(WorkloadChanged, workloads.append)

    bus.publish(WorkloadChanged(worker_id="w1", old=0, new=20))
    bus.publish(StatusChanged(worker_id="w1", old=WorkerStatus.ACTIVE, new=WorkerStatus.BUSY))

    assert [event.new for event in workloads] == [20]


def test_subscribe_all_sees_wire_names_and_can_unsubscribe() -> None:
    bus = EventBus()
    names: list[str] = []
    unsubscribe = bus.subscribe_all(lambda event: names.append(event.name))

    bus.publish(WorkloadChanged(worker_id="w1", old=0, new=20))
    unsubscribe()
    bus.publish(WorkloadChanged(worker_id="w1", old=20, new=0))

    assert names == ["workload-changed"]


def test_failing_handler_does_not_block_others() -> None:
    bus = EventBus()
    seen: list[Event] = []

    def _broken(event: Event) -> None:
        raise RuntimeError("subscriber bug")

    bus.subscribe(Event, _broken)
    bus.subscribe(Event, seen.append)

    bus.publish(WorkloadChanged(worker_id="w1", old=0, new=1))

    assert len(seen) == 1
