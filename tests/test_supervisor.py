from __future__ import annotations

import shlex
import sys

import allure
import pytest

from crew_control.errors import (
    InvalidTransitionError,
    LimitExceededError,
    NotFoundError,
    SpawnError,
)
from crew_control.events import ProcessError, ProcessOutput, ProcessStarted, ProcessStopped
from crew_control.models import LogLevel, ProcessConfig, ProcessStatus, TaskCreate, TaskStatus
from crew_control.supervisor import ProcessSupervisor
from crew_control.system_metrics import ProcessSample
from crew_control.timers import ManualScheduler

pytestmark = [
    allure.epic("Worker Fleet"),
    allure.feature("Process Supervisor"),
]

SLEEP_TEMPLATE = "sleep 30"


def _python(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


@pytest.fixture()
def worker(registry, make_worker):
    registry.load([make_worker("w1", "python", instructions="Echo everything.")])
    return registry.get("w1")


@pytest.fixture()
def assigned_task(task_queue, worker):
    task = task_queue.create(TaskCreate(title="Fix login", description="Patch the SSO flow."))
    assert task_queue.assign(task.id, worker.id)
    return task


def _stopped(supervisor, process_id):
    return lambda: supervisor.get(process_id).status == ProcessStatus.STOPPED


def test_successful_exit_completes_task_with_output(
    supervisor,
    task_queue,
    assigned_task,
    recorded,
    wait_until,
) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", task_id=assigned_task.id))

    assert process.pid > 0
    wait_until(lambda: task_queue.get(assigned_task.id).status == TaskStatus.COMPLETED)

    result = task_queue.get(assigned_task.id).result
    assert result["exit_code"] == 0
    assert "echo: - Title: Fix login" in result["output"]
    assert "echo: Patch the SSO flow." in result["output"]
    assert any(isinstance(event, ProcessStarted) for event in recorded)
    assert any(isinstance(event, ProcessOutput) for event in recorded)
    stopped = [event for event in recorded if isinstance(event, ProcessStopped)]
    assert len(stopped) == 1
    assert stopped[0].exit_code == 0
    assert stopped[0].intentional is False


def test_output_lines_become_log_entries(supervisor, worker, wait_until) -> None:
    process = supervisor.create(
        ProcessConfig(
            worker_id="w1",
            command_template=_python("import sys; print('out'); print('err', file=sys.stderr)"),
        ),
    )
    wait_until(_stopped(supervisor, process.id))

    logs = supervisor.get_logs(process.id)
    by_stream = {entry.stream: entry for entry in logs}
    assert by_stream["stdout"].message == "out"
    assert by_stream["stdout"].level == LogLevel.INFO
    assert by_stream["stderr"].message == "err"
    assert by_stream["stderr"].level == LogLevel.ERROR
    assert supervisor.get_logs("unknown") == []


def test_log_buffer_compacts_to_newest_entries(supervisor, worker, wait_until) -> None:
    process = supervisor.create(
        ProcessConfig(worker_id="w1", command_template=_python("for i in range(1200): print(i)")),
    )
    wait_until(_stopped(supervisor, process.id))

    logs = supervisor.get_logs(process.id, limit=5000)
    assert len(logs) == 699
    assert logs[-1].message == "1199"


def test_unknown_worker_is_rejected(supervisor) -> None:
    with pytest.raises(NotFoundError):
        supervisor.create(ProcessConfig(worker_id="ghost"))


def test_process_cap_rejects_the_twenty_first_process(supervisor, worker) -> None:
    for _ in range(20):
        supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))

    with pytest.raises(LimitExceededError, match="Maximum processes reached") as info:
        supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))

    assert info.value.limit == 20
    assert supervisor.live_count() == 20


def test_spawn_failure_raises_and_emits_process_error(supervisor, worker, recorded) -> None:
    with pytest.raises(SpawnError) as info:
        supervisor.create(
            ProcessConfig(worker_id="w1", command_template="crew-control-missing-binary --x"),
        )

    assert info.value.transient is False
    assert supervisor.list_processes() == []
    errors = [event for event in recorded if isinstance(event, ProcessError)]
    assert len(errors) == 1
    assert "not found" in errors[0].error


def test_stop_is_intentional_and_idempotent(
    supervisor,
    task_queue,
    assigned_task,
    scheduler,
    recorded,
    wait_until,
) -> None:
    process = supervisor.create(
        ProcessConfig(worker_id="w1", task_id=assigned_task.id, command_template=SLEEP_TEMPLATE),
    )

    supervisor.stop(process.id)
    supervisor.stop(process.id)

    assert supervisor.get(process.id).status == ProcessStatus.STOPPED
    wait_until(lambda: any(isinstance(event, ProcessStopped) for event in recorded))
    stopped = [event for event in recorded if isinstance(event, ProcessStopped)]
    assert all(event.intentional for event in stopped)
    assert scheduler.pending == 0
    assert task_queue.get(assigned_task.id).status == TaskStatus.IN_PROGRESS


def test_crash_restarts_up_to_cap_then_fails_task(
    supervisor,
    task_queue,
    assigned_task,
    scheduler,
    recorded,
    wait_until,
    echo_command,
) -> None:
    process = supervisor.create(
        ProcessConfig(
            worker_id="w1",
            task_id=assigned_task.id,
            command_template=echo_command("--exit-code", "3"),
        ),
    )

    for attempt in range(1, 4):
        wait_until(lambda: scheduler.pending == 1, message=f"restart {attempt} not scheduled")
        scheduler.advance(5.0)
        assert supervisor.get(process.id).restarts == attempt

    wait_until(lambda: task_queue.get(assigned_task.id).status == TaskStatus.FAILED)

    final = supervisor.get(process.id)
    assert final.restarts == 3
    assert final.status == ProcessStatus.ERROR
    assert scheduler.pending == 0
    terminal = [event for event in recorded if isinstance(event, ProcessError) and event.terminal]
    assert len(terminal) == 1
    assert terminal[0].task_id == assigned_task.id


def test_restart_at_cap_is_rejected(supervisor, worker) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    supervisor.stop(process.id)
    supervisor.get(process.id).restarts = 3

    with pytest.raises(InvalidTransitionError, match="restart limit"):
        supervisor.restart(process.id)


def test_manual_restart_relaunches_with_same_command(supervisor, worker, scheduler) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    first_pid = process.pid
    before = scheduler.monotonic()

    supervisor.restart(process.id)

    restarted = supervisor.get(process.id)
    assert restarted.status == ProcessStatus.RUNNING
    assert restarted.restarts == 1
    assert restarted.pid != first_pid
    assert restarted.command == ["sleep", "30"]
    assert scheduler.monotonic() - before == pytest.approx(2.0)


def test_send_input_reaches_interactive_process(supervisor, worker, wait_until, echo_command) -> None:
    process = supervisor.create(
        ProcessConfig(
            worker_id="w1",
            command_template=echo_command("--interactive"),
            keep_stdin_open=True,
        ),
    )

    supervisor.send_input(process.id, "hello there")
    wait_until(
        lambda: any(e.message == "echo: hello there" for e in supervisor.get_logs(process.id)),
    )
    supervisor.send_input(process.id, "quit")
    wait_until(_stopped(supervisor, process.id))

    with pytest.raises(InvalidTransitionError, match="not running"):
        supervisor.send_input(process.id, "late")


def test_send_input_requires_open_stdin(supervisor, worker) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))

    with pytest.raises(InvalidTransitionError, match="no open input"):
        supervisor.send_input(process.id, "hello")


def test_health_check_samples_and_restarts_stale_process(
    supervisor,
    worker,
    scheduler,
    sampled_pids,
) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    first_pid = process.pid

    supervisor.check_health()
    assert sampled_pids == [first_pid]
    assert supervisor.get(process.id).memory_bytes == 64 * 1024 * 1024
    assert supervisor.get(process.id).restarts == 0

    scheduler.advance(301)
    supervisor.check_health()

    restarted = supervisor.get(process.id)
    assert restarted.restarts == 1
    assert restarted.status == ProcessStatus.RUNNING
    assert restarted.pid != first_pid


def test_stale_process_at_restart_cap_fails_terminally(
    supervisor,
    task_queue,
    assigned_task,
    scheduler,
    recorded,
) -> None:
    process = supervisor.create(
        ProcessConfig(worker_id="w1", task_id=assigned_task.id, command_template=SLEEP_TEMPLATE),
    )
    supervisor.get(process.id).restarts = 3

    scheduler.advance(301)
    supervisor.check_health()

    assert supervisor.get(process.id).status == ProcessStatus.ERROR
    assert task_queue.get(assigned_task.id).status == TaskStatus.FAILED
    assert any(isinstance(event, ProcessError) and event.terminal for event in recorded)


def test_health_check_skips_sampling_errors(supervisor, worker, scheduler) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))

    def _broken(pid: int) -> ProcessSample:
        raise OSError(f"ps failed for {pid}")

    supervisor.sampler = _broken
    scheduler.advance(301)
    supervisor.check_health()

    assert supervisor.get(process.id).restarts == 0
    assert supervisor.get(process.id).status == ProcessStatus.RUNNING


def test_health_checks_run_on_the_scheduler(supervisor, worker, scheduler, sampled_pids) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))

    supervisor.start_health_checks()
    scheduler.advance(60)

    assert sampled_pids == [process.pid, process.pid]


def test_snapshots_persist_and_restore_as_stopped(supervisor, worker, persistence) -> None:
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    saved = persistence.load_processes()
    assert [snapshot["id"] for snapshot in saved] == [process.id]
    assert saved[0]["status"] == "running"

    supervisor.delete(process.id)
    assert supervisor.get(process.id) is None

    assert supervisor.restore(saved) == 1
    restored = supervisor.get(process.id)
    assert restored.status == ProcessStatus.STOPPED
    assert restored.pid == 0
    assert restored.command == ["sleep", "30"]


def test_statistics_count_by_status(supervisor, worker) -> None:
    running = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    stopped = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    supervisor.stop(stopped.id)

    stats = supervisor.get_statistics()

    assert stats.total == 2
    assert stats.running == 1
    assert stats.stopped == 1
    assert [p.id for p in supervisor.get_by_worker("w1")] == [running.id, stopped.id]


class _StopDuringDelay(ManualScheduler):
    """Runs ``during_sleep`` once, while a restart is pausing."""

    def __init__(self) -> None:
        super().__init__()
        self.during_sleep = None

    def sleep(self, seconds: float) -> None:
        super().sleep(seconds)
        hook, self.during_sleep = self.during_sleep, None
        if hook is not None:
            hook()


def test_auto_restart_waits_for_free_capacity(
    supervisor,
    worker,
    scheduler,
    wait_until,
    echo_command,
) -> None:
    supervisor.max_processes = 2
    crasher = supervisor.create(
        ProcessConfig(worker_id="w1", command_template=echo_command("--exit-code", "3")),
    )
    supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    wait_until(lambda: scheduler.pending == 1, message="restart not scheduled")
    late = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))

    scheduler.advance(5.0)

    assert supervisor.live_count() == 2
    assert supervisor.get(crasher.id).status == ProcessStatus.STOPPED
    assert supervisor.get(crasher.id).restarts == 0
    assert scheduler.pending == 1

    supervisor.stop(late.id)
    scheduler.advance(5.0)

    assert supervisor.get(crasher.id).restarts == 1
    assert supervisor.live_count() <= 2


def test_manual_restart_respects_process_cap(supervisor, worker, scheduler, monkeypatch) -> None:
    supervisor.max_processes = 1
    process = supervisor.create(ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE))
    pause = scheduler.sleep

    def _shrink_cap_while_paused(seconds: float) -> None:
        pause(seconds)
        supervisor.max_processes = 0

    monkeypatch.setattr(scheduler, "sleep", _shrink_cap_while_paused)

    with pytest.raises(LimitExceededError):
        supervisor.restart(process.id)

    assert supervisor.get(process.id).status == ProcessStatus.STOPPED
    assert supervisor.get(process.id).restarts == 0


def test_stop_during_restart_delay_keeps_process_stopped(
    events,
    registry,
    task_queue,
    persistence,
    supervisor_settings,
    worker,
) -> None:
    scheduler = _StopDuringDelay()
    supervisor = ProcessSupervisor(
        events=events,
        scheduler=scheduler,
        registry=registry,
        task_queue=task_queue,
        persistence=persistence,
        settings=supervisor_settings,
        sampler=lambda pid: ProcessSample(memory_bytes=0, cpu_percent=0.0),
    )
    try:
        process = supervisor.create(
            ProcessConfig(worker_id="w1", command_template=SLEEP_TEMPLATE),
        )
        scheduler.during_sleep = lambda: supervisor.stop(process.id)

        restarted = supervisor.restart(process.id)

        assert restarted.status == ProcessStatus.STOPPED
        assert restarted.restarts == 0
        assert supervisor.live_count() == 0
    finally:
        supervisor.shutdown()


def test_start_with_unknown_worker_leaves_process_stopped(supervisor) -> None:
    supervisor.restore(
        [
            {
                "id": "p1",
                "worker_id": "gone",
                "command": ["sleep", "30"],
                "created_at": "2026-01-01T00:00:00+00:00",
            },
        ],
    )

    with pytest.raises(NotFoundError, match="Worker gone not found"):
        supervisor.start("p1")

    assert supervisor.get("p1").status == ProcessStatus.STOPPED
    assert supervisor.live_count() == 0
