"""Spawn, watch and restart worker OS processes."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import IO, Any
from uuid import uuid4

from crew_control.config import SupervisorSettings
from crew_control.errors import (
    InvalidTransitionError,
    LimitExceededError,
    NotFoundError,
    SpawnError,
)
from crew_control.events import (
    EventBus,
    ProcessError,
    ProcessOutput,
    ProcessStarted,
    ProcessStopped,
)
from crew_control.launch import LaunchSpec, build_launch_spec
from crew_control.models import (
    LogEntry,
    LogLevel,
    ManagedProcess,
    ProcessConfig,
    ProcessStatistics,
    ProcessStatus,
)
from crew_control.persistence import PersistenceCollaborator, restore_processes
from crew_control.registry import WorkerRegistry
from crew_control.system_metrics import ProcessSample, sample_process_usage
from crew_control.task_queue import TaskQueue
from crew_control.timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

ProcessSampler = Callable[[int], ProcessSample]


@dataclass(slots=True)
class _Slot:
    process: ManagedProcess
    config: ProcessConfig
    spec: LaunchSpec | None = None
    popen: subprocess.Popen[str] | None = None
    watcher: threading.Thread | None = None
    readers: list[threading.Thread] = field(default_factory=list)
    logs: list[LogEntry] = field(default_factory=list)
    stdout_lines: list[str] = field(default_factory=list)
    generation: int = 0
    stdin_open: bool = False
    restart_timer: TimerHandle | None = None
    stop_requests: int = 0


class ProcessSupervisor:
    """Owns every managed process and its OS handle.

    Output is read by one thread per stream and exits are observed by a
    watcher thread per spawn. The internal lock is never held while waiting
    on a child, calling the task queue or publishing events.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        events: EventBus,
        scheduler: Scheduler,
        registry: WorkerRegistry,
        task_queue: TaskQueue,
        persistence: PersistenceCollaborator,
        settings: SupervisorSettings | None = None,
        sampler: ProcessSampler = sample_process_usage,
    ) -> None:
        self.events = events
        self.scheduler = scheduler
        self.registry = registry
        self.task_queue = task_queue
        self.persistence = persistence
        self.settings = settings or SupervisorSettings()
        self.sampler = sampler
        self.max_processes = self.settings.max_processes
        self._lock = threading.RLock()
        self._health_guard = threading.Lock()
        self._slots: dict[str, _Slot] = {}
        self._health_timer: TimerHandle | None = None

    # lifecycle

    def create(self, config: ProcessConfig) -> ManagedProcess:
        """Register and launch a process for ``config.worker_id``."""

        worker = self.registry.get(config.worker_id)
        task = None
        if config.task_id is not None:
            task = self.task_queue.get(config.task_id)
            if task is None:
                raise NotFoundError(f"Task {config.task_id} not found")
        spec = self._launch_spec(config)

        with self._lock:
            self._check_capacity()
            process = ManagedProcess(
                id=str(uuid4()),
                worker_id=worker.id,
                task_id=task.id if task is not None else None,
                command=list(spec.argv),
                created_at=self.scheduler.now(),
            )
            slot = _Slot(process=process, config=config, spec=spec)
            self._slots[process.id] = slot

        try:
            self._spawn(slot)
        except SpawnError:
            with self._lock:
                self._slots.pop(process.id, None)
            raise
        self._persist()
        return process

    def start(self, process_id: str) -> ManagedProcess:
        """Launch a stopped (or restored) process again with its original config."""

        with self._lock:
            slot = self._slot(process_id)
        self._resolve_spec(slot)
        with self._lock:
            if slot.process.status.is_live:
                raise InvalidTransitionError(
                    f"Process {process_id} is already {slot.process.status.value}",
                )
            self._check_capacity()
            slot.process.status = ProcessStatus.STARTING
        self._spawn(slot)
        self._persist()
        return slot.process

    def stop(self, process_id: str) -> None:
        """Terminate, wait out the grace period, then kill. No-op when not live."""

        with self._lock:
            slot = self._slot(process_id)
            slot.stop_requests += 1
            if slot.restart_timer is not None:
                slot.restart_timer.cancel()
                slot.restart_timer = None
            process = slot.process
            popen = slot.popen
            if popen is None or not process.status.is_live:
                if process.status.is_live:
                    process.status = ProcessStatus.STOPPED
                    process.stopped_at = self.scheduler.now()
                return
            process.status = ProcessStatus.STOPPING
            watcher = slot.watcher

        logger.info("Stopping process %s (pid %s)", process_id, process.pid)
        _terminate_process(popen, grace_seconds=self.settings.stop_grace_period_seconds)
        if watcher is not None and watcher is not threading.current_thread():
            watcher.join(timeout=self.settings.stop_grace_period_seconds)

        with self._lock:
            if process.status == ProcessStatus.STOPPING:
                process.status = ProcessStatus.STOPPED
                process.stopped_at = self.scheduler.now()
                process.exit_code = popen.returncode
                slot.popen = None
        self._persist()

    def restart(self, process_id: str) -> ManagedProcess:
        """Stop, pause briefly and launch again with the same spec.

        A ``stop`` issued during the pause wins: the process stays stopped
        and the restart counter is left untouched. Relaunching respects the
        live-process cap.
        """

        with self._lock:
            slot = self._slot(process_id)
            if slot.process.restarts >= self.settings.max_restarts:
                raise InvalidTransitionError(
                    f"Process {process_id} reached the restart limit "
                    f"({self.settings.max_restarts})",
                )

        self.stop(process_id)
        self._resolve_spec(slot)
        with self._lock:
            stop_requests = slot.stop_requests
            attempt = slot.process.restarts + 1
        logger.info(
            "Restarting process %s (%d/%d)",
            process_id,
            attempt,
            self.settings.max_restarts,
        )
        self.scheduler.sleep(self.settings.restart_delay_seconds)

        with self._lock:
            if process_id not in self._slots:
                raise NotFoundError(f"Process {process_id} not found")
            if slot.stop_requests != stop_requests:
                logger.info("Restart of process %s cancelled by stop", process_id)
                return slot.process
            self._check_capacity()
            slot.process.restarts += 1
            slot.process.status = ProcessStatus.STARTING
        try:
            self._spawn(slot)
        except SpawnError as error:
            self._fail_terminally(slot, f"Restart failed: {error}")
            raise
        self._persist()
        return slot.process

    def delete(self, process_id: str) -> None:
        self.stop(process_id)
        with self._lock:
            self._slots.pop(process_id, None)
        self._persist()

    def send_input(self, process_id: str, text: str) -> None:
        with self._lock:
            slot = self._slot(process_id)
            popen = slot.popen
            if slot.process.status != ProcessStatus.RUNNING or popen is None:
                raise InvalidTransitionError(f"Process {process_id} is not running")
            if not slot.stdin_open or popen.stdin is None:
                raise InvalidTransitionError(f"Process {process_id} has no open input")
            stdin = popen.stdin
        try:
            stdin.write(text if text.endswith("\n") else text + "\n")
            stdin.flush()
        except OSError as error:
            raise InvalidTransitionError(
                f"Process {process_id} input is unavailable: {error}",
            ) from error

    def shutdown(self) -> None:
        """Stop health checks and every live process, then persist snapshots."""

        if self._health_timer is not None:
            self._health_timer.cancel()
            self._health_timer = None
        for process in self.list_processes():
            try:
                self.stop(process.id)
            except NotFoundError:
                continue
        self._persist()
        with self._lock:
            self._slots.clear()
        logger.info("Process supervisor shut down")

    # queries

    def get(self, process_id: str) -> ManagedProcess | None:
        with self._lock:
            slot = self._slots.get(process_id)
            return slot.process if slot is not None else None

    def list_processes(self) -> list[ManagedProcess]:
        with self._lock:
            return [slot.process for slot in self._slots.values()]

    def get_by_worker(self, worker_id: str) -> list[ManagedProcess]:
        return [process for process in self.list_processes() if process.worker_id == worker_id]

    def get_by_task(self, task_id: str) -> list[ManagedProcess]:
        return [process for process in self.list_processes() if process.task_id == task_id]

    def live_count(self) -> int:
        with self._lock:
            return self._live_count()

    def get_logs(self, process_id: str, limit: int = 100) -> list[LogEntry]:
        with self._lock:
            slot = self._slots.get(process_id)
            if slot is None:
                return []
            return list(slot.logs[-limit:]) if limit > 0 else []

    def get_statistics(self) -> ProcessStatistics:
        processes = self.list_processes()
        return ProcessStatistics(
            total=len(processes),
            running=sum(1 for p in processes if p.status == ProcessStatus.RUNNING),
            stopped=sum(1 for p in processes if p.status == ProcessStatus.STOPPED),
            errored=sum(1 for p in processes if p.status == ProcessStatus.ERROR),
        )

    def snapshots(self) -> list[dict[str, Any]]:
        with self._lock:
            return [slot.process.to_snapshot() for slot in self._slots.values()]

    def restore(self, raw_snapshots: Iterable[dict[str, Any]] | None = None) -> int:
        """Load snapshots as stopped processes without OS handles."""

        source = raw_snapshots if raw_snapshots is not None else self.persistence.load_processes()
        restored = 0
        with self._lock:
            for process in restore_processes(source):
                if process.id in self._slots:
                    continue
                config = ProcessConfig(worker_id=process.worker_id, task_id=process.task_id)
                self._slots[process.id] = _Slot(process=process, config=config)
                restored += 1
        if restored:
            logger.info("Restored %d process snapshots", restored)
        return restored

    # health

    def start_health_checks(self) -> None:
        if self._health_timer is None:
            self._health_timer = self.scheduler.call_every(
                self.settings.health_check_interval_seconds,
                self.check_health,
            )

    def check_health(self) -> None:
        """Sample running processes and recover those whose heartbeat went stale."""

        if not self._health_guard.acquire(blocking=False):
            logger.debug("Health check already in progress, skipping")
            return
        try:
            now = self.scheduler.now()
            with self._lock:
                running = [
                    slot for slot in self._slots.values()
                    if slot.process.status == ProcessStatus.RUNNING
                ]
            for slot in running:
                process = slot.process
                try:
                    sample = self.sampler(process.pid)
                except (OSError, ValueError, subprocess.SubprocessError) as error:
                    logger.warning("Health check failed for process %s: %s", process.id, error)
                    continue
                with self._lock:
                    process.memory_bytes = sample.memory_bytes
                    process.cpu_percent = sample.cpu_percent
                    heartbeat = process.last_heartbeat
                if heartbeat is None:
                    continue
                idle = (now - heartbeat).total_seconds()
                if idle > self.settings.process_timeout_seconds:
                    self._recover_stale(slot, idle)
        finally:
            self._health_guard.release()

    def _recover_stale(self, slot: _Slot, idle_seconds: float) -> None:
        process = slot.process
        if process.restarts >= self.settings.max_restarts:
            logger.error(
                "Process %s unresponsive for %.0fs and out of restarts",
                process.id,
                idle_seconds,
            )
            self.stop(process.id)
            self._fail_terminally(slot, f"Unresponsive for {idle_seconds:.0f}s")
            return
        logger.warning("Process %s unresponsive for %.0fs, restarting", process.id, idle_seconds)
        try:
            self.restart(process.id)
        except LimitExceededError as error:
            logger.warning("Restart of process %s deferred: %s", process.id, error)
            self._schedule_restart(slot)
        except (SpawnError, InvalidTransitionError, NotFoundError) as error:
            logger.warning("Could not restart process %s: %s", process.id, error)

    # internals

    def _check_capacity(self) -> None:
        live = self._live_count()
        if live >= self.max_processes:
            raise LimitExceededError(
                f"Maximum processes reached ({self.max_processes})",
                limit=self.max_processes,
                current=live,
            )

    def _resolve_spec(self, slot: _Slot) -> LaunchSpec:
        """Build the launch spec once; restored processes resolve it on first start."""

        if slot.spec is None:
            spec = self._launch_spec(slot.config)
            with self._lock:
                if slot.spec is None:
                    slot.spec = spec
        return slot.spec

    def _launch_spec(self, config: ProcessConfig) -> LaunchSpec:
        task = self.task_queue.get(config.task_id) if config.task_id is not None else None
        return build_launch_spec(
            config=config,
            worker=self.registry.get(config.worker_id),
            task=task,
            default_template=self.settings.command_template,
            default_model=self.settings.default_model,
            default_tools=self.settings.default_tools,
        )

    def _spawn(self, slot: _Slot) -> None:
        process = slot.process
        spec = self._resolve_spec(slot)
        try:
            popen = subprocess.Popen(  # noqa: S603
                spec.argv,
                cwd=spec.cwd,
                env=spec.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            self._mark_spawn_error(slot, f"Worker command not found: {spec.argv[0]}")
            raise SpawnError(f"Worker command not found: {spec.argv[0]}", transient=False) from error
        except OSError as error:
            self._mark_spawn_error(slot, f"Failed to spawn worker process: {error}")
            raise SpawnError(f"Failed to spawn worker process: {error}", transient=True) from error

        now = self.scheduler.now()
        with self._lock:
            slot.generation += 1
            generation = slot.generation
            slot.popen = popen
            slot.stdout_lines = []
            slot.stdin_open = slot.config.keep_stdin_open
            process.pid = popen.pid
            process.status = ProcessStatus.RUNNING
            process.started_at = now
            process.last_heartbeat = now
            process.stopped_at = None
            process.exit_code = None
        logger.info(
            "Started process %s for worker %s (pid %d): %s",
            process.id,
            process.worker_id,
            popen.pid,
            " ".join(spec.argv),
        )
        self.events.publish(ProcessStarted(process=process))

        readers = [
            threading.Thread(
                target=self._read_stream,
                args=(slot, popen.stdout, "stdout"),
                daemon=True,
                name=f"crew-stdout-{process.id[:8]}",
            ),
            threading.Thread(
                target=self._read_stream,
                args=(slot, popen.stderr, "stderr"),
                daemon=True,
                name=f"crew-stderr-{process.id[:8]}",
            ),
        ]
        for reader in readers:
            reader.start()
        self._write_payload(slot, popen, spec.payload)

        watcher = threading.Thread(
            target=self._watch_exit,
            args=(slot, popen, generation, readers),
            daemon=True,
            name=f"crew-watch-{process.id[:8]}",
        )
        with self._lock:
            slot.readers = readers
            slot.watcher = watcher
        watcher.start()

    def _write_payload(self, slot: _Slot, popen: subprocess.Popen[str], payload: str) -> None:
        if popen.stdin is None:
            return
        try:
            popen.stdin.write(payload)
            popen.stdin.flush()
            if not slot.config.keep_stdin_open:
                popen.stdin.close()
        except OSError as error:
            logger.warning("Could not deliver input to process %s: %s", slot.process.id, error)
            with self._lock:
                slot.stdin_open = False

    def _read_stream(self, slot: _Slot, stream: IO[str] | None, name: str) -> None:
        if stream is None:
            return
        level = LogLevel.ERROR if name == "stderr" else LogLevel.INFO
        try:
            for line in iter(stream.readline, ""):
                message = line.rstrip("\r\n")
                if message.strip():
                    self._record_output(slot, name, level, message)
        except (OSError, ValueError):
            logger.debug("Stream %s of process %s closed", name, slot.process.id)
        finally:
            stream.close()

    def _record_output(self, slot: _Slot, stream: str, level: LogLevel, message: str) -> None:
        process = slot.process
        now = self.scheduler.now()
        entry = LogEntry(
            level=level,
            message=message,
            timestamp=now,
            stream=stream,
            process_id=process.id,
            worker_id=process.worker_id,
        )
        with self._lock:
            slot.logs.append(entry)
            if len(slot.logs) > self.settings.log_buffer_cap:
                del slot.logs[: -self.settings.log_buffer_keep]
            if stream == "stdout":
                slot.stdout_lines.append(message)
                if len(slot.stdout_lines) > self.settings.log_buffer_cap:
                    del slot.stdout_lines[: -self.settings.log_buffer_keep]
            process.last_heartbeat = now
        self.events.publish(ProcessOutput(process_id=process.id, entry=entry))

    def _watch_exit(
        self,
        slot: _Slot,
        popen: subprocess.Popen[str],
        generation: int,
        readers: list[threading.Thread],
    ) -> None:
        exit_code = popen.wait()
        for reader in readers:
            reader.join(timeout=self.settings.stop_grace_period_seconds)
        if popen.stdin is not None and not popen.stdin.closed:
            try:
                popen.stdin.close()
            except OSError:
                logger.debug("Input pipe of process %s already broken", slot.process.id)
        try:
            self._on_exit(slot, generation, exit_code)
        except Exception:
            logger.exception("Exit handling failed for process %s", slot.process.id)

    def _on_exit(self, slot: _Slot, generation: int, exit_code: int) -> None:
        process = slot.process
        with self._lock:
            if slot.generation != generation or process.id not in self._slots:
                return
            intentional = process.status in (ProcessStatus.STOPPING, ProcessStatus.STOPPED)
            process.status = ProcessStatus.STOPPED
            process.stopped_at = self.scheduler.now()
            process.exit_code = exit_code
            slot.popen = None
            slot.stdin_open = False
            restarts = process.restarts
            output = list(slot.stdout_lines)
            stop_requests = slot.stop_requests

        logger.info("Process %s exited with code %d", process.id, exit_code)
        self.events.publish(
            ProcessStopped(process=process, exit_code=exit_code, intentional=intentional),
        )
        self._persist()
        if intentional:
            return

        if exit_code == 0:
            if process.task_id is not None:
                self.task_queue.complete(
                    process.task_id,
                    {"exit_code": 0, "output": output, "process_id": process.id},
                )
            return

        if restarts < self.settings.max_restarts:
            logger.warning(
                "Process %s crashed with code %d, restarting in %.1fs",
                process.id,
                exit_code,
                self.settings.restart_backoff_seconds,
            )
            self._schedule_restart(slot, stop_requests)
            return

        self._fail_terminally(
            slot,
            f"Process exited with code {exit_code} after {restarts} restarts",
        )

    def _auto_restart(self, process_id: str) -> None:
        with self._lock:
            slot = self._slots.get(process_id)
            if slot is None or slot.restart_timer is None:
                return
            slot.restart_timer = None
        try:
            self.restart(process_id)
        except LimitExceededError as error:
            logger.warning(
                "Automatic restart of process %s deferred: %s",
                process_id,
                error,
            )
            self._schedule_restart(slot)
        except (SpawnError, InvalidTransitionError, NotFoundError) as error:
            logger.warning("Automatic restart of process %s failed: %s", process_id, error)

    def _schedule_restart(self, slot: _Slot, stop_requests: int | None = None) -> None:
        process_id = slot.process.id
        with self._lock:
            if process_id not in self._slots or slot.restart_timer is not None:
                return
            if stop_requests is not None and slot.stop_requests != stop_requests:
                return
            slot.restart_timer = self.scheduler.call_later(
                self.settings.restart_backoff_seconds,
                lambda: self._auto_restart(process_id),
            )

    def _mark_spawn_error(self, slot: _Slot, message: str) -> None:
        process = slot.process
        with self._lock:
            process.status = ProcessStatus.ERROR
            process.stopped_at = self.scheduler.now()
        logger.error("Process %s for worker %s: %s", process.id, process.worker_id, message)
        self.events.publish(
            ProcessError(
                process_id=process.id,
                worker_id=process.worker_id,
                task_id=process.task_id,
                error=message,
                terminal=False,
            ),
        )

    def _fail_terminally(self, slot: _Slot, message: str) -> None:
        process = slot.process
        with self._lock:
            process.status = ProcessStatus.ERROR
        logger.error("Process %s failed permanently: %s", process.id, message)
        self.events.publish(
            ProcessError(
                process_id=process.id,
                worker_id=process.worker_id,
                task_id=process.task_id,
                error=message,
                terminal=True,
            ),
        )
        if process.task_id is not None:
            self.task_queue.fail(process.task_id, message)
        self._persist()

    def _slot(self, process_id: str) -> _Slot:
        slot = self._slots.get(process_id)
        if slot is None:
            raise NotFoundError(f"Process {process_id} not found")
        return slot

    def _live_count(self) -> int:
        return sum(1 for slot in self._slots.values() if slot.process.status.is_live)

    def _persist(self) -> None:
        try:
            self.persistence.save_processes(self.snapshots())
        except Exception:  # noqa: BLE001
            logger.warning("Failed to persist process snapshots", exc_info=True)


def _terminate_process(popen: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        popen.terminate()
    except OSError:
        return
    try:
        popen.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            popen.kill()
        except OSError:
            return
        popen.wait(timeout=grace_seconds)
