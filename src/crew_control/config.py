"""Runtime configuration for the worker fleet supervisor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_COMMAND_TEMPLATE = "claude --print --model {model} --allowedTools {tools}"
DEFAULT_TOOLS = ("Bash", "Edit", "Write", "Read", "TodoRead", "TodoWrite")


@dataclass(slots=True)
class ResourceLimits:
    """Per-worker and fleet-wide ceilings used by the resource manager."""

    max_processes_per_worker: int = 3
    max_total_processes: int = 20
    max_memory_per_process_mb: int = 512
    max_cpu_percent_per_process: int = 25
    max_tasks_per_worker: int = 5
    min_idle_seconds: float = 30.0


@dataclass(slots=True)
class SupervisorSettings:
    """Process supervisor timings and launch defaults."""

    max_processes: int = 20
    health_check_interval_seconds: float = 30.0
    process_timeout_seconds: float = 300.0
    max_restarts: int = 3
    restart_backoff_seconds: float = 5.0
    restart_delay_seconds: float = 2.0
    stop_grace_period_seconds: float = 5.0
    log_buffer_cap: int = 1000
    log_buffer_keep: int = 500
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    default_model: str = "sonnet"
    default_tools: tuple[str, ...] = DEFAULT_TOOLS


@dataclass(slots=True)
class MonitorSettings:
    """Resource sampling cadence and host thresholds."""

    resource_check_interval_seconds: float = 5.0
    min_free_memory_mb: float = 512.0
    low_memory_warning_mb: float = 1024.0
    auto_scale_enabled: bool = False
    auto_scale_high_cpu_percent: float = 80.0
    auto_scale_low_cpu_percent: float = 30.0
    auto_scale_floor: int = 10


@dataclass(slots=True)
class RegistrySettings:
    availability_threshold: int = 80
    workload_per_task: int = 20


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    limits: ResourceLimits = field(default_factory=ResourceLimits)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    strategy: str = "round-robin"
    dispatch_interval_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``CREW_CONTROL_*`` environment variables."""

        return cls(
            limits=ResourceLimits(
                max_processes_per_worker=_env_int("CREW_CONTROL_MAX_PROCESSES_PER_WORKER", 3),
                max_total_processes=_env_int("CREW_CONTROL_MAX_TOTAL_PROCESSES", 20),
                max_memory_per_process_mb=_env_int("CREW_CONTROL_MAX_MEMORY_PER_PROCESS_MB", 512),
                max_cpu_percent_per_process=_env_int(
                    "CREW_CONTROL_MAX_CPU_PERCENT_PER_PROCESS",
                    25,
                ),
                max_tasks_per_worker=_env_int("CREW_CONTROL_MAX_TASKS_PER_WORKER", 5),
                min_idle_seconds=_env_float("CREW_CONTROL_MIN_IDLE_SECONDS", 30.0),
            ),
            supervisor=SupervisorSettings(
                max_processes=_env_int("CREW_CONTROL_MAX_TOTAL_PROCESSES", 20),
                health_check_interval_seconds=_env_ms("CREW_CONTROL_HEALTH_CHECK_INTERVAL_MS", 30_000),
                process_timeout_seconds=_env_ms("CREW_CONTROL_PROCESS_TIMEOUT_MS", 300_000),
                max_restarts=_env_int("CREW_CONTROL_MAX_RESTARTS", 3),
                restart_backoff_seconds=_env_ms("CREW_CONTROL_RESTART_BACKOFF_MS", 5_000),
                restart_delay_seconds=_env_ms("CREW_CONTROL_RESTART_DELAY_MS", 2_000),
                stop_grace_period_seconds=_env_ms("CREW_CONTROL_STOP_GRACE_PERIOD_MS", 5_000),
                command_template=os.getenv("CREW_CONTROL_COMMAND_TEMPLATE", DEFAULT_COMMAND_TEMPLATE),
                default_model=os.getenv("CREW_CONTROL_DEFAULT_MODEL", "sonnet"),
                default_tools=_env_csv("CREW_CONTROL_DEFAULT_TOOLS", DEFAULT_TOOLS),
            ),
            monitor=MonitorSettings(
                resource_check_interval_seconds=_env_ms(
                    "CREW_CONTROL_RESOURCE_CHECK_INTERVAL_MS",
                    5_000,
                ),
                min_free_memory_mb=_env_float("CREW_CONTROL_MIN_FREE_MEMORY_MB", 512.0),
                low_memory_warning_mb=_env_float("CREW_CONTROL_LOW_MEMORY_WARNING_MB", 1024.0),
                auto_scale_enabled=_env_bool("CREW_CONTROL_AUTO_SCALE", default=False),
            ),
            registry=RegistrySettings(
                availability_threshold=_env_int("CREW_CONTROL_AVAILABILITY_THRESHOLD", 80),
                workload_per_task=_env_int("CREW_CONTROL_WORKLOAD_PER_TASK", 20),
            ),
            strategy=os.getenv("CREW_CONTROL_STRATEGY", "round-robin").strip().lower(),
            dispatch_interval_seconds=_env_ms("CREW_CONTROL_DISPATCH_INTERVAL_MS", 1_000),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.supervisor.max_processes <= 0:
            raise ValueError("CREW_CONTROL_MAX_TOTAL_PROCESSES must be > 0.")
        if self.supervisor.max_restarts < 0:
            raise ValueError("CREW_CONTROL_MAX_RESTARTS must be >= 0.")
        if self.supervisor.log_buffer_keep > self.supervisor.log_buffer_cap:
            raise ValueError("Log buffer keep size must not exceed the cap.")
        for name, value in (
            ("CREW_CONTROL_HEALTH_CHECK_INTERVAL_MS", self.supervisor.health_check_interval_seconds),
            ("CREW_CONTROL_RESOURCE_CHECK_INTERVAL_MS", self.monitor.resource_check_interval_seconds),
            ("CREW_CONTROL_DISPATCH_INTERVAL_MS", self.dispatch_interval_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.limits.max_tasks_per_worker <= 0 or self.limits.max_processes_per_worker <= 0:
            raise ValueError("Per-worker task and process limits must be > 0.")
        if not 0 < self.registry.availability_threshold <= 100:
            raise ValueError("CREW_CONTROL_AVAILABILITY_THRESHOLD must be in (0, 100].")
        if not self.supervisor.command_template.strip():
            raise ValueError("CREW_CONTROL_COMMAND_TEMPLATE must not be empty.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}") from error


def _env_ms(name: str, default_ms: int) -> float:
    return _env_float(name, float(default_ms)) / 1000.0


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
