"""Host and per-process resource sampling."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from crew_control.models import SystemResources
from crew_control.timers import utc_now

_PROC_STAT = Path("/proc/stat")
_PROC_MEMINFO = Path("/proc/meminfo")
_MB = 1024 * 1024


@dataclass(slots=True)
class ProcessSample:
    memory_bytes: int
    cpu_percent: float


def sample_process_usage(pid: int, *, timeout_seconds: float = 5.0) -> ProcessSample:
    """Resident memory and cpu share of ``pid`` as reported by ``ps``."""

    completed = subprocess.run(  # noqa: S603
        ["ps", "-p", str(pid), "-o", "rss=,%cpu="],  # noqa: S607
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
        check=False,
    )
    if completed.returncode != 0:
        raise OSError(f"ps exited with code {completed.returncode} for pid {pid}")
    fields = completed.stdout.split()
    if len(fields) < 2:  # noqa: PLR2004
        raise ValueError(f"Unexpected ps output for pid {pid}: {completed.stdout!r}")
    return ProcessSample(memory_bytes=int(fields[0]) * 1024, cpu_percent=float(fields[1]))


class SystemSampler:
    """Samples memory, cpu and load average of the host.

    CPU usage is the busy share of ticks across all cores since the previous
    sample (since boot for the first one), read from ``/proc/stat``. Hosts
    without procfs fall back to the 1-minute load average per core.
    Free memory is ``MemAvailable``; it is ``None`` when it cannot be read.
    """

    def __init__(self, proc_stat: Path = _PROC_STAT, proc_meminfo: Path = _PROC_MEMINFO) -> None:
        self.proc_stat = proc_stat
        self.proc_meminfo = proc_meminfo
        self._previous: tuple[int, int] | None = None

    def sample(self) -> SystemResources:
        total_mb, free_mb = self._memory_mb()
        load_average = _load_average()
        return SystemResources(
            total_memory_mb=total_mb,
            free_memory_mb=free_mb,
            used_memory_mb=(
                max(0.0, total_mb - free_mb)
                if total_mb is not None and free_mb is not None
                else None
            ),
            cpu_percent=self._cpu_percent(load_average),
            load_average=load_average,
            sampled_at=utc_now(),
        )

    def _memory_mb(self) -> tuple[float | None, float | None]:
        meminfo = _read_meminfo(self.proc_meminfo)
        total = meminfo.get("MemTotal")
        free = meminfo.get("MemAvailable")
        if total is None:
            total = _sysconf_mb("SC_PHYS_PAGES")
        if free is None:
            free = _sysconf_mb("SC_AVPHYS_PAGES")
        return total, free

    def _cpu_percent(self, load_average: tuple[float, float, float]) -> float:
        ticks = self._read_ticks()
        if ticks is None:
            cores = os.cpu_count() or 1
            return min(100.0, load_average[0] / cores * 100)
        idle, total = ticks
        if self._previous is not None:
            previous_idle, previous_total = self._previous
            idle, total = idle - previous_idle, total - previous_total
        self._previous = ticks
        if total <= 0:
            return 0.0
        return max(0.0, min(100.0, 100.0 - 100.0 * idle / total))

    def _read_ticks(self) -> tuple[int, int] | None:
        try:
            first_line = self.proc_stat.read_text("utf-8").splitlines()[0]
        except (OSError, IndexError):
            return None
        parts = first_line.split()
        if not parts or parts[0] != "cpu":
            return None
        values = [int(value) for value in parts[1:]]
        # user nice system idle iowait ...
        idle = values[3] + (values[4] if len(values) > 4 else 0)  # noqa: PLR2004
        return idle, sum(values)


def _read_meminfo(path: Path) -> dict[str, float]:
    """``/proc/meminfo`` fields in MB; empty when the file is unavailable."""

    try:
        lines = path.read_text("utf-8").splitlines()
    except OSError:
        return {}
    fields: dict[str, float] = {}
    for line in lines:
        name, _, rest = line.partition(":")
        parts = rest.split()
        if not parts:
            continue
        try:
            value = float(parts[0])
        except ValueError:
            continue
        # values are reported in kB
        fields[name.strip()] = value / 1024
    return fields


def _sysconf_mb(name: str) -> float | None:
    try:
        return os.sysconf(name) * os.sysconf("SC_PAGE_SIZE") / _MB
    except (AttributeError, OSError, ValueError):
        return None


def _load_average() -> tuple[float, float, float]:
    try:
        return os.getloadavg()
    except (AttributeError, OSError):
        return (0.0, 0.0, 0.0)
