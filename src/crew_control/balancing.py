"""Load-balancing strategies.

Each strategy is a pure function over pre-filtered candidates (workers that
may take a new task right now) and the task being placed. It returns the
chosen candidate, or ``None`` for an empty candidate list.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from crew_control.models import ResourceUsage, Task, Worker

UNKNOWN_EFFICIENCY = 50.0


@dataclass(slots=True)
class Candidate:
    worker: Worker
    usage: ResourceUsage | None
    load: float

    @property
    def task_count(self) -> int:
        return self.usage.task_count if self.usage is not None else 0

    @property
    def efficiency(self) -> float:
        if self.usage is None or not self.usage.efficiency:
            return UNKNOWN_EFFICIENCY
        return self.usage.efficiency


Strategy = Callable[[Sequence[Candidate], Task], Candidate | None]


def round_robin(candidates: Sequence[Candidate], task: Task) -> Candidate | None:
    """Fewest in-flight tasks; ties keep roster order."""

    del task
    return min(candidates, key=lambda candidate: candidate.task_count, default=None)


def least_loaded(candidates: Sequence[Candidate], task: Task) -> Candidate | None:
    del task
    return min(candidates, key=lambda candidate: candidate.load, default=None)


def skill_based(candidates: Sequence[Candidate], task: Task) -> Candidate | None:
    """Ten points per matched skill minus twice the current load."""

    best: Candidate | None = None
    best_score = 0.0
    for candidate in candidates:
        score = 10 * candidate.worker.matched_skills(task.required_skills) - 2 * candidate.load
        if best is None or score > best_score:
            best, best_score = candidate, score
    return best


def efficiency_based(candidates: Sequence[Candidate], task: Task) -> Candidate | None:
    del task
    best: Candidate | None = None
    for candidate in candidates:
        if best is None or candidate.efficiency > best.efficiency:
            best = candidate
    return best


STRATEGIES: dict[str, Strategy] = {
    "round-robin": round_robin,
    "least-loaded": least_loaded,
    "skill-based": skill_based,
    "efficiency-based": efficiency_based,
}
