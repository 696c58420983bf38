"""Weighted milestone progress.

Progress is never stored. It is derived on demand from phase and task
state using the fixed phase weights, so it cannot drift.
"""

from dataclasses import dataclass, field

from milestone_orchestrator.db.models import PHASE_WEIGHTS, Milestone, Task


@dataclass
class PhaseProgress:
    phase: str
    weight: int
    status: str
    completed_tasks: int
    total_tasks: int
    fraction: float
    contribution: float


@dataclass
class ProgressReport:
    milestone_id: str
    percentage: float
    phases: list[PhaseProgress] = field(default_factory=list)

    @property
    def per_phase(self) -> dict[str, float]:
        return {p.phase: p.contribution for p in self.phases}

    def to_dict(self) -> dict:
        return {
            "milestone_id": self.milestone_id,
            "percentage": self.percentage,
            "per_phase": {
                p.phase: {
                    "weight": p.weight,
                    "status": p.status,
                    "completed_tasks": p.completed_tasks,
                    "total_tasks": p.total_tasks,
                    "fraction": p.fraction,
                    "contribution": p.contribution,
                }
                for p in self.phases
            },
        }


def phase_fraction(status: str, completed: int, total: int) -> float:
    """Completion fraction of one phase.

    An explicitly completed phase counts fully whatever its task count;
    otherwise an empty phase counts zero.
    """
    if status == "completed":
        return 1.0
    if total == 0:
        return 0.0
    return completed / total


def calculate(milestone: Milestone, tasks: list[Task]) -> ProgressReport:
    """Sum of weight × completion fraction over the four phases."""
    phases = []
    for phase in milestone.phases:
        in_phase = [t for t in tasks if t.phase == phase.name]
        done = sum(1 for t in in_phase if t.status == "completed")
        fraction = phase_fraction(phase.status, done, len(in_phase))
        weight = PHASE_WEIGHTS[phase.name]
        phases.append(PhaseProgress(
            phase=phase.name,
            weight=weight,
            status=phase.status,
            completed_tasks=done,
            total_tasks=len(in_phase),
            fraction=round(fraction, 4),
            contribution=round(weight * fraction, 2),
        ))
    total = round(sum(PHASE_WEIGHTS[p.phase] * phase_fraction(p.status, p.completed_tasks, p.total_tasks)
                      for p in phases), 2)
    return ProgressReport(milestone_id=milestone.id, percentage=total, phases=phases)


def estimate_remaining(tasks: list[Task]) -> float:
    """Estimated effort of every task not yet completed."""
    return round(sum(t.effort for t in tasks if t.status != "completed"), 4)
