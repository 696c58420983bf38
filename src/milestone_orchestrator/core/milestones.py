"""Milestone, phase and task state machines.

Pure functions over model objects: they check a requested transition,
apply it in memory, and settle derived state (phase auto-completion and
milestone status). Persistence and events are the caller's business.
"""

import re
from collections.abc import Callable
from datetime import datetime

from milestone_orchestrator.db.models import PHASES, TASK_STATUSES, PHASE_STATUSES, Milestone, Phase, Task
from milestone_orchestrator.errors import InvalidTransition, NotFound

TASK_TRANSITIONS = {
    "pending": {"in_progress", "completed", "blocked", "failed"},
    "in_progress": {"completed", "failed", "blocked", "pending"},
    "blocked": {"pending", "in_progress"},
    "failed": {"pending", "in_progress"},
    "completed": set(),
}

PHASE_TRANSITIONS = {
    "pending": {"in_progress", "completed", "blocked"},
    "in_progress": {"completed", "blocked"},
    "blocked": {"pending", "in_progress"},
    "completed": set(),
}

# Statuses that require the task to be startable (dependencies and phase order)
_STARTING = {"in_progress", "completed"}


def slugify(title: str) -> str:
    """Convert a title to a filesystem- and URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "untitled"


def unique_id(base: str, taken: Callable[[str], bool]) -> str:
    """``base``, or ``base-2``, ``base-3``… whichever is free first."""
    if not taken(base):
        return base
    i = 2
    while taken(f"{base}-{i}"):
        i += 1
    return f"{base}-{i}"


def clamp_priority(priority: int) -> int:
    return max(0, min(6, int(priority)))


# ── Task specs ──────────────────────────────────────────────────────────────


def build_tasks(
    milestone_id: str,
    specs: list[dict],
    task_exists: Callable[[str], bool],
    now: datetime,
) -> list[Task]:
    """Turn task spec dicts into Task objects with resolved dependencies.

    ``depends_on`` entries may name existing task ids, or the id, title or
    slug of an earlier spec in the same batch.
    """
    tasks: list[Task] = []
    aliases: dict[str, str] = {}
    new_ids: set[str] = set()

    for spec in specs:
        title = (spec.get("title") or "").strip()
        if not title:
            raise ValueError("Every task spec needs a title")
        phase = spec.get("phase", "execute")
        if phase not in PHASES:
            raise ValueError(f"Unknown phase '{phase}' (expected one of {', '.join(PHASES)})")
        effort = float(spec.get("effort", 1.0))
        if effort < 0:
            raise ValueError(f"Task effort cannot be negative: {title}")

        task_id = unique_id(
            f"{milestone_id}.{slugify(title)}",
            lambda c: c in new_ids or task_exists(c),
        )
        deps = []
        for dep in spec.get("depends_on") or []:
            resolved = aliases.get(dep) or aliases.get(slugify(dep))
            if resolved is None:
                if not task_exists(dep):
                    raise NotFound("task", dep)
                resolved = dep
            if resolved not in deps:
                deps.append(resolved)

        task = Task(
            id=task_id,
            milestone_id=milestone_id,
            title=title,
            phase=phase,
            description=spec.get("description", ""),
            effort=effort,
            priority=clamp_priority(spec.get("priority", 3)),
            depends_on=deps,
            capabilities=list(spec.get("capabilities") or []),
            created_at=now,
            updated_at=now,
        )
        tasks.append(task)
        new_ids.add(task_id)
        for alias in (task_id, title, slugify(title)):
            aliases.setdefault(alias, task_id)
    return tasks


# ── Phases ──────────────────────────────────────────────────────────────────


def preceding_phases(milestone: Milestone, phase_name: str) -> list[Phase]:
    return milestone.phases[: PHASES.index(phase_name)]


def can_start(milestone: Milestone, phase_name: str) -> bool:
    """Whether every phase before ``phase_name`` is completed."""
    return all(p.status == "completed" for p in preceding_phases(milestone, phase_name))


def _set_phase_status(phase: Phase, status: str, now: datetime):
    phase.status = status
    if status == "in_progress" and phase.started_at is None:
        phase.started_at = now
    if status == "completed":
        if phase.started_at is None:
            phase.started_at = now
        phase.completed_at = now


def transition_phase(
    milestone: Milestone,
    phase_name: str,
    new_status: str,
    tasks: list[Task],
    now: datetime,
):
    """Apply an explicit phase transition requested by an operator."""
    if new_status not in PHASE_STATUSES:
        raise ValueError(f"Unknown phase status: {new_status}")
    if phase_name not in PHASES:
        raise ValueError(f"Unknown phase: {phase_name}")
    if milestone.archived:
        raise InvalidTransition(f"Milestone {milestone.id} is completed and archived")

    phase = milestone.phase(phase_name)
    if new_status == phase.status:
        return
    if new_status not in PHASE_TRANSITIONS[phase.status]:
        raise InvalidTransition(
            f"Phase '{phase_name}' of {milestone.id} cannot go from {phase.status} to {new_status}"
        )
    if new_status in ("in_progress", "completed") and not can_start(milestone, phase_name):
        blocking = [p.name for p in preceding_phases(milestone, phase_name) if p.status != "completed"]
        raise InvalidTransition(
            f"Phase '{phase_name}' of {milestone.id} waits on earlier phases: {', '.join(blocking)}"
        )
    if new_status == "completed":
        unfinished = [t.id for t in tasks if t.phase == phase_name and t.status != "completed"]
        if unfinished:
            raise InvalidTransition(
                f"Phase '{phase_name}' of {milestone.id} has unfinished tasks: {', '.join(unfinished)}"
            )
        if phase.gate and not phase.gate.satisfied:
            raise InvalidTransition(
                f"Phase '{phase_name}' of {milestone.id} awaits approval from: {', '.join(phase.gate.pending)}"
            )
    if new_status == "pending" and any(
        t.phase == phase_name and t.status == "in_progress" for t in tasks
    ):
        raise InvalidTransition(f"Phase '{phase_name}' of {milestone.id} has tasks in progress")

    _set_phase_status(phase, new_status, now)
    settle(milestone, tasks, now)


def approve_phase(milestone: Milestone, phase_name: str, approver: str, tasks: list[Task], now: datetime):
    if phase_name not in PHASES:
        raise ValueError(f"Unknown phase: {phase_name}")
    phase = milestone.phase(phase_name)
    if phase.gate is None:
        raise InvalidTransition(f"Phase '{phase_name}' of {milestone.id} has no approval gate")
    if approver not in phase.gate.required:
        raise InvalidTransition(
            f"{approver} is not a required approver for phase '{phase_name}' of {milestone.id}"
        )
    if phase.status == "completed":
        raise InvalidTransition(f"Phase '{phase_name}' of {milestone.id} is already completed")
    if approver not in phase.gate.approved_by:
        phase.gate.approved_by.append(approver)
    settle(milestone, tasks, now)


# ── Tasks ───────────────────────────────────────────────────────────────────


def check_task_transition(
    task: Task,
    new_status: str,
    milestone: Milestone,
    dependency_status: Callable[[str], str],
):
    """Raise InvalidTransition unless ``task`` may move to ``new_status``."""
    if new_status not in TASK_STATUSES:
        raise ValueError(f"Unknown task status: {new_status}")
    if new_status not in TASK_TRANSITIONS[task.status]:
        raise InvalidTransition(f"Task {task.id} cannot go from {task.status} to {new_status}")
    if new_status not in _STARTING or task.status == "in_progress":
        return
    if milestone.archived:
        raise InvalidTransition(f"Milestone {milestone.id} is completed and archived")
    unmet = [d for d in task.depends_on if dependency_status(d) != "completed"]
    if unmet:
        raise InvalidTransition(f"Task {task.id} waits on dependencies: {', '.join(unmet)}")
    phase = milestone.phase(task.phase)
    if phase.status == "blocked":
        raise InvalidTransition(f"Phase '{task.phase}' of {milestone.id} is blocked")
    if phase.status == "completed":
        raise InvalidTransition(f"Phase '{task.phase}' of {milestone.id} is already completed")
    if not can_start(milestone, task.phase):
        raise InvalidTransition(
            f"Task {task.id} is in phase '{task.phase}', which waits on earlier phases of {milestone.id}"
        )


def apply_task_status(task: Task, new_status: str, milestone: Milestone, tasks: list[Task], now: datetime):
    """Move a task (already checked) and settle its milestone.

    ``tasks`` is every task of the milestone, including ``task`` itself.
    """
    task.status = new_status
    task.updated_at = now
    if new_status in _STARTING:
        if task.started_at is None:
            task.started_at = now
        phase = milestone.phase(task.phase)
        if phase.status == "pending":
            _set_phase_status(phase, "in_progress", now)
    if new_status == "completed":
        task.completed_at = now
    if new_status in ("pending", "completed", "failed", "blocked"):
        task.assignee = None
    settle(milestone, tasks, now)


def settle(milestone: Milestone, tasks: list[Task], now: datetime):
    """Auto-complete finished phases and derive the milestone status.

    A started phase whose tasks are all completed and whose approval gate
    is satisfied completes on its own; completing the last phase archives
    the milestone.
    """
    for phase in milestone.phases:
        if phase.status != "in_progress":
            continue
        in_phase = [t for t in tasks if t.phase == phase.name]
        if in_phase and all(t.status == "completed" for t in in_phase):
            if phase.gate is None or phase.gate.satisfied:
                _set_phase_status(phase, "completed", now)

    statuses = [p.status for p in milestone.phases]
    if all(s == "completed" for s in statuses):
        status = "completed"
    elif "blocked" in statuses:
        status = "blocked"
    elif any(s in ("in_progress", "completed") for s in statuses):
        status = "active"
    else:
        status = "planning"

    if status != milestone.status:
        milestone.status = status
    if status == "completed" and not milestone.archived:
        milestone.archived = True
        milestone.completed_at = now
    milestone.updated_at = now
