"""Data models for the milestone orchestrator.

Every entity converts to and from a backend-agnostic record: a JSON-ready
dict carrying ``kind``, ``id`` and ``schema_version``.
"""

from dataclasses import dataclass, field
from datetime import datetime

SCHEMA_VERSION = 1

PHASES = ("design", "spec", "task", "execute")
PHASE_WEIGHTS = {"design": 15, "spec": 25, "task": 20, "execute": 40}

MILESTONE_STATUSES = ("planning", "active", "blocked", "completed")
PHASE_STATUSES = ("pending", "in_progress", "completed", "blocked")
TASK_STATUSES = ("pending", "in_progress", "completed", "failed", "blocked")
WORKER_STATUSES = ("registered", "active", "idle", "stalled", "disconnected")

TIERS = ("flat", "hybrid", "database")

# Record kinds that make up orchestration state (events are the log itself)
STATE_KINDS = ("milestone", "task", "worker")
LOG_KINDS = ("event", "attempt")


def _dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


@dataclass
class ApprovalGate:
    required: list[str] = field(default_factory=list)
    approved_by: list[str] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return all(a in self.approved_by for a in self.required)

    @property
    def pending(self) -> list[str]:
        return [a for a in self.required if a not in self.approved_by]


@dataclass
class Phase:
    name: str
    status: str = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deliverables: list[str] = field(default_factory=list)
    gate: ApprovalGate | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "deliverables": list(self.deliverables),
            "gate": (
                {"required": list(self.gate.required), "approved_by": list(self.gate.approved_by)}
                if self.gate
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Phase":
        gate = data.get("gate")
        return cls(
            name=data["name"],
            status=data.get("status", "pending"),
            started_at=_dt(data.get("started_at")),
            completed_at=_dt(data.get("completed_at")),
            deliverables=list(data.get("deliverables", [])),
            gate=ApprovalGate(list(gate["required"]), list(gate["approved_by"])) if gate else None,
        )


@dataclass
class Milestone:
    id: str
    title: str
    description: str = ""
    status: str = "planning"
    phases: list[Phase] = field(default_factory=lambda: [Phase(name) for name in PHASES])
    task_ids: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    archived: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    def phase(self, name: str) -> Phase:
        for p in self.phases:
            if p.name == name:
                return p
        raise KeyError(name)

    def to_record(self) -> dict:
        return {
            "kind": "milestone",
            "id": self.id,
            "schema_version": SCHEMA_VERSION,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "phases": [p.to_dict() for p in self.phases],
            "task_ids": list(self.task_ids),
            "depends_on": list(self.depends_on),
            "archived": self.archived,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_record(cls, rec: dict) -> "Milestone":
        return cls(
            id=rec["id"],
            title=rec["title"],
            description=rec.get("description", ""),
            status=rec.get("status", "planning"),
            phases=[Phase.from_dict(p) for p in rec["phases"]],
            task_ids=list(rec.get("task_ids", [])),
            depends_on=list(rec.get("depends_on", [])),
            archived=rec.get("archived", False),
            created_at=_dt(rec.get("created_at")),
            updated_at=_dt(rec.get("updated_at")),
            completed_at=_dt(rec.get("completed_at")),
        )


@dataclass
class Task:
    id: str
    milestone_id: str
    title: str
    phase: str = "execute"
    description: str = ""
    effort: float = 1.0
    priority: int = 3
    status: str = "pending"
    assignee: str | None = None
    depends_on: list[str] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    details: dict | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_record(self) -> dict:
        return {
            "kind": "task",
            "id": self.id,
            "schema_version": SCHEMA_VERSION,
            "milestone_id": self.milestone_id,
            "title": self.title,
            "phase": self.phase,
            "description": self.description,
            "effort": self.effort,
            "priority": self.priority,
            "status": self.status,
            "assignee": self.assignee,
            "depends_on": list(self.depends_on),
            "capabilities": list(self.capabilities),
            "details": self.details,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_record(cls, rec: dict) -> "Task":
        return cls(
            id=rec["id"],
            milestone_id=rec["milestone_id"],
            title=rec["title"],
            phase=rec.get("phase", "execute"),
            description=rec.get("description", ""),
            effort=rec.get("effort", 1.0),
            priority=rec.get("priority", 3),
            status=rec.get("status", "pending"),
            assignee=rec.get("assignee"),
            depends_on=list(rec.get("depends_on", [])),
            capabilities=list(rec.get("capabilities", [])),
            details=rec.get("details"),
            created_at=_dt(rec.get("created_at")),
            updated_at=_dt(rec.get("updated_at")),
            started_at=_dt(rec.get("started_at")),
            completed_at=_dt(rec.get("completed_at")),
        )


@dataclass
class Worker:
    id: str
    capabilities: list[str] = field(default_factory=list)
    status: str = "registered"
    claimed_task_id: str | None = None
    registered_at: datetime | None = None
    last_heartbeat: datetime | None = None
    stalled_at: datetime | None = None
    disconnected_at: datetime | None = None

    def to_record(self) -> dict:
        return {
            "kind": "worker",
            "id": self.id,
            "schema_version": SCHEMA_VERSION,
            "capabilities": list(self.capabilities),
            "status": self.status,
            "claimed_task_id": self.claimed_task_id,
            "registered_at": _iso(self.registered_at),
            "last_heartbeat": _iso(self.last_heartbeat),
            "stalled_at": _iso(self.stalled_at),
            "disconnected_at": _iso(self.disconnected_at),
        }

    @classmethod
    def from_record(cls, rec: dict) -> "Worker":
        return cls(
            id=rec["id"],
            capabilities=list(rec.get("capabilities", [])),
            status=rec.get("status", "registered"),
            claimed_task_id=rec.get("claimed_task_id"),
            registered_at=_dt(rec.get("registered_at")),
            last_heartbeat=_dt(rec.get("last_heartbeat")),
            stalled_at=_dt(rec.get("stalled_at")),
            disconnected_at=_dt(rec.get("disconnected_at")),
        )


@dataclass
class Event:
    seq: int
    event_type: str
    entity_id: str
    payload: dict = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime | None = None

    def to_record(self) -> dict:
        return {
            "kind": "event",
            "id": event_key(self.seq),
            "schema_version": SCHEMA_VERSION,
            "seq": self.seq,
            "event_type": self.event_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "session_id": self.session_id,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_record(cls, rec: dict) -> "Event":
        return cls(
            seq=rec["seq"],
            event_type=rec["event_type"],
            entity_id=rec["entity_id"],
            payload=rec.get("payload") or {},
            session_id=rec.get("session_id"),
            timestamp=_dt(rec.get("timestamp")),
        )


@dataclass
class FailedAttempt:
    seq: int
    operation: str
    entity_id: str | None
    error: str
    message: str
    session_id: str | None = None
    timestamp: datetime | None = None

    def to_record(self) -> dict:
        return {
            "kind": "attempt",
            "id": event_key(self.seq),
            "schema_version": SCHEMA_VERSION,
            "seq": self.seq,
            "operation": self.operation,
            "entity_id": self.entity_id,
            "error": self.error,
            "message": self.message,
            "session_id": self.session_id,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_record(cls, rec: dict) -> "FailedAttempt":
        return cls(
            seq=rec["seq"],
            operation=rec["operation"],
            entity_id=rec.get("entity_id"),
            error=rec["error"],
            message=rec.get("message", ""),
            session_id=rec.get("session_id"),
            timestamp=_dt(rec.get("timestamp")),
        )


@dataclass
class Checkpoint:
    id: int
    event_seq: int
    reason: str = ""
    created_at: datetime | None = None
    record_count: int = 0
    records: list[dict] = field(default_factory=list)


def event_key(seq: int) -> str:
    """Zero-padded record id so lexical order matches sequence order."""
    return f"{seq:012d}"
