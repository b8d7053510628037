"""Task data model shared by every orchestration component.

Records are immutable snapshots; the context store replaces them wholesale
(``dataclasses.replace``) on every committed write and bumps ``version``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional


# ── Enums ────────────────────────────────────────────────────────────


class TaskPriority(str, Enum):
    """Declared task priority. ``rank`` 0 is the most urgent tier."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "TaskPriority":
        """Accept an enum, a name ("high"), or a rank (0=critical .. 3=low)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            for priority, rank in _PRIORITY_RANK.items():
                if rank == value:
                    return priority
            raise ValueError(f"Unknown priority rank: {value}")
        return cls(str(value).lower())


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskStatus(str, Enum):
    """Lifecycle states of a task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    """Why an invocation ended without a result."""

    TIMEOUT = "timeout"
    WORKER = "worker"
    INTERRUPTED = "interrupted"  # orchestrator restarted mid-invocation
    CANCELLED = "cancelled"
    PRECONDITION = "precondition"


# ── Records ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    attempt: int = 0
    at: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "attempt": self.attempt,
            "at": self.at,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorInfo":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            attempt=data.get("attempt", 0),
            at=data.get("at", 0.0),
            details=dict(data.get("details", {})),
        )


@dataclass(frozen=True)
class TaskSpec:
    """A task as submitted, before the store assigns ordering and state."""

    task_id: str
    capability: str
    description: str = ""
    depends_on: FrozenSet[str] = frozenset()
    priority: TaskPriority = TaskPriority.MEDIUM
    max_attempts: Optional[int] = None
    requires_approval: bool = False
    subject: Optional[str] = None
    estimated_time: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        object.__setattr__(self, "priority", TaskPriority.parse(self.priority))


@dataclass(frozen=True)
class TaskRecord:
    """Authoritative task state as held by the context store."""

    task_id: str
    batch_id: str
    capability: str
    description: str = ""
    depends_on: FrozenSet[str] = frozenset()
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent: Optional[str] = None
    attempt: int = 0
    max_attempts: int = 3
    result: Optional[Any] = None
    error: Optional[ErrorInfo] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    requires_approval: bool = False
    subject: Optional[str] = None
    created_seq: int = 0
    version: int = 0
    superseded_by: Optional[str] = None
    estimated_time: Optional[str] = None
    invocation_id: Optional[str] = None  # set on each IN_PROGRESS transition
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """COMPLETED and CANCELLED always; ERROR once attempts are exhausted."""
        if self.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            return True
        return self.status == TaskStatus.ERROR and self.attempt >= self.max_attempts

    @property
    def is_failed(self) -> bool:
        """Terminal without a usable result."""
        return self.is_terminal and self.status != TaskStatus.COMPLETED

    def evolve(self, **changes: Any) -> "TaskRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "batch_id": self.batch_id,
            "capability": self.capability,
            "description": self.description,
            "depends_on": sorted(self.depends_on),
            "priority": self.priority.value,
            "status": self.status.value,
            "assigned_agent": self.assigned_agent,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "requires_approval": self.requires_approval,
            "subject": self.subject,
            "created_seq": self.created_seq,
            "version": self.version,
            "superseded_by": self.superseded_by,
            "estimated_time": self.estimated_time,
            "invocation_id": self.invocation_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskRecord":
        error = data.get("error")
        return cls(
            task_id=data["task_id"],
            batch_id=data["batch_id"],
            capability=data["capability"],
            description=data.get("description", ""),
            depends_on=frozenset(data.get("depends_on", [])),
            priority=TaskPriority(data.get("priority", "medium")),
            status=TaskStatus(data.get("status", "pending")),
            assigned_agent=data.get("assigned_agent"),
            attempt=data.get("attempt", 0),
            max_attempts=data.get("max_attempts", 3),
            result=data.get("result"),
            error=ErrorInfo.from_dict(error) if error else None,
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            requires_approval=data.get("requires_approval", False),
            subject=data.get("subject"),
            created_seq=data.get("created_seq", 0),
            version=data.get("version", 0),
            superseded_by=data.get("superseded_by"),
            estimated_time=data.get("estimated_time"),
            invocation_id=data.get("invocation_id"),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass(frozen=True)
class BatchConstraints:
    budget: Optional[int] = None  # max worker invocations for the batch
    deadline: Optional[float] = None  # unix timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {"budget": self.budget, "deadline": self.deadline}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BatchConstraints":
        data = data or {}
        return cls(budget=data.get("budget"), deadline=data.get("deadline"))


@dataclass(frozen=True)
class Batch:
    """The tasks of one submission; ``batch_id`` is their root correlation id."""

    batch_id: str
    description: str = ""
    task_ids: tuple = ()
    constraints: BatchConstraints = field(default_factory=BatchConstraints)
    created_at: float = field(default_factory=time.time)
    invocations: int = 0

    @property
    def budget_exhausted(self) -> bool:
        budget = self.constraints.budget
        return budget is not None and self.invocations >= budget

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "description": self.description,
            "task_ids": list(self.task_ids),
            "constraints": self.constraints.to_dict(),
            "created_at": self.created_at,
            "invocations": self.invocations,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Batch":
        return cls(
            batch_id=data["batch_id"],
            description=data.get("description", ""),
            task_ids=tuple(data.get("task_ids", [])),
            constraints=BatchConstraints.from_dict(data.get("constraints")),
            created_at=data.get("created_at", 0.0),
            invocations=data.get("invocations", 0),
        )


@dataclass(frozen=True)
class DecisionRecord:
    """Append-only audit entry: why an agent's result was kept or discarded."""

    task_id: str
    agent_id: Optional[str]
    rationale: str
    timestamp: float = field(default_factory=time.time)
    kind: str = "note"  # conflict, approval, rejection, cancel, unblock
    batch_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "rationale": self.rationale,
            "timestamp": self.timestamp,
            "kind": self.kind,
            "batch_id": self.batch_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionRecord":
        return cls(
            task_id=data["task_id"],
            agent_id=data.get("agent_id"),
            rationale=data.get("rationale", ""),
            timestamp=data.get("timestamp", 0.0),
            kind=data.get("kind", "note"),
            batch_id=data.get("batch_id"),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Consistent snapshot of the store at ``journal_sequence``."""

    sequence: int
    journal_sequence: int
    tasks: Dict[str, TaskRecord]
    batches: Dict[str, Batch]
    decision_log: List[DecisionRecord]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "journal_sequence": self.journal_sequence,
            "tasks": {tid: t.to_dict() for tid, t in self.tasks.items()},
            "batches": {bid: b.to_dict() for bid, b in self.batches.items()},
            "decisionLog": [d.to_dict() for d in self.decision_log],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            sequence=data["sequence"],
            journal_sequence=data["journal_sequence"],
            tasks={tid: TaskRecord.from_dict(t) for tid, t in data["tasks"].items()},
            batches={bid: Batch.from_dict(b) for bid, b in data["batches"].items()},
            decision_log=[DecisionRecord.from_dict(d) for d in data.get("decisionLog", [])],
            timestamp=data.get("timestamp", 0.0),
        )


@dataclass(frozen=True)
class TaskEvent:
    """Observation-stream view of one journal entry."""

    sequence: int
    batch_id: str
    task_id: Optional[str]
    kind: str  # submitted, transition, decision
    from_status: Optional[TaskStatus] = None
    to_status: Optional[TaskStatus] = None
    at: float = 0.0
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "batch_id": self.batch_id,
            "task_id": self.task_id,
            "kind": self.kind,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value if self.to_status else None,
            "at": self.at,
            "detail": self.detail,
        }


# ── Agents ───────────────────────────────────────────────────────────


@dataclass
class AgentDescriptor:
    """A registered agent. ``in_flight`` never exceeds ``concurrency_limit``."""

    agent_id: str
    capabilities: FrozenSet[str]
    concurrency_limit: int = 1
    in_flight: int = 0
    factory: Optional[Callable[[], Any]] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.capabilities = frozenset(self.capabilities)
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")

    @property
    def available(self) -> int:
        return max(0, self.concurrency_limit - self.in_flight)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "capabilities": sorted(self.capabilities),
            "concurrency_limit": self.concurrency_limit,
            "in_flight": self.in_flight,
        }


@dataclass(frozen=True)
class Dispatch:
    task_id: str
    agent_id: str
