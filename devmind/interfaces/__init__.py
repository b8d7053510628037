"""DevMind interface contracts (Protocol-based dependency injection)."""

from devmind.interfaces.event_bus import (
    IMessageBus,
    Message,
    SubscriptionHandle,
    Topic,
    payload_hash,
)
from devmind.interfaces.task import (
    AgentDescriptor,
    Batch,
    BatchConstraints,
    Checkpoint,
    DecisionRecord,
    Dispatch,
    ErrorInfo,
    ErrorKind,
    TaskEvent,
    TaskPriority,
    TaskRecord,
    TaskSpec,
    TaskStatus,
)
from devmind.interfaces.worker import CancellationToken, IWorker, TaskPayload, WorkerResult

__all__ = [
    "IMessageBus",
    "Message",
    "SubscriptionHandle",
    "Topic",
    "payload_hash",
    "AgentDescriptor",
    "Batch",
    "BatchConstraints",
    "Checkpoint",
    "DecisionRecord",
    "Dispatch",
    "ErrorInfo",
    "ErrorKind",
    "TaskEvent",
    "TaskPriority",
    "TaskRecord",
    "TaskSpec",
    "TaskStatus",
    "CancellationToken",
    "IWorker",
    "TaskPayload",
    "WorkerResult",
]
