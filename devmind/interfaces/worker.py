"""Worker capability contract.

Workers are invoked by the dispatcher and never call each other. A worker
returns a WorkerResult, or raises CapabilityError / PreconditionMissingError.
Timeouts are enforced by the dispatcher, not self-reported.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


class CancellationToken:
    """Cooperative cancellation flag handed to each invocation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class TaskPayload:
    """What a worker sees of a task."""

    task_id: str
    batch_id: str
    capability: str
    description: str
    attempt: int
    dependency_results: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerResult:
    output: Any
    subject: Optional[str] = None  # entity the output is about, for conflict detection
    rationale: str = ""


class IWorker(Protocol):
    async def invoke(self, payload: TaskPayload, cancel_token: CancellationToken) -> WorkerResult:
        ...
