"""Observation stream over the context store journal.

``stream`` is an infinite, resumable async iterator of TaskEvents for one
batch: it replays journal entries after ``after_sequence`` and then waits
for new entries. Consumers resume by passing the last sequence they saw.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional, Set

from devmind.interfaces.task import TaskEvent, TaskStatus
from devmind.storage.context_store import (
    DECISION,
    SUBMIT,
    TRANSITION,
    ContextStore,
    JournalEntry,
)

logger = logging.getLogger(__name__)


def to_event(entry: JournalEntry) -> TaskEvent:
    """Project a journal entry onto the public event shape."""
    if entry.kind == SUBMIT:
        batch = entry.data["batch"]
        return TaskEvent(
            sequence=entry.seq,
            batch_id=batch["batch_id"],
            task_id=None,
            kind="submitted",
            at=entry.at,
            detail={
                "description": batch.get("description", ""),
                "tasks": [t["task_id"] for t in entry.data["tasks"]],
                "cancelled": [t["task_id"] for t in entry.data["tasks"] if t["status"] == "cancelled"],
            },
        )
    if entry.kind == DECISION:
        decision = entry.data["decision"]
        return TaskEvent(
            sequence=entry.seq,
            batch_id=decision.get("batch_id") or "",
            task_id=decision["task_id"],
            kind="decision",
            at=entry.at,
            detail=dict(decision),
        )

    task = entry.data["task"]
    detail = {
        "reason": entry.data.get("reason", ""),
        "attempt": task["attempt"],
        "agent_id": task.get("assigned_agent"),
    }
    if task.get("error"):
        detail["error"] = task["error"]
    if task.get("superseded_by"):
        detail["superseded_by"] = task["superseded_by"]
    is_transition = entry.kind == TRANSITION
    return TaskEvent(
        sequence=entry.seq,
        batch_id=task["batch_id"],
        task_id=task["task_id"],
        kind="transition" if is_transition else "updated",
        from_status=TaskStatus(entry.data["from"]) if is_transition else None,
        to_status=TaskStatus(entry.data["to"]) if is_transition else None,
        at=entry.at,
        detail=detail,
    )


class EventStream:
    """Wakes waiting streams whenever the store journals a new entry."""

    def __init__(self, store: ContextStore) -> None:
        self.store = store
        self._waiters: Set[asyncio.Event] = set()
        store.add_listener(self._on_entry)

    def _on_entry(self, entry: JournalEntry) -> None:
        for waiter in self._waiters:
            waiter.set()

    def events(self, batch_id: str, after_sequence: int = 0) -> List[TaskEvent]:
        """Snapshot of a batch's events after ``after_sequence``."""
        self.store.get_batch(batch_id)
        return [to_event(e) for e in self.store.journal(after_sequence, batch_id)]

    async def stream(
        self,
        batch_id: str,
        after_sequence: int = 0,
        heartbeat: Optional[float] = None,
    ) -> AsyncIterator[Optional[TaskEvent]]:
        """Yield events forever. With ``heartbeat`` set, yield None after that many idle seconds."""
        self.store.get_batch(batch_id)
        cursor = after_sequence
        wake = asyncio.Event()
        self._waiters.add(wake)
        try:
            while True:
                wake.clear()
                entries = self.store.journal(cursor, batch_id)
                for entry in entries:
                    cursor = entry.seq
                    yield to_event(entry)
                if entries:
                    continue
                try:
                    await asyncio.wait_for(wake.wait(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    yield None
        finally:
            self._waiters.discard(wake)

    def close(self) -> None:
        self.store.remove_listener(self._on_entry)
