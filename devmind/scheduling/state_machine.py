"""Task lifecycle state machine.

Every transition is validated against ``LEGAL_TRANSITIONS`` and the
dependency guard, written to the context store journal, then published on
``task.transition`` and acknowledged. Stale writes (StorageWriteConflict)
are retried with backoff after re-reading the record.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, FrozenSet, Optional

from devmind.exceptions_unified import (
    IllegalTransitionError,
    RetryConfig,
    is_transient,
    retry_with_backoff,
)
from devmind.interfaces.event_bus import IMessageBus, Topic
from devmind.interfaces.task import ErrorInfo, TaskRecord, TaskStatus
from devmind.storage.context_store import JournalEntry, ContextStore

logger = logging.getLogger(__name__)

S = TaskStatus

LEGAL_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    S.PENDING: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.REVIEW, S.COMPLETED, S.BLOCKED, S.ERROR, S.CANCELLED}),
    S.BLOCKED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.REVIEW: frozenset({S.COMPLETED, S.IN_PROGRESS, S.CANCELLED}),
    S.ERROR: frozenset({S.IN_PROGRESS, S.CANCELLED}),  # only while attempt < max_attempts
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}


class TaskLifecycle:
    """Applies validated, journaled, published transitions to tasks."""

    def __init__(
        self,
        store: ContextStore,
        bus: IMessageBus,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.retry_config = retry_config or RetryConfig(max_retries=5)

    # ── Validation ───────────────────────────────────────────────────

    def check(self, task: TaskRecord, to_status: TaskStatus) -> None:
        """Raise IllegalTransitionError unless ``task`` may move to ``to_status``."""
        if to_status not in LEGAL_TRANSITIONS[task.status] or task.is_terminal:
            raise IllegalTransitionError(
                f"Illegal transition for {task.task_id}: {task.status.value} -> {to_status.value}",
                task_id=task.task_id,
                details={"from": task.status.value, "to": to_status.value, "attempt": task.attempt},
            )
        if to_status == S.IN_PROGRESS:
            unfinished = sorted(
                dep for dep in task.depends_on
                if self.store.get_task(dep).status != S.COMPLETED
            )
            if unfinished:
                raise IllegalTransitionError(
                    f"Task {task.task_id} cannot start: dependencies not completed: {', '.join(unfinished)}",
                    task_id=task.task_id,
                    details={"unfinished": unfinished},
                )

    def can_transition(self, task: TaskRecord, to_status: TaskStatus) -> bool:
        try:
            self.check(task, to_status)
        except IllegalTransitionError:
            return False
        return True

    # ── Transitions ──────────────────────────────────────────────────

    async def transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        reason: str = "",
        changes: Optional[Dict[str, Any]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> TaskRecord:
        """Move a task to ``to_status``; returns the committed record.

        Entering ERROR from IN_PROGRESS increments ``attempt``; an ``error``
        in ``changes`` is stamped with the new attempt number.
        """

        async def _commit():
            task = self.store.get_task(task_id)
            self.check(task, to_status)
            updates = dict(changes or {})
            updates["status"] = to_status
            if task.status == S.IN_PROGRESS and to_status == S.ERROR:
                updates["attempt"] = task.attempt + 1
                error = updates.get("error")
                if isinstance(error, ErrorInfo):
                    updates["error"] = replace(error, attempt=updates["attempt"])
            return self.store.commit(task_id, task.version, updates, reason=reason, detail=detail)

        record, entry = await retry_with_backoff(
            _commit,
            self.retry_config,
            should_retry=is_transient,
        )
        logger.info(
            "Task %s: %s -> %s%s",
            task_id, entry.data["from"], entry.data["to"], f" ({reason})" if reason else "",
        )
        await self._publish(entry)
        return record

    async def _publish(self, entry: JournalEntry) -> None:
        task = entry.data["task"]
        payload = {
            "seq": entry.seq,
            "task_id": task["task_id"],
            "batch_id": task["batch_id"],
            "from": entry.data["from"],
            "to": entry.data["to"],
            "attempt": task["attempt"],
            "reason": entry.data.get("reason", ""),
        }
        try:
            await self.bus.publish(
                Topic.TASK_TRANSITION,
                payload,
                priority=task["priority"],
                correlation_id=task["task_id"],
            )
        except Exception as e:
            logger.warning(
                "Transition seq %d for %s left unpublished: %s", entry.seq, task["task_id"], e
            )
            return
        self.store.mark_published(entry.seq)

    async def replay_unpublished(self) -> int:
        """Republish journaled transitions that were never acknowledged."""
        entries = self.store.unpublished()
        for entry in entries:
            await self._publish(entry)
        if entries:
            logger.info("Replayed %d unpublished transitions", len(entries))
        return len(entries)
