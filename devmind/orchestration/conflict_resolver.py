"""Conflict resolution between contradictory task results.

Detection runs when a task finishes, against tasks of the same batch that
already COMPLETED, so the earlier task never has to leave a terminal state.
A pluggable validator decides whether two results conflict; the default
flags tasks with the same ``subject`` whose results differ.

Resolution: the higher declared priority wins and a DecisionRecord is
appended for the discarded result. Equal priority raises
ConflictUnresolvedError, which the orchestrator turns into REVIEW.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from devmind.exceptions_unified import ConflictUnresolvedError
from devmind.interfaces.task import DecisionRecord, TaskRecord, TaskStatus
from devmind.storage.context_store import ContextStore

logger = logging.getLogger(__name__)

# (task_a, result_a, task_b, result_b) -> description of the conflict, or None
ConflictValidator = Callable[[TaskRecord, Any, TaskRecord, Any], Optional[str]]


def same_subject_validator(task_a: TaskRecord, result_a: Any, task_b: TaskRecord, result_b: Any) -> Optional[str]:
    """Two results about the same subject must agree."""
    if task_a.subject is None or task_a.subject != task_b.subject:
        return None
    if result_a == result_b:
        return None
    return f"{task_a.task_id} and {task_b.task_id} produced different results for {task_a.subject!r}"


@dataclass(frozen=True)
class Resolution:
    winner: str
    loser: str
    rationale: str


class ConflictResolver:
    """Detects and resolves contradictory results within a batch."""

    def __init__(
        self,
        store: ContextStore,
        validator: ConflictValidator = same_subject_validator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.validator = validator
        self._clock = clock

    def detect(self, task: TaskRecord, result: Any, subject: Optional[str] = None) -> List[Tuple[TaskRecord, str]]:
        """Completed tasks in ``task``'s batch whose results conflict with ``result``."""
        candidate = task.evolve(subject=subject) if subject is not None else task
        conflicts = []
        for other in self.store.list_tasks(task.batch_id, statuses=[TaskStatus.COMPLETED]):
            if other.task_id == task.task_id or other.superseded_by is not None:
                continue
            description = self.validator(other, other.result, candidate, result)
            if description:
                conflicts.append((other, description))
        return conflicts

    def resolve(self, task_a: TaskRecord, task_b: TaskRecord, conflicting_results: str) -> Resolution:
        """Pick a winner by declared priority and record the discarded result.

        Raises:
            ConflictUnresolvedError: both tasks have the same priority.
        """
        if task_a.priority == task_b.priority:
            raise ConflictUnresolvedError(
                f"Conflict between {task_a.task_id} and {task_b.task_id} needs review: {conflicting_results}",
                task_id=task_b.task_id,
                details={"tasks": [task_a.task_id, task_b.task_id], "conflict": conflicting_results},
            )
        if task_a.priority.rank < task_b.priority.rank:
            winner, loser = task_a, task_b
        else:
            winner, loser = task_b, task_a
        rationale = (
            f"Kept {winner.task_id} ({winner.priority.value}) over "
            f"{loser.task_id} ({loser.priority.value}): {conflicting_results}"
        )
        self.store.append_decision(DecisionRecord(
            task_id=loser.task_id,
            agent_id=loser.assigned_agent,
            rationale=rationale,
            timestamp=self._clock(),
            kind="conflict",
            batch_id=loser.batch_id,
        ))
        logger.info("Conflict resolved: %s", rationale)
        return Resolution(winner=winner.task_id, loser=loser.task_id, rationale=rationale)
